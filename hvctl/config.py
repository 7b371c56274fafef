"""
Endpoint and settings configuration
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv

from .exceptions import MissingConfigError, MissingCredentialError, ConfigError
from .inventory.base import ResourceLimits


DEFAULT_CREDENTIAL_REF = "ESXI_PASSWORD"


@dataclass(frozen=True)
class Endpoint:
    """A managed host: where it lives and where its credential comes from"""
    address: str
    username: str = "root"
    credential_ref: str = DEFAULT_CREDENTIAL_REF
    port: int = 443
    verify_ssl: bool = False

    @property
    def name(self) -> str:
        return self.address if self.port == 443 else f"{self.address}:{self.port}"

    @property
    def url(self) -> str:
        return f"https://{self.name}/sdk"


@dataclass
class Settings:
    """Tunables for sessions, retries and the inventory cache"""
    retry_attempts: int = 3
    backoff_base: float = 1.0
    backoff_factor: float = 2.0
    backoff_max: float = 30.0
    max_consecutive_failures: int = 5
    keepalive_interval: float = 300.0
    request_timeout: Optional[float] = None
    serialize_requests: bool = True
    max_workers: int = 4
    cache_ttl: float = 30.0
    max_stale: Optional[float] = None
    datacenter: str = "ha-datacenter"
    limits: ResourceLimits = field(default_factory=ResourceLimits)

    def backoff(self, attempt: int) -> float:
        """Delay before retry number attempt (1-based)"""
        return min(self.backoff_base * (self.backoff_factor ** (attempt - 1)), self.backoff_max)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Settings':
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown settings: {', '.join(sorted(unknown))}")

        values = dict(data)
        if 'limits' in values:
            try:
                values['limits'] = ResourceLimits(**(values['limits'] or {}))
            except TypeError as e:
                raise ConfigError(f"Invalid limits: {str(e)}")
        return cls(**values)


@dataclass
class Config:
    endpoints: List[Endpoint]
    settings: Settings = field(default_factory=Settings)


def _parse_bool(value: Union[str, bool, None], default: bool = False) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def endpoint_from_env(env_file: Optional[str] = ".env") -> Endpoint:
    """
    Build a single endpoint from ESXI_* environment variables

    Args:
        env_file: dotenv file loaded first; existing variables are not overridden

    Raises:
        MissingConfigError: If ESXI_HOST is not set
    """
    if env_file:
        load_dotenv(env_file)

    host = os.getenv('ESXI_HOST')
    if not host:
        raise MissingConfigError("ESXI_HOST is not set")

    try:
        port = int(os.getenv('ESXI_PORT', 443))
    except ValueError:
        raise ConfigError(f"ESXI_PORT is not a number: {os.getenv('ESXI_PORT')!r}")

    return Endpoint(
        address=host,
        username=os.getenv('ESXI_USER') or "root",
        credential_ref=os.getenv('ESXI_CREDENTIAL_REF') or DEFAULT_CREDENTIAL_REF,
        port=port,
        verify_ssl=_parse_bool(os.getenv('ESXI_VERIFY_SSL')),
    )


def load_config(path: Union[str, Path], env_file: Optional[str] = ".env") -> Config:
    """
    Load endpoints and settings from a YAML file

    Expected layout:

        endpoints:
          - address: esxi01.lab.local
            username: root
            credential_ref: ESXI01_PASSWORD
        settings:
          cache_ttl: 30

    Raises:
        MissingConfigError: File, endpoints section or endpoint address missing
        ConfigError: File is not valid YAML or holds unknown keys
    """
    path = Path(path)
    if not path.is_file():
        raise MissingConfigError(f"Config file not found: {path}")

    if env_file:
        load_dotenv(env_file)

    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {str(e)}")

    raw_endpoints = data.get('endpoints')
    if not raw_endpoints:
        raise MissingConfigError(f"No endpoints defined in {path}")

    endpoints = []
    for index, raw in enumerate(raw_endpoints):
        if not isinstance(raw, dict) or not raw.get('address'):
            raise MissingConfigError(f"Endpoint #{index + 1} in {path} has no address")
        try:
            endpoints.append(Endpoint(
                address=raw['address'],
                username=raw.get('username', "root"),
                credential_ref=raw.get('credential_ref', DEFAULT_CREDENTIAL_REF),
                port=int(raw.get('port', 443)),
                verify_ssl=_parse_bool(raw.get('verify_ssl')),
            ))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Endpoint #{index + 1} in {path} is invalid: {str(e)}")

    settings = Settings.from_dict(data.get('settings') or {})
    return Config(endpoints=endpoints, settings=settings)


def env_credentials(endpoint: Endpoint) -> str:
    """Resolve the endpoint's credential reference from the environment"""
    secret = os.getenv(endpoint.credential_ref)
    if not secret:
        raise MissingCredentialError(
            f"{endpoint.credential_ref} is not set for {endpoint.name}",
            details={'endpoint': endpoint.name, 'credential_ref': endpoint.credential_ref},
        )
    return secret
