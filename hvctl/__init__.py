"""
hvctl - Hypervisor inventory and control library
A retrying, session-pooled client over vSphere management endpoints
"""

__version__ = "0.1.0"
__author__ = "hvctl Development Team"

from .client import HVClient
from .config import Endpoint, Settings, endpoint_from_env, load_config
from .exceptions import (
    HVError, ConnectionError, TimeoutError, AuthenticationError, AuthError, NotFoundError,
    ValidationError, ResourceExhaustedError, StaleDataError, ConfigError, MissingConfigError,
    MissingCredentialError,
)
from .inventory.base import (
    DatastoreInfo, DatastoreResult, HostInfo, ObjectKind, ObjectRef, OverallStatus, PowerState,
    VMHandle, VMSpec,
)

__all__ = [
    "HVClient",
    "Endpoint",
    "Settings",
    "endpoint_from_env",
    "load_config",
    "HVError",
    "ConnectionError",
    "TimeoutError",
    "AuthenticationError",
    "AuthError",
    "NotFoundError",
    "ValidationError",
    "ResourceExhaustedError",
    "StaleDataError",
    "ConfigError",
    "MissingConfigError",
    "MissingCredentialError",
    "DatastoreInfo",
    "DatastoreResult",
    "HostInfo",
    "ObjectKind",
    "ObjectRef",
    "OverallStatus",
    "PowerState",
    "VMHandle",
    "VMSpec",
]
