"""
Main hvctl client: inventory and control operations over managed endpoints
"""

import logging
import threading
import time
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple, Union

from .config import Config, Endpoint, Settings, env_credentials
from .connections.base import BaseConnection
from .connections.session import ConnectionFactory, SessionManager
from .exceptions import HVError, NotFoundError, ResourceExhaustedError, ValidationError
from .infrastructure.vsphere.client import VSphereClient
from .inventory.base import (
    DatastoreInfo, DatastoreResult, HostInfo, ObjectKind, ObjectRef, VMHandle, VMSpec,
)
from .inventory.cache import InventoryCache
from .inventory.status import StatusTranslator


logger = logging.getLogger(__name__)

HOST_PROPERTIES = (
    'name',
    'summary.overallStatus',
    'summary.runtime.powerState',
    'summary.hardware.cpuMhz',
    'summary.hardware.memorySize',
    'datastore',
)

DATASTORE_PROPERTIES = (
    'summary.name',
    'summary.capacity',
    'summary.freeSpace',
)

MB = 1024 * 1024


def vsphere_connection(endpoint: Endpoint, password: str, settings: Settings) -> BaseConnection:
    """Default connection factory: one pyVmomi connection per session"""
    return VSphereClient(
        host=endpoint.address,
        username=endpoint.username,
        password=password,
        port=endpoint.port,
        disable_ssl_verification=not endpoint.verify_ssl,
    )


class HVClient:
    """
    Inventory and control facade

    Owns one SessionManager per endpoint and a shared InventoryCache. Every
    operation raises hvctl exceptions; nothing here exits the process.
    """

    def __init__(self, endpoints: Union[Endpoint, Iterable[Endpoint]],
                 settings: Optional[Settings] = None,
                 connection_factory: ConnectionFactory = vsphere_connection,
                 credentials: Callable[[Endpoint], str] = env_credentials,
                 translator: Optional[StatusTranslator] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        if isinstance(endpoints, Endpoint):
            endpoints = [endpoints]

        self.settings = settings or Settings()
        self.translator = translator or StatusTranslator()

        self._endpoints: Dict[str, Endpoint] = {}
        for endpoint in endpoints:
            if endpoint.name in self._endpoints:
                raise ValidationError(f"Endpoint {endpoint.name} configured twice")
            self._endpoints[endpoint.name] = endpoint
        if not self._endpoints:
            raise ValidationError("At least one endpoint is required")

        self._sessions: Dict[str, SessionManager] = {
            name: SessionManager(endpoint, connection_factory, self.settings,
                                 credentials=credentials, sleep=sleep, clock=clock)
            for name, endpoint in self._endpoints.items()
        }
        self.cache = InventoryCache(self._load, ttl=self.settings.cache_ttl,
                                    max_stale=self.settings.max_stale, clock=clock)

        self._default_hosts: Dict[str, ObjectRef] = {}
        self._pending_vms: Set[Tuple[str, str]] = set()
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Config, **kwargs) -> 'HVClient':
        return cls(config.endpoints, settings=config.settings, **kwargs)

    @property
    def endpoints(self) -> List[Endpoint]:
        return list(self._endpoints.values())

    def session_manager(self, endpoint: Union[str, Endpoint, None] = None) -> SessionManager:
        return self._sessions[self._resolve(endpoint).name]

    def default_host(self, endpoint: Union[str, Endpoint, None] = None,
                     timeout: Optional[float] = None) -> ObjectRef:
        """Reference of the endpoint's single host in the configured datacenter"""
        endpoint = self._resolve(endpoint)
        host_ref = self._default_hosts.get(endpoint.name)
        if host_ref is None:
            datacenter = self.settings.datacenter
            host_ref = self._sessions[endpoint.name].execute(
                lambda conn: conn.find_default_host(datacenter), timeout=timeout)
            self._default_hosts[endpoint.name] = host_ref
        return host_ref

    def get_host_info(self, endpoint: Union[str, Endpoint, None] = None,
                      timeout: Optional[float] = None, stale_allowed: bool = False) -> HostInfo:
        """
        Summary of the endpoint's default host

        Raises:
            ConnectionError: Endpoint unreachable after retries
            AuthenticationError: Credentials rejected
            NotFoundError: No single default host on the endpoint
        """
        host_ref = self.default_host(endpoint, timeout)
        return self.get_host(host_ref, timeout=timeout, stale_allowed=stale_allowed)

    def get_host(self, host_ref: ObjectRef, timeout: Optional[float] = None,
                 stale_allowed: bool = False) -> HostInfo:
        if host_ref.kind is not ObjectKind.HOST:
            raise ValidationError(f"{host_ref} is not a host")

        snapshot = self.cache.get(host_ref, HOST_PROPERTIES, stale_allowed=stale_allowed, timeout=timeout)
        return HostInfo(
            reference=host_ref,
            name=snapshot.get('name'),
            overall_status=self.translator.overall_status(snapshot.get('summary.overallStatus')),
            power_state=self.translator.power_state(snapshot.get('summary.runtime.powerState')),
            cpu_mhz=int(snapshot.get('summary.hardware.cpuMhz') or 0),
            memory_bytes=int(snapshot.get('summary.hardware.memorySize') or 0),
            datastore_refs=tuple(snapshot.get('datastore') or ()),
        )

    def list_datastores(self, host_ref: Optional[ObjectRef] = None,
                        timeout: Optional[float] = None) -> Iterator[DatastoreResult]:
        """
        Yield one result per datastore mounted on host_ref, fetched lazily

        A datastore that cannot be read produces a result carrying the error
        instead of ending the listing. Failing to read the host itself raises.
        """
        if host_ref is None:
            host_ref = self.default_host(timeout=timeout)
        host = self.get_host(host_ref, timeout=timeout)

        for ds_ref in host.datastore_refs:
            try:
                snapshot = self.cache.get(ds_ref, DATASTORE_PROPERTIES, timeout=timeout)
            except HVError as e:
                logger.warning(f"Failed to read datastore {ds_ref} on {host.name}: {str(e)}")
                yield DatastoreResult(reference=ds_ref, error=e)
                continue

            yield DatastoreResult(reference=ds_ref, info=DatastoreInfo(
                reference=ds_ref,
                name=snapshot.get('summary.name'),
                capacity_bytes=int(snapshot.get('summary.capacity') or 0),
                free_bytes=int(snapshot.get('summary.freeSpace') or 0),
            ))

    def create_vm(self, spec: VMSpec, timeout: Optional[float] = None) -> VMHandle:
        """
        Create a VM on the default host of spec.endpoint

        The spec is validated locally before any remote call, then checked
        against the host's memory and the names already in use. The create
        call itself is never retried.

        Raises:
            ValidationError: Invalid spec or name already taken
            ResourceExhaustedError: Host or datastore cannot fit the VM
            ConnectionError: Endpoint unreachable
        """
        spec.validate(self.settings.limits)
        endpoint = self._resolve(spec.endpoint)

        key = (endpoint.name, spec.name)
        with self._lock:
            if key in self._pending_vms:
                raise ValidationError(f"VM '{spec.name}' is already being created on {endpoint.name}",
                                      details={'field': 'name'})
            self._pending_vms.add(key)

        try:
            manager = self._sessions[endpoint.name]
            host_ref = self.default_host(endpoint, timeout)
            host = self.get_host(host_ref, timeout=timeout)

            if host.memory_bytes and spec.memory_mb * MB > host.memory_bytes:
                raise ResourceExhaustedError(
                    f"VM '{spec.name}' requests {spec.memory_mb}MB but {host.name} has "
                    f"{host.memory_bytes // MB}MB",
                    details={'requested_mb': spec.memory_mb, 'available_mb': host.memory_bytes // MB},
                )

            existing = manager.execute(lambda conn: conn.list_objects(ObjectKind.VM), timeout=timeout)
            if spec.name in existing.values():
                raise ValidationError(f"A VM named '{spec.name}' already exists on {endpoint.name}",
                                      details={'field': 'name'})

            vm_ref = manager.execute(lambda conn: conn.create_vm(spec, host_ref),
                                     timeout=timeout, retry=False)
        finally:
            with self._lock:
                self._pending_vms.discard(key)

        # host's VM list changed
        self.cache.invalidate(host_ref)
        logger.info(f"Created VM {spec.name} ({vm_ref.moid}) on {endpoint.name}")
        return VMHandle(reference=vm_ref, name=spec.name, details={'host': host_ref})

    def refresh(self, reference: Optional[ObjectRef] = None) -> None:
        """Drop cached data for reference, or everything"""
        if reference is None:
            self.cache.invalidate_all()
            self._default_hosts.clear()
        else:
            self.cache.invalidate(reference)

    def close(self) -> None:
        """Log out of every endpoint and drop cached data"""
        for manager in self._sessions.values():
            manager.close()
        self.refresh()

    def _resolve(self, endpoint: Union[str, Endpoint, None]) -> Endpoint:
        if endpoint is None:
            if len(self._endpoints) == 1:
                return next(iter(self._endpoints.values()))
            raise ValidationError(f"{len(self._endpoints)} endpoints configured, name one")

        name = endpoint.name if isinstance(endpoint, Endpoint) else endpoint
        try:
            return self._endpoints[name]
        except KeyError:
            raise NotFoundError(f"Unknown endpoint {name}")

    def _load(self, reference: ObjectRef, attributes, timeout: Optional[float]):
        manager = self._sessions.get(reference.endpoint)
        if manager is None:
            raise NotFoundError(f"Unknown endpoint {reference.endpoint} for {reference}")
        return manager.execute(lambda conn: conn.retrieve_properties(reference, attributes),
                               timeout=timeout)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
