"""
Normalized inventory types shared by the cache, the translator and the facade
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional, Tuple

from ..exceptions import HVError, ValidationError


class ObjectKind(Enum):
    """Kinds of remote objects tracked in the inventory"""
    HOST = "HostSystem"
    DATASTORE = "Datastore"
    VM = "VirtualMachine"


@dataclass(frozen=True)
class ObjectRef:
    """Opaque remote identifier scoped to the endpoint it came from"""
    endpoint: str
    kind: ObjectKind
    moid: str

    def __str__(self) -> str:
        return f"{self.endpoint}/{self.kind.value}:{self.moid}"


@dataclass(frozen=True)
class InventoryObject:
    """Snapshot of a remote object's properties at fetch time"""
    reference: ObjectRef
    kind: ObjectKind
    attributes: Mapping[str, Any]
    fetched_at: float

    def __post_init__(self):
        if not isinstance(self.attributes, MappingProxyType):
            object.__setattr__(self, 'attributes', MappingProxyType(dict(self.attributes)))

    def get(self, name: str, default: Any = None) -> Any:
        return self.attributes.get(name, default)

    def covers(self, names: Iterable[str]) -> bool:
        """True if every requested attribute is present in this snapshot"""
        return all(name in self.attributes for name in names)

    def age(self, now: float) -> float:
        return now - self.fetched_at


class OverallStatus(Enum):
    UNKNOWN = "unknown"
    NORMAL = "normal"
    WARNING = "warning"
    ERROR = "error"


class PowerState(Enum):
    UNKNOWN = "unknown"
    POWERED_ON = "powered_on"
    POWERED_OFF = "powered_off"
    STANDBY = "standby"


@dataclass(frozen=True)
class HostInfo:
    """Normalized host summary"""
    reference: ObjectRef
    name: str
    overall_status: OverallStatus
    power_state: PowerState
    cpu_mhz: int
    memory_bytes: int
    datastore_refs: Tuple[ObjectRef, ...] = ()

    @property
    def datastore_count(self) -> int:
        return len(self.datastore_refs)


@dataclass(frozen=True)
class DatastoreInfo:
    """Normalized datastore capacity summary"""
    reference: ObjectRef
    name: str
    capacity_bytes: int
    free_bytes: int

    @property
    def used_bytes(self) -> int:
        return self.capacity_bytes - self.free_bytes


@dataclass(frozen=True)
class DatastoreResult:
    """One item of a datastore listing: either info or the error that prevented it"""
    reference: ObjectRef
    info: Optional[DatastoreInfo] = None
    error: Optional[HVError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def __bool__(self) -> bool:
        return self.ok


@dataclass(frozen=True)
class ResourceLimits:
    """Upper bounds accepted for a single VM"""
    max_cpu_count: int = 128
    max_memory_mb: int = 6 * 1024 * 1024
    max_disk_gb: int = 62 * 1024


# vSphere caps display names at 80 characters; '/', '\' and '%' are escaped by the server
_VM_NAME_RE = re.compile(r'^[^/\\%]{1,80}$')


@dataclass(frozen=True)
class VMSpec:
    """VM creation request"""
    name: str
    cpu_count: int = 1
    memory_mb: int = 1024
    disk_gb: int = 0
    guest_id: str = "otherGuest64"
    datastore: Optional[str] = None
    endpoint: Optional[str] = None
    annotation: str = ""

    def validate(self, limits: ResourceLimits) -> None:
        """
        Check the request without touching the remote endpoint

        Raises:
            ValidationError: On the first rule this VMSpec violates
        """
        name = self.name.strip() if isinstance(self.name, str) else ""
        if not name or name != self.name:
            raise ValidationError(f"Invalid VM name {self.name!r}: empty or padded with whitespace",
                                  details={'field': 'name'})
        if not _VM_NAME_RE.match(name):
            raise ValidationError(f"Invalid VM name {self.name!r}: 1-80 characters, no '/', '\\' or '%'",
                                  details={'field': 'name'})
        if not 1 <= self.cpu_count <= limits.max_cpu_count:
            raise ValidationError(f"cpu_count must be between 1 and {limits.max_cpu_count}, got {self.cpu_count}",
                                  details={'field': 'cpu_count'})
        # memory must be a multiple of 4 MB
        if not 4 <= self.memory_mb <= limits.max_memory_mb or self.memory_mb % 4:
            raise ValidationError(f"memory_mb must be a multiple of 4 between 4 and {limits.max_memory_mb}, "
                                  f"got {self.memory_mb}", details={'field': 'memory_mb'})
        if not 0 <= self.disk_gb <= limits.max_disk_gb:
            raise ValidationError(f"disk_gb must be between 0 and {limits.max_disk_gb}, got {self.disk_gb}",
                                  details={'field': 'disk_gb'})
        if not self.guest_id:
            raise ValidationError("guest_id is required", details={'field': 'guest_id'})


@dataclass(frozen=True)
class VMHandle:
    """Reference to a VM created through the facade"""
    reference: ObjectRef
    name: str
    details: Mapping[str, Any] = field(default_factory=dict)
