"""
Base remote management capability interface
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Sequence

from ..inventory.base import ObjectKind, ObjectRef, VMSpec


class BaseConnection(ABC):
    """Abstract base class for management endpoint connections"""

    def __init__(self, host: str, username: str, password: Optional[str] = None,
                 port: Optional[int] = None, timeout: int = 30):
        self.host = host
        self.username = username
        self.password = password
        self.port = port or self.default_port
        self.timeout = timeout
        self._connected = False

    @property
    @abstractmethod
    def default_port(self) -> int:
        """Default port for this connection type"""
        pass

    @property
    def endpoint_name(self) -> str:
        """Scope used for the ObjectRefs this connection hands out"""
        return self.host if self.port == self.default_port else f"{self.host}:{self.port}"

    @abstractmethod
    def connect(self) -> None:
        """Authenticate and open the connection"""
        pass

    @abstractmethod
    def disconnect(self) -> None:
        """Log out and close the connection"""
        pass

    @abstractmethod
    def is_connected(self) -> bool:
        """Check if connection is active"""
        pass

    @abstractmethod
    def ping(self) -> None:
        """Cheap round trip used as keep-alive; raises ConnectionError on failure"""
        pass

    @abstractmethod
    def find_default_host(self, datacenter: str) -> ObjectRef:
        """Return the single host managed under datacenter"""
        pass

    @abstractmethod
    def retrieve_properties(self, reference: ObjectRef, attributes: Sequence[str]) -> Dict[str, Any]:
        """Fetch the named property paths of a remote object"""
        pass

    @abstractmethod
    def list_objects(self, kind: ObjectKind) -> Dict[ObjectRef, str]:
        """List every object of kind with its display name"""
        pass

    @abstractmethod
    def create_vm(self, spec: VMSpec, host: ObjectRef) -> ObjectRef:
        """Create a VM on host and return its reference"""
        pass

    @abstractmethod
    def cancel(self) -> None:
        """Abort whatever the connection is doing; it is unusable afterwards"""
        pass

    def __enter__(self):
        """Context manager entry"""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit"""
        self.disconnect()
