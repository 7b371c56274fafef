"""
vSphere client wrapper implementing the remote management capability
"""

import http.client
import ssl
import time
from typing import Any, Dict, List, Optional, Sequence

from pyVim import connect
from pyVmomi import VmomiSupport, vim, vmodl

from ...connections.base import BaseConnection
from ...exceptions import (
    HVError, ConnectionError, AuthenticationError, NotFoundError, ValidationError,
    ResourceExhaustedError, TimeoutError,
)
from ...inventory.base import ObjectKind, ObjectRef, VMSpec
from .vm_manager import VMManager


# server faults plus errors raised by the SOAP transport itself
_REMOTE_ERRORS = (vmodl.MethodFault, OSError, http.client.HTTPException)

_VIM_TYPES = {
    ObjectKind.HOST: vim.HostSystem,
    ObjectKind.DATASTORE: vim.Datastore,
    ObjectKind.VM: vim.VirtualMachine,
}


def translate_fault(error: Exception, action: str) -> HVError:
    """Map a pyVmomi fault or transport error onto the hvctl error taxonomy"""
    if isinstance(error, HVError):
        return error

    message = getattr(error, 'msg', None) or str(error) or type(error).__name__
    text = f"{action}: {message}"
    details = {'fault': type(error).__name__}

    if isinstance(error, vim.fault.InvalidLogin):
        return AuthenticationError(text, details=details)
    if isinstance(error, vim.fault.NotAuthenticated):
        return ConnectionError(text, details=details)
    if isinstance(error, (vmodl.fault.ManagedObjectNotFound, vim.fault.NotFound)):
        return NotFoundError(text, details=details)
    if isinstance(error, (vim.fault.InsufficientResourcesFault, vim.fault.NoDiskSpace)):
        return ResourceExhaustedError(text, details=details)
    if isinstance(error, (vim.fault.DuplicateName, vim.fault.InvalidName, vmodl.fault.InvalidArgument)):
        return ValidationError(text, details=details)
    if isinstance(error, vmodl.fault.RequestCanceled):
        return TimeoutError(text, details=details)
    return ConnectionError(text, details=details)


class VSphereClient(BaseConnection):
    """vSphere API client for ESXi hosts and vCenter"""

    def __init__(self, host: str, username: str, password: str, port: int = 443,
                 disable_ssl_verification: bool = False, timeout: int = 30):
        super().__init__(host, username, password, port, timeout)
        self.disable_ssl_verification = disable_ssl_verification
        self._service_instance = None
        self._content = None
        self._current_task = None
        self.vm_manager = VMManager(self)

    @property
    def default_port(self) -> int:
        return 443

    def connect(self) -> None:
        """Establish connection to vSphere"""
        try:
            context = None
            if self.disable_ssl_verification:
                # ESXi hosts ship with self-signed certificates
                context = ssl._create_unverified_context()  # nosec B323

            self._service_instance = connect.SmartConnect(
                host=self.host,
                user=self.username,
                pwd=self.password,
                port=self.port,
                sslContext=context,
                httpConnectionTimeout=self.timeout,
            )
            self._content = self._service_instance.RetrieveContent()
            self._connected = True

        except vim.fault.InvalidLogin as e:
            raise AuthenticationError(f"Failed to authenticate to vSphere {self.host} as {self.username}") from e
        except Exception as e:
            raise ConnectionError(f"Failed to connect to vSphere {self.host}: {str(e)}") from e

    def disconnect(self) -> None:
        """Disconnect from vSphere"""
        if self._service_instance:
            try:
                connect.Disconnect(self._service_instance)
            finally:
                self._service_instance = None
                self._content = None
                self._connected = False

    def is_connected(self) -> bool:
        return self._connected and self._service_instance is not None

    @property
    def content(self):
        """Get vSphere content object"""
        if not self._content:
            raise ConnectionError("Not connected to vSphere")
        return self._content

    def ping(self) -> None:
        if not self.is_connected():
            raise ConnectionError("Not connected to vSphere")
        try:
            self._service_instance.CurrentTime()
        except _REMOTE_ERRORS as e:
            raise translate_fault(e, f"Keep-alive to {self.host} failed") from e

    def to_vim(self, reference: ObjectRef):
        """Bind an ObjectRef to a managed object on this connection"""
        if reference.endpoint != self.endpoint_name:
            raise NotFoundError(f"{reference} does not belong to {self.endpoint_name}")
        if self._service_instance is None:
            raise ConnectionError("Not connected to vSphere")
        vim_type = _VIM_TYPES[reference.kind]
        return vim_type(reference.moid, self._service_instance._stub)

    def to_ref(self, obj) -> ObjectRef:
        for kind, vim_type in _VIM_TYPES.items():
            if isinstance(obj, vim_type):
                return ObjectRef(self.endpoint_name, kind, obj._moId)
        raise ValueError(f"Unsupported managed object type {type(obj).__name__}")

    def get_obj(self, vimtype: List, name: str, container=None) -> Optional[Any]:
        """Get vSphere object by name"""
        obj = None
        view = self.content.viewManager.CreateContainerView(
            container or self.content.rootFolder, vimtype, True)

        try:
            for c in view.view:
                if c.name == name:
                    obj = c
                    break
        finally:
            view.Destroy()
        return obj

    def get_datacenter(self, datacenter_name: str) -> vim.Datacenter:
        dc = self.get_obj([vim.Datacenter], datacenter_name)
        if not dc:
            raise NotFoundError(f"Datacenter '{datacenter_name}' not found on {self.host}")
        return dc

    def find_default_host(self, datacenter: str) -> ObjectRef:
        try:
            dc = self.get_datacenter(datacenter)
            view = self.content.viewManager.CreateContainerView(dc.hostFolder, [vim.HostSystem], True)
            try:
                hosts = list(view.view)
            finally:
                view.Destroy()
        except _REMOTE_ERRORS as e:
            raise translate_fault(e, f"Host lookup in {datacenter} failed") from e

        if not hosts:
            raise NotFoundError(f"No host found in datacenter '{datacenter}'")
        if len(hosts) > 1:
            raise NotFoundError(
                f"Datacenter '{datacenter}' holds {len(hosts)} hosts, no single default host",
                details={'hosts': [h._moId for h in hosts]},
            )
        return self.to_ref(hosts[0])

    def retrieve_properties(self, reference: ObjectRef, attributes: Sequence[str]) -> Dict[str, Any]:
        """Fetch property paths of one object through the PropertyCollector"""
        obj = self.to_vim(reference)
        obj_spec = vmodl.query.PropertyCollector.ObjectSpec(obj=obj)
        prop_spec = vmodl.query.PropertyCollector.PropertySpec(
            type=type(obj),
            pathSet=list(attributes),
        )
        filter_spec = vmodl.query.PropertyCollector.FilterSpec(
            objectSet=[obj_spec],
            propSet=[prop_spec],
        )

        try:
            results = self.content.propertyCollector.RetrieveProperties(specSet=[filter_spec])
        except _REMOTE_ERRORS as e:
            raise translate_fault(e, f"Reading {reference} failed") from e

        if not results:
            raise NotFoundError(f"{reference} not found")

        properties = {}
        for content in results:
            missing = [m.path for m in (getattr(content, 'missingSet', None) or [])]
            if missing:
                raise NotFoundError(f"{reference} has no readable {', '.join(missing)}",
                                    details={'missing': missing})
            for prop in content.propSet:
                properties[prop.name] = self._convert(prop.val)
        return properties

    def list_objects(self, kind: ObjectKind) -> Dict[ObjectRef, str]:
        try:
            view = self.content.viewManager.CreateContainerView(
                self.content.rootFolder, [_VIM_TYPES[kind]], True)
            try:
                return {self.to_ref(obj): obj.name for obj in view.view}
            finally:
                view.Destroy()
        except _REMOTE_ERRORS as e:
            raise translate_fault(e, f"Listing {kind.value} objects failed") from e

    def create_vm(self, spec: VMSpec, host: ObjectRef) -> ObjectRef:
        try:
            vm = self.vm_manager.create_vm(spec, self.to_vim(host))
        except _REMOTE_ERRORS as e:
            raise translate_fault(e, f"Creating VM '{spec.name}' failed") from e
        return self.to_ref(vm)

    def cancel(self) -> None:
        """Cancel the running task and drop pooled HTTP connections"""
        task, self._current_task = self._current_task, None
        try:
            if task is not None:
                task.CancelTask()
        finally:
            if self._service_instance is not None:
                self._service_instance._stub.DropConnections()
            self._connected = False

    def wait_for_task(self, task: vim.Task, poll_interval: float = 0.5) -> Any:
        """Wait for vSphere task to complete and return its result"""
        self._current_task = task
        try:
            while task.info.state not in [vim.TaskInfo.State.success,
                                          vim.TaskInfo.State.error]:
                time.sleep(poll_interval)
        finally:
            self._current_task = None

        if task.info.state == vim.TaskInfo.State.error:
            error = task.info.error
            raise translate_fault(error, f"Task {task.info.descriptionId or task.info.key} failed") from error

        return task.info.result

    def _convert(self, value: Any) -> Any:
        """Replace managed objects in property values with ObjectRefs"""
        if isinstance(value, VmomiSupport.ManagedObject):
            try:
                return self.to_ref(value)
            except ValueError:
                return value._moId
        if isinstance(value, list):
            return tuple(self._convert(v) for v in value)
        return value
