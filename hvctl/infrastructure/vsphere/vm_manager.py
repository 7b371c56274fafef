"""
VM creation for vSphere
"""

import logging
from typing import Optional

from pyVmomi import vim

from ...exceptions import NotFoundError
from ...inventory.base import VMSpec


logger = logging.getLogger(__name__)

SCSI_CONTROLLER_KEY = 1000
DISK_KEY = 2000


class VMManager:
    """Builds VM config specs and runs CreateVM_Task"""

    def __init__(self, vsphere_client):
        self.client = vsphere_client

    def create_vm(self, spec: VMSpec, host: vim.HostSystem) -> vim.VirtualMachine:
        """Create a powered-off VM on host and wait for the task to finish"""
        datacenter = self._get_datacenter(host)
        datastore = self._get_datastore(host, spec.datastore)
        resource_pool = host.parent.resourcePool

        config = self.build_config_spec(spec, datastore.name)

        logger.info(f"Creating VM {spec.name} with {spec.cpu_count} CPUs, {spec.memory_mb}MB RAM, "
                    f"{spec.disk_gb}GB disk on {datastore.name}")
        task = datacenter.vmFolder.CreateVM_Task(config=config, pool=resource_pool, host=host)
        return self.client.wait_for_task(task)

    def build_config_spec(self, spec: VMSpec, datastore_name: str) -> vim.vm.ConfigSpec:
        config = vim.vm.ConfigSpec()
        config.name = spec.name
        config.numCPUs = spec.cpu_count
        config.memoryMB = spec.memory_mb
        config.guestId = spec.guest_id
        config.annotation = spec.annotation
        config.files = vim.vm.FileInfo(vmPathName=f"[{datastore_name}]")
        config.deviceChange = []

        if spec.disk_gb:
            config.deviceChange.append(self._scsi_controller_spec())
            config.deviceChange.append(self._disk_spec(spec.disk_gb))

        return config

    def _scsi_controller_spec(self) -> vim.vm.device.VirtualDeviceSpec:
        controller = vim.vm.device.VirtualDeviceSpec()
        controller.operation = vim.vm.device.VirtualDeviceSpec.Operation.add
        controller.device = vim.vm.device.ParaVirtualSCSIController()
        controller.device.key = SCSI_CONTROLLER_KEY
        controller.device.busNumber = 0
        controller.device.sharedBus = vim.vm.device.VirtualSCSIController.Sharing.noSharing
        return controller

    def _disk_spec(self, disk_gb: int) -> vim.vm.device.VirtualDeviceSpec:
        disk = vim.vm.device.VirtualDeviceSpec()
        disk.operation = vim.vm.device.VirtualDeviceSpec.Operation.add
        disk.fileOperation = vim.vm.device.VirtualDeviceSpec.FileOperation.create
        disk.device = vim.vm.device.VirtualDisk()
        disk.device.key = DISK_KEY
        disk.device.controllerKey = SCSI_CONTROLLER_KEY
        disk.device.unitNumber = 0
        disk.device.capacityInKB = disk_gb * 1024 * 1024
        disk.device.backing = vim.vm.device.VirtualDisk.FlatVer2BackingInfo()
        disk.device.backing.diskMode = 'persistent'
        disk.device.backing.thinProvisioned = True
        return disk

    def _get_datacenter(self, host: vim.HostSystem) -> vim.Datacenter:
        parent = host.parent
        while parent is not None and not isinstance(parent, vim.Datacenter):
            parent = parent.parent
        if parent is None:
            raise NotFoundError(f"Host {host.name} is not inside a datacenter")
        return parent

    def _get_datastore(self, host: vim.HostSystem, name: Optional[str]) -> vim.Datastore:
        datastores = list(host.datastore)
        if name:
            for datastore in datastores:
                if datastore.name == name:
                    return datastore
            raise NotFoundError(f"Datastore '{name}' not attached to host {host.name}")
        if not datastores:
            raise NotFoundError(f"Host {host.name} has no datastores")
        return datastores[0]
