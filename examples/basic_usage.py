"""
Example usage of the hvctl library
"""

import os
from hvctl import HVClient, Endpoint, Settings, VMSpec

# The password is looked up from the environment variable named by credential_ref:
# export ESXI_PASSWORD=your_password
endpoint = Endpoint(
    address="esxi01.example.com",
    username="root",
    credential_ref="ESXI_PASSWORD",
    verify_ssl=False  # For lab hosts with self-signed certificates
)

settings = Settings(
    cache_ttl=30,
    request_timeout=float(os.getenv("HVCTL_TIMEOUT", "60")),
)

with HVClient(endpoint, settings=settings) as client:
    # First call logs in lazily
    host = client.get_host_info()
    print(f"{host.name}: {host.overall_status.name}, {host.power_state.name}")

    # Served from the cache for the next 30 seconds
    host = client.get_host_info()

    # Datastores are fetched one by one; unreadable ones carry their error
    for result in client.list_datastores(host.reference):
        if result:
            print(f"{result.info.name}: {result.info.free_bytes / 1024 ** 3:.1f} GB free")
        else:
            print(f"{result.reference}: {result.error}")

    # Validated locally before anything is sent to the host
    vm = client.create_vm(VMSpec(name="hvctl-demo", cpu_count=2, memory_mb=2048, disk_gb=16))
    print(f"Created {vm.name} as {vm.reference.moid}")
