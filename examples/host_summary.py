"""
Print the default host and its datastores for the ESXi host named in .env

Expects ESXI_HOST and ESXI_PASSWORD (and optionally ESXI_USER, ESXI_PORT,
ESXI_VERIFY_SSL) in the environment or in a .env file.
"""

import logging
import sys

from hvctl import HVClient, HVError, ConfigError, endpoint_from_env

GB = 1024 ** 3


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        endpoint = endpoint_from_env()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    with HVClient(endpoint) as client:
        try:
            host = client.get_host_info()
        except HVError as e:
            print(f"Failed to read host info: {e}", file=sys.stderr)
            return 1

        print(f"Host:          {host.name}")
        print(f"Overall:       {host.overall_status.name}")
        print(f"Power:         {host.power_state.name}")
        print(f"CPU:           {host.cpu_mhz} MHz")
        print(f"Memory:        {host.memory_bytes // GB} GB")
        print(f"Datastores:    {host.datastore_count}")

        failed = 0
        for result in client.list_datastores(host.reference):
            if not result.ok:
                failed += 1
                print(f"  {result.reference.moid}: unavailable ({result.error})")
                continue
            ds = result.info
            print(f"  {ds.name}: capacity {ds.capacity_bytes // GB} GB, "
                  f"free {ds.free_bytes // GB} GB, used {ds.used_bytes // GB} GB")

    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
