"""
Shared test fixtures and configuration for hvctl tests
"""

import pytest
from unittest.mock import Mock

from hvctl.client import HVClient
from hvctl.config import Endpoint, Settings
from hvctl.connections.session import SessionManager
from hvctl.infrastructure.vsphere.client import VSphereClient
from tests.mocks.connection import FakeClock, FakeEndpoint


@pytest.fixture
def endpoint():
    """Endpoint matching the fake server's name"""
    return Endpoint(address="esxi01.lab.local", username="root", credential_ref="ESXI_PASSWORD")


@pytest.fixture
def settings():
    """Default settings with keep-alive pings disabled"""
    return Settings(keepalive_interval=0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    """Records backoff delays instead of sleeping"""
    return []


@pytest.fixture
def fake_server():
    """Fake ESXi host with three datastores"""
    server = FakeEndpoint("esxi01.lab.local")
    datastores = [
        server.add_datastore("datastore-1", "datastore1", 500 * 1024 ** 3, 200 * 1024 ** 3),
        server.add_datastore("datastore-2", "datastore2", 1024 ** 4, 512 * 1024 ** 3),
        server.add_datastore("datastore-3", "nfs-iso", 2 * 1024 ** 4, 1024 ** 4),
    ]
    server.add_host(datastores=datastores)
    return server


@pytest.fixture
def session_manager(endpoint, settings, fake_server, sleeps, clock):
    """Session manager wired to the fake server"""
    manager = SessionManager(
        endpoint,
        fake_server.factory,
        settings,
        credentials=lambda ep: "secret",
        sleep=sleeps.append,
        clock=clock,
    )
    yield manager
    manager.close()


@pytest.fixture
def hv_client(endpoint, settings, fake_server, sleeps, clock):
    """Facade wired to the fake server"""
    client = HVClient(
        endpoint,
        settings=settings,
        connection_factory=fake_server.factory,
        credentials=lambda ep: "secret",
        sleep=sleeps.append,
        clock=clock,
    )
    yield client
    client.close()


@pytest.fixture
def mock_vsphere_service_instance():
    """Mock vSphere service instance"""
    from tests.mocks.vsphere import MockServiceInstance
    return MockServiceInstance()


@pytest.fixture
def connected_vsphere_client(mock_vsphere_service_instance):
    """VSphereClient with a mock service instance already attached"""
    client = VSphereClient(
        host="esxi01.lab.local",
        username="root",
        password="password",
        disable_ssl_verification=True
    )
    client._service_instance = mock_vsphere_service_instance
    client._content = mock_vsphere_service_instance.content
    client._connected = True
    return client


@pytest.fixture
def mock_vsphere_client():
    """Mock vSphere client"""
    client = Mock(spec=VSphereClient)
    client.host = "esxi01.lab.local"
    client.username = "root"
    client.wait_for_task = Mock(side_effect=lambda task: task.info.result)
    return client
