"""
vSphere mock infrastructure for testing
"""
from .base import MockVSphereObject
from .service import (
    MockServiceInstance, MockContent, MockViewManager, MockContainerView, MockPropertyCollector,
    MockObjectContent,
)
from .inventory import (
    MockFolder, MockDatacenter, MockResourcePool, MockComputeResource, MockDatastore, MockHostSystem,
)
from .tasks import MockTask

__all__ = [
    'MockVSphereObject',
    'MockServiceInstance',
    'MockContent',
    'MockViewManager',
    'MockContainerView',
    'MockPropertyCollector',
    'MockObjectContent',
    'MockFolder',
    'MockDatacenter',
    'MockResourcePool',
    'MockComputeResource',
    'MockDatastore',
    'MockHostSystem',
    'MockTask',
]
