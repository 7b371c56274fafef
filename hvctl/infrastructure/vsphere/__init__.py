"""
vSphere implementation of the management connection
"""

from .client import VSphereClient, translate_fault
from .vm_manager import VMManager

__all__ = ['VSphereClient', 'VMManager', 'translate_fault']
