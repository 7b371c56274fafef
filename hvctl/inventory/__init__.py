"""
Inventory types, cache and status translation
"""

from .cache import InventoryCache
from .status import StatusTranslator

__all__ = ['InventoryCache', 'StatusTranslator']
