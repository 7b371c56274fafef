"""
Translation of remote status strings into stable internal enums
"""

import logging
import threading
from typing import Dict, Optional, Set, Tuple, Type, TypeVar

from .base import OverallStatus, PowerState


logger = logging.getLogger(__name__)

E = TypeVar('E', OverallStatus, PowerState)


class StatusTranslator:
    """Maps vSphere status values onto OverallStatus and PowerState"""

    # ManagedEntity.Status
    _overall_status_map: Dict[str, OverallStatus] = {
        'gray': OverallStatus.UNKNOWN,
        'green': OverallStatus.NORMAL,
        'yellow': OverallStatus.WARNING,
        'red': OverallStatus.ERROR,
    }

    # HostSystem.PowerState and VirtualMachine.PowerState
    _power_state_map: Dict[str, PowerState] = {
        'poweredOn': PowerState.POWERED_ON,
        'poweredOff': PowerState.POWERED_OFF,
        'standBy': PowerState.STANDBY,
        'unknown': PowerState.UNKNOWN,
    }

    def __init__(self):
        self._unmapped: Set[Tuple[str, str]] = set()
        self._lock = threading.Lock()

    def overall_status(self, value: Optional[str]) -> OverallStatus:
        return self._translate(value, self._overall_status_map, OverallStatus, 'overall status')

    def power_state(self, value: Optional[str]) -> PowerState:
        return self._translate(value, self._power_state_map, PowerState, 'power state')

    def unmapped_values(self) -> Set[Tuple[str, str]]:
        """(category, value) pairs seen so far that fell back to UNKNOWN"""
        with self._lock:
            return set(self._unmapped)

    def _translate(self, value: Optional[str], table: Dict[str, E], enum_type: Type[E],
                   category: str) -> E:
        if value is None:
            return enum_type.UNKNOWN
        # pyVmomi enum values are str subclasses
        key = str(value)
        if key in table:
            return table[key]

        with self._lock:
            first_seen = (category, key) not in self._unmapped
            self._unmapped.add((category, key))
        if first_seen:
            logger.warning(f"Unmapped {category} value {key!r}, treating as {enum_type.UNKNOWN.name}")
        return enum_type.UNKNOWN
