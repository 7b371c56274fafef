"""
Connection and session management modules
"""

from .base import BaseConnection
from .session import Session, SessionManager, SessionState

__all__ = [
    'BaseConnection',
    'Session',
    'SessionManager',
    'SessionState',
]
