"""
hvctl Library Exceptions
"""

class HVError(Exception):
    """Base exception for all hvctl errors"""
    retryable = False

    def __init__(self, message, code=None, details=None):
        super().__init__(message)
        self.code = code
        self.details = details or {}


class ConnectionError(HVError):
    """Network or transport failure"""
    retryable = True


class TimeoutError(ConnectionError):
    """Remote call exceeded its deadline"""
    pass


class AuthenticationError(HVError):
    """Authentication failure"""
    pass


AuthError = AuthenticationError


class NotFoundError(HVError):
    """Referenced object not found in inventory"""
    pass


class ValidationError(HVError):
    """Caller input rejected before or by the remote endpoint"""
    pass


class ResourceExhaustedError(HVError):
    """Remote capacity limit reached"""
    retryable = True


class StaleDataError(HVError):
    """Cached data is too old and no fresher data could be fetched"""
    pass


class ConfigError(HVError):
    """Configuration errors"""
    pass


class MissingConfigError(ConfigError):
    """Configuration file, section or field is absent"""
    pass


class MissingCredentialError(ConfigError):
    """Credential referenced by an endpoint is not available"""
    pass
