"""
Exceptions raised by the runtime engine and its collaborators
"""


class RuntimeEngineError(Exception):
    """Base class for runtime engine errors"""


class PersistenceError(RuntimeEngineError):
    """A store read or write failed; the poll cycle must not be treated as applied"""

    def __init__(self, operation: str, device_id: str = None, cause: Exception = None):
        self.operation = operation
        self.device_id = device_id
        self.cause = cause
        super().__init__(f"{operation} failed for device {device_id}: {cause}")


class DeliveryError(RuntimeEngineError):
    """The event consumer rejected a payload outright; retrying would not help"""


class SampleFetchError(RuntimeEngineError):
    """The remote API did not return a usable sample"""
