"""
Error taxonomy for the BoondManager sync and data-quality engine.

Transport problems are retried by the client and surface as TransientFailure
once retries run out. Rejected operations (4xx other than 429) are never
retried. Configuration errors are raised before any network call is made.
"""

from typing import Any, Optional


class BoondError(Exception):
    """Base class for all engine errors"""


class TransientFailure(BoondError):
    """Timeouts, connection failures, 429 and 5xx responses that outlived the retry budget"""

    def __init__(self, message: str, status: Optional[int] = None, method: str = "",
                 path: str = "", attempts: int = 0):
        super().__init__(message)
        self.status = status
        self.method = method
        self.path = path
        self.attempts = attempts


class RejectedOperation(BoondError):
    """A 4xx response (other than 429) for a specific entity; never retried"""

    def __init__(self, message: str, status: int, entity_type: Optional[str] = None,
                 entity_id: Optional[str] = None, detail: str = ""):
        super().__init__(message)
        self.status = status
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.detail = detail


class ConfigurationError(BoondError):
    """Invalid configuration or relationship schema"""


class ProductionWriteError(ConfigurationError):
    """A create/delete was attempted against the read-only production tenant"""


class SyncAborted(BoondError):
    """A type-level failure stopped a sync run; the partial result is attached"""

    def __init__(self, message: str, result: Any = None):
        super().__init__(message)
        self.result = result
