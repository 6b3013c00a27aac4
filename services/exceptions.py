"""
Exceptions raised by the identity clustering engine
"""

from typing import Optional


class IdentityReconciliationError(Exception):
    """Base class for engine errors"""
    pass


class StoreError(IdentityReconciliationError):
    """
    The contact store is unavailable or a transaction failed.
    The transaction has been rolled back in full when this is raised.
    """
    pass


class MergeConflictError(StoreError):
    """A concurrent request touched the same contacts; the request can be re-run"""
    pass


class RetryExhaustedError(StoreError):
    """Conflict retries ran out before the request could commit"""

    def __init__(self, message: str, attempts: Optional[int] = None):
        super().__init__(message)
        self.attempts = attempts
