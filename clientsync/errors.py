"""
Error taxonomy for client-side synchronization.

Transport failures are mapped onto these classes at the edge so that the
stores and engines only ever reason about four kinds of failure.
"""
from typing import Optional


class SyncError(Exception):
    """Base class for all synchronization errors."""
    pass


class TransientNetworkError(SyncError):
    """Connection failure, timeout or server-side hiccup. Safe to retry."""
    pass


class AuthenticationError(SyncError):
    """The session is no longer authenticated. Never retried."""
    pass


class BusinessRejection(SyncError):
    """
    The server understood the request and refused it.

    Examples: quota exceeded, invalid or expired plan, already subscribed,
    unknown payment order.
    """

    def __init__(
        self,
        message: str,
        code: str = "REJECTED",
        limit_reached: bool = False,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.limit_reached = limit_reached
        self.status_code = status_code


class ConsistencyRepairFailure(SyncError):
    """The entitled-but-no-plan repair pass could not find a plan."""
    pass
