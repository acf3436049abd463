"""
Error Taxonomy Module

Domain errors raised by the engines. Every error carries an ErrorCode so the
service facade can hand callers a typed outcome instead of an exception.
"""

from enum import Enum


class ErrorCode(Enum):
    """Outcome categories visible to callers"""
    INVALID_ARGUMENT = "invalid_argument"
    NOT_FOUND = "not_found"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    UNAUTHORIZED = "unauthorized"
    CONFLICT = "conflict"
    STORE_FAILURE = "store_failure"


class CoinbookError(Exception):
    """Base class for all coinbook domain errors"""
    code: ErrorCode = ErrorCode.INVALID_ARGUMENT


class InvalidArgument(CoinbookError):
    """Malformed or out-of-range input"""
    code = ErrorCode.INVALID_ARGUMENT


class NotFound(CoinbookError):
    """
    A coin, user or request does not resolve.

    Also raised when the caller is not allowed to see the referenced
    object, so existence is never leaked.
    """
    code = ErrorCode.NOT_FOUND


class InsufficientFunds(CoinbookError):
    """Sender balance is lower than the requested amount"""
    code = ErrorCode.INSUFFICIENT_FUNDS

    def __init__(self, available: int, requested: int):
        super().__init__(f"Insufficient funds: available {available}, requested {requested}")
        self.available = available
        self.requested = requested


class Unauthorized(CoinbookError):
    """Role or permission check failed"""
    code = ErrorCode.UNAUTHORIZED


class Conflict(CoinbookError):
    """Operation targets the caller itself or collides with existing state"""
    code = ErrorCode.CONFLICT


class StoreFailure(CoinbookError):
    """The backing store could not complete or commit the unit of work"""
    code = ErrorCode.STORE_FAILURE
