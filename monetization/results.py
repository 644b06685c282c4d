from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Final, Generic, Optional, TypeVar

T = TypeVar("T")

INVALID_AMOUNT: Final[str] = "INVALID_AMOUNT"
AMOUNT_LIMIT_EXCEEDED: Final[str] = "AMOUNT_LIMIT_EXCEEDED"
INVALID_PLAN: Final[str] = "INVALID_PLAN"
INVALID_TOKEN: Final[str] = "INVALID_TOKEN"
INVALID_PAYLOAD: Final[str] = "INVALID_PAYLOAD"
UNKNOWN_PRODUCT: Final[str] = "UNKNOWN_PRODUCT"
AMOUNT_MISMATCH: Final[str] = "AMOUNT_MISMATCH"
CURRENCY_MISMATCH: Final[str] = "CURRENCY_MISMATCH"
BALANCE_NOT_FOUND: Final[str] = "BALANCE_NOT_FOUND"
USER_NOT_FOUND: Final[str] = "USER_NOT_FOUND"
ORDER_NOT_FOUND: Final[str] = "ORDER_NOT_FOUND"
SUBSCRIPTION_NOT_FOUND: Final[str] = "SUBSCRIPTION_NOT_FOUND"
INSUFFICIENT_BALANCE: Final[str] = "INSUFFICIENT_BALANCE"
SUBSCRIPTION_INACTIVE: Final[str] = "SUBSCRIPTION_INACTIVE"
ORDER_STATE_INVALID: Final[str] = "ORDER_STATE_INVALID"
EMAIL_TAKEN: Final[str] = "EMAIL_TAKEN"
INVALID_SIGNATURE: Final[str] = "INVALID_SIGNATURE"
INVALID_CREDENTIALS: Final[str] = "INVALID_CREDENTIALS"
PAYPAL_UNAVAILABLE: Final[str] = "PAYPAL_UNAVAILABLE"
PAYPAL_REJECTED: Final[str] = "PAYPAL_REJECTED"
DB_ERROR: Final[str] = "DB_ERROR"


@dataclass(frozen=True)
class ServiceResult(Generic[T]):
    """
    Outcome of a service operation.

    Expected failures (validation, not found, conflict, integrity) come back
    as `success=False` with a stable `code`; only unexpected errors raise.
    """

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    code: Optional[str] = None
    # Set when the call was a replay of an already-applied token.
    replayed: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, data: Optional[T] = None, *, replayed: bool = False, **extra: Any) -> "ServiceResult[T]":
        return cls(success=True, data=data, replayed=replayed, extra=dict(extra))

    @classmethod
    def fail(cls, code: str, error: str, **extra: Any) -> "ServiceResult[T]":
        return cls(success=False, error=error, code=code, extra=dict(extra))
