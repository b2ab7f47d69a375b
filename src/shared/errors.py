"""Error taxonomy shared by every checkout context.

All errors derive from ``CheckoutError`` and carry:

    reason:    machine-readable snake_case code a checkout UI can switch on
    category:  one of validation / contention / integrity / fatal
    retryable: whether the caller may retry (contention errors need a fresh quote)
    messages:  field -> list of human readable messages

Validation errors have no side effects and are safe to retry after the input
is corrected. Contention errors mean the quote may be stale. Integrity errors
are rejected and never auto-corrected. Fatal errors mean storage state can no
longer be trusted for the affected order.
"""

from enum import Enum

from protean.exceptions import ProteanExceptionWithMessage
from protean.exceptions import ValidationError as DomainValidationError


class ErrorCategory(Enum):
    VALIDATION = "validation"
    CONTENTION = "contention"
    INTEGRITY = "integrity"
    FATAL = "fatal"


class CheckoutError(ProteanExceptionWithMessage):
    """Base class for every error raised by the engine.

    Builds on Protean's message-carrying exception, so ``messages`` always
    holds a field -> messages dict.
    """

    category = ErrorCategory.VALIDATION
    retryable = False
    default_reason = "checkout_error"
    field = "_entity"

    def __init__(self, messages=None, reason=None, **details):
        if messages is None:
            messages = {}
        elif isinstance(messages, str):
            messages = {self.field: [messages]}
        self.reason = reason or self.default_reason
        self.details = details
        super().__init__(messages)

    def to_dict(self) -> dict:
        return {
            "reason": self.reason,
            "category": self.category.value,
            "retryable": self.retryable,
            "messages": self.messages,
            **{k: str(v) for k, v in self.details.items()},
        }


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
class ValidationError(CheckoutError, DomainValidationError):
    """Generic field validation failure (``{"field": ["message"]}``).

    Also a Protean ``ValidationError``, so callers catching either see it.
    """

    default_reason = "invalid"


class ItemUnavailable(ValidationError):
    default_reason = "item_unavailable"
    field = "line_items"


class InvalidShippingSelection(ValidationError):
    default_reason = "invalid_shipping_selection"
    field = "shipping"


class CouponRejected(ValidationError):
    """A coupon failed validation. ``reason`` names the failed check."""

    default_reason = "coupon_rejected"
    field = "coupon"

    def __init__(self, code, reason, message=None, **details):
        self.code = code
        super().__init__(
            {"coupon": [message or f"Coupon {code!r} rejected: {reason}"]},
            reason=reason,
            code=code,
            **details,
        )


class InvalidTransition(ValidationError):
    default_reason = "invalid_transition"
    field = "status"


class SettlementCancelled(ValidationError):
    default_reason = "cancelled"


# ---------------------------------------------------------------------------
# Contention
# ---------------------------------------------------------------------------
class ContentionError(CheckoutError):
    category = ErrorCategory.CONTENTION
    retryable = True
    default_reason = "contention"


class CouponExhausted(ContentionError):
    default_reason = "coupon_exhausted"
    field = "coupon"


class InsufficientStock(ContentionError):
    default_reason = "insufficient_stock"
    field = "quantity"


class InsufficientBalance(ContentionError):
    default_reason = "insufficient_balance"
    field = "amount"


class SettlementTimeout(ContentionError):
    default_reason = "settlement_timeout"
    field = "locks"


# ---------------------------------------------------------------------------
# Integrity
# ---------------------------------------------------------------------------
class IntegrityViolation(CheckoutError):
    category = ErrorCategory.INTEGRITY
    default_reason = "integrity_violation"


class RefundExceedsRemaining(IntegrityViolation):
    default_reason = "refund_exceeds_remaining"
    field = "refund"


class RefundNotAllowed(IntegrityViolation):
    default_reason = "refund_not_allowed"
    field = "status"


class DuplicateSettlement(IntegrityViolation):
    default_reason = "duplicate_settlement"
    field = "quote"


# ---------------------------------------------------------------------------
# Fatal
# ---------------------------------------------------------------------------
class FatalError(CheckoutError):
    category = ErrorCategory.FATAL
    default_reason = "fatal"


class LedgerChainBroken(FatalError):
    default_reason = "ledger_chain_broken"
    field = "ledger"


class LockReleaseFailed(FatalError):
    default_reason = "lock_release_failed"
    field = "locks"
