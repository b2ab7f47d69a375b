"""Payment collaborator port (abstract interface).

Defines the contract every payment gateway adapter implements. The engine
hands over (order reference, amount, currency, method) and gets back a
PaymentOutcome; it never sees or stores raw payment credentials.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

from shared.money import Money


class PaymentStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"  # Offline methods awaiting confirmation


@dataclass(frozen=True)
class LedgerTender:
    """Part of the order total paid from a balance ledger."""

    kind: str  # store_credit / gift_card / points
    account_id: str
    amount: Money


@dataclass(frozen=True)
class PaymentOutcome:
    """Result of a payment attempt, as reported by the collaborator."""

    status: PaymentStatus
    method: str = ""
    method_title: str = ""
    gateway_transaction_id: str | None = None
    failure_code: str | None = None
    failure_message: str | None = None
    tenders: tuple[LedgerTender, ...] = ()

    @property
    def success(self) -> bool:
        return self.status != PaymentStatus.FAILED

    @classmethod
    def succeeded(cls, method="", gateway_transaction_id=None, method_title="", tenders=()):
        return cls(
            status=PaymentStatus.SUCCEEDED,
            method=method,
            method_title=method_title or method,
            gateway_transaction_id=gateway_transaction_id,
            tenders=tuple(tenders),
        )

    @classmethod
    def failed(cls, code, message="", method=""):
        return cls(status=PaymentStatus.FAILED, method=method, failure_code=code, failure_message=message)

    @classmethod
    def pending(cls, method, method_title=""):
        return cls(status=PaymentStatus.PENDING, method=method, method_title=method_title or method)


@dataclass(frozen=True)
class RefundResult:
    """Result of a refund attempt."""

    success: bool
    gateway_refund_id: str | None = None
    gateway_status: str | None = None
    failure_reason: str | None = None


class PaymentGateway(ABC):
    """Abstract payment gateway interface."""

    @abstractmethod
    def charge(
        self,
        order_ref: str,
        amount: Money,
        currency: str,
        method: str,
    ) -> PaymentOutcome:
        """Charge the customer and report the outcome."""
        ...

    @abstractmethod
    def refund(
        self,
        gateway_transaction_id: str,
        amount: Money,
        reason: str,
    ) -> RefundResult:
        """Refund part or all of a previous charge."""
        ...
