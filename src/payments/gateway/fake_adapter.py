"""Configurable fake payment gateway for development and testing.

Simulates a gateway without any external calls. It can be switched to
succeed, fail, or leave payments pending at runtime, and records every call
it receives.
"""

from uuid import uuid4

from payments.gateway.port import PaymentGateway, PaymentOutcome, RefundResult
from shared.money import Money


class FakeGateway(PaymentGateway):
    """Configurable fake payment gateway."""

    def __init__(self) -> None:
        self.should_succeed: bool = True
        self.leave_pending: bool = False
        self.failure_code: str = "card_declined"
        self.failure_reason: str = "Card declined"
        self.calls: list[dict] = []

    def configure(
        self,
        should_succeed: bool,
        failure_reason: str = "Card declined",
        failure_code: str = "card_declined",
        leave_pending: bool = False,
    ) -> None:
        """Configure gateway behavior at runtime."""
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason
        self.failure_code = failure_code
        self.leave_pending = leave_pending

    def charge(
        self,
        order_ref: str,
        amount: Money,
        currency: str,
        method: str,
    ) -> PaymentOutcome:
        call = {
            "method": "charge",
            "order_ref": order_ref,
            "amount": amount,
            "currency": currency,
            "payment_method": method,
        }
        self.calls.append(call)

        if not self.should_succeed:
            return PaymentOutcome.failed(self.failure_code, self.failure_reason, method=method)
        if self.leave_pending:
            return PaymentOutcome.pending(method)
        return PaymentOutcome.succeeded(method=method, gateway_transaction_id=f"fake_txn_{uuid4().hex[:12]}")

    def refund(
        self,
        gateway_transaction_id: str,
        amount: Money,
        reason: str,
    ) -> RefundResult:
        call = {
            "method": "refund",
            "gateway_transaction_id": gateway_transaction_id,
            "amount": amount,
            "reason": reason,
        }
        self.calls.append(call)

        if self.should_succeed:
            return RefundResult(
                success=True,
                gateway_refund_id=f"fake_ref_{uuid4().hex[:12]}",
                gateway_status="succeeded",
            )
        return RefundResult(
            success=False,
            failure_reason=self.failure_reason,
        )
