"""Tests for the checkout error taxonomy."""

import pytest
from shared.errors import (
    CheckoutError,
    CouponExhausted,
    CouponRejected,
    DuplicateSettlement,
    ErrorCategory,
    InsufficientStock,
    ItemUnavailable,
    LedgerChainBroken,
    RefundExceedsRemaining,
    SettlementTimeout,
    ValidationError,
)


class TestCategories:
    @pytest.mark.parametrize(
        "error_cls,category,retryable",
        [
            (ValidationError, ErrorCategory.VALIDATION, False),
            (ItemUnavailable, ErrorCategory.VALIDATION, False),
            (InsufficientStock, ErrorCategory.CONTENTION, True),
            (CouponExhausted, ErrorCategory.CONTENTION, True),
            (SettlementTimeout, ErrorCategory.CONTENTION, True),
            (RefundExceedsRemaining, ErrorCategory.INTEGRITY, False),
            (DuplicateSettlement, ErrorCategory.INTEGRITY, False),
            (LedgerChainBroken, ErrorCategory.FATAL, False),
        ],
    )
    def test_category_and_retryability(self, error_cls, category, retryable):
        error = error_cls()
        assert isinstance(error, CheckoutError)
        assert error.category == category
        assert error.retryable is retryable

    def test_every_error_has_a_reason(self):
        assert InsufficientStock().reason == "insufficient_stock"
        assert ValidationError({"x": ["bad"]}, reason="custom").reason == "custom"


class TestMessages:
    def test_string_message_keyed_by_field(self):
        error = SettlementTimeout("Timed out", key="inventory:tee")
        assert error.messages == {"locks": ["Timed out"]}
        assert error.details == {"key": "inventory:tee"}

    def test_coupon_rejected_carries_code(self):
        error = CouponRejected("fiveoff", "expired")
        assert error.code == "fiveoff"
        assert error.reason == "expired"
        assert "coupon" in error.messages

    def test_to_dict(self):
        error = InsufficientStock({"quantity": ["Only 1 in stock"]}, available=1)
        assert error.to_dict() == {
            "reason": "insufficient_stock",
            "category": "contention",
            "retryable": True,
            "messages": {"quantity": ["Only 1 in stock"]},
            "available": "1",
        }
