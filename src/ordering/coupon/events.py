"""Domain events for coupons."""

from protean.fields import Decimal, Identifier, Integer, String

from ordering.domain import checkout


@checkout.event(part_of="Coupon")
class CouponUsageRecorded:
    """A settled order consumed one use of a coupon."""

    coupon_id = Identifier(required=True)
    code = String(required=True)
    order_id = Identifier(required=True)
    customer_id = Identifier()
    used_by_email = String()
    discount_amount = Decimal(required=True)
    usage_count = Integer(required=True)
    usage_limit = Integer()
