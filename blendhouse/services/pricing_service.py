from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from ..models.discount_code import FIXED, PERCENTAGE, DiscountCode
from ..models.shipping_method import ShippingMethod
from ..models.tax_rate import TaxRate
from ..utils.errors import DiscountCodeError, ValidationError
from ..utils.timeutil import utcnow


CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(value) -> int:
    return int((to_money(value) * 100).to_integral_value(rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class Quote:
    subtotal: Decimal
    shipping_cost: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    discount_code: Optional[str]
    discount_id: Optional[str]

    @property
    def total(self) -> Decimal:
        # every term is already in cents, so the sum is exact
        return self.subtotal + self.shipping_cost + self.tax_amount - self.discount_amount


class DiscountValidator:
    """Evaluates discount-code rules against a subtotal."""

    def validate(self, session, code: str, subtotal: Decimal, now: Optional[datetime] = None) -> DiscountCode:
        now = now or utcnow()
        discount = session.query(DiscountCode).filter(DiscountCode.code == code).first()
        if discount is None or not discount.is_active:
            raise DiscountCodeError("Discount code is not valid", {"code": code})
        if discount.valid_from and now < discount.valid_from:
            raise DiscountCodeError("Discount code is not active yet", {"code": code})
        if discount.valid_until and now > discount.valid_until:
            raise DiscountCodeError("Discount code has expired", {"code": code})
        if discount.max_uses is not None and discount.used_count >= discount.max_uses:
            raise DiscountCodeError("Discount code has reached its usage limit", {"code": code})
        if discount.min_order_amount is not None and subtotal < to_money(discount.min_order_amount):
            raise DiscountCodeError(
                "Order subtotal is below the discount minimum",
                {"code": code, "min_order_amount": str(to_money(discount.min_order_amount))},
            )
        return discount

    @staticmethod
    def amount_for(discount: DiscountCode, subtotal: Decimal) -> Decimal:
        value = Decimal(str(discount.discount_value))
        if discount.discount_type == PERCENTAGE:
            amount = subtotal * value / Decimal(100)
        elif discount.discount_type == FIXED:
            amount = value
        else:
            raise DiscountCodeError("Unsupported discount type", {"discount_type": discount.discount_type})
        return min(to_money(amount), subtotal)


class PricingService:
    def __init__(self, discount_validator: Optional[DiscountValidator] = None, default_tax_region: str = "Global"):
        self._discounts = discount_validator or DiscountValidator()
        self._default_tax_region = default_tax_region

    def shipping_cost(self, session, method_name: Optional[str]) -> Decimal:
        if not method_name:
            return ZERO
        method = session.query(ShippingMethod).filter(ShippingMethod.name == method_name).first()
        if method is None or not method.is_active:
            raise ValidationError("Unknown shipping method", {"shipping_method": method_name})
        return to_money(method.price)

    def tax_rate(self, session, region: Optional[str]) -> Decimal:
        for candidate in (region, self._default_tax_region):
            if not candidate:
                continue
            rate = (
                session.query(TaxRate)
                .filter(TaxRate.region == candidate, TaxRate.is_active.is_(True))
                .first()
            )
            if rate is not None:
                return Decimal(str(rate.rate))
        return Decimal(0)

    def quote(
        self,
        session,
        *,
        subtotal: Decimal,
        shipping_method: Optional[str],
        region: Optional[str],
        discount_code: Optional[str],
    ) -> Quote:
        subtotal = to_money(subtotal)
        discount_amount = ZERO
        discount = None
        if discount_code:
            discount = self._discounts.validate(session, discount_code, subtotal)
            discount_amount = self._discounts.amount_for(discount, subtotal)
        return Quote(
            subtotal=subtotal,
            shipping_cost=self.shipping_cost(session, shipping_method),
            tax_amount=to_money(subtotal * self.tax_rate(session, region)),
            discount_amount=discount_amount,
            discount_code=discount.code if discount else None,
            discount_id=discount.id if discount else None,
        )
