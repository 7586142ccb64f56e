from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional
from sqlalchemy import select, or_
from sqlalchemy.orm import Session
from checkout.domain.enums import DiscountType
from checkout.domain.errors import InvalidVoucher, VoucherNotApplicable, MinimumOrderNotMet
from checkout.domain.models import Voucher, DeliveryVoucher, utcnow
from .pricing import to_money, ZERO

@dataclass
class VoucherQuote:
    voucher: Voucher
    discount_amount: Decimal

@dataclass
class DeliveryVoucherQuote:
    voucher: DeliveryVoucher
    discount_amount: Decimal
    final_delivery_fee: Decimal

def _normalize_code(code: Optional[str]) -> str:
    return (code or "").strip()

def _format_minimum(amount: Decimal) -> str:
    amount = Decimal(amount)
    return str(amount.quantize(Decimal(1))) if amount == amount.to_integral_value() else str(amount)

class VoucherValidator:
    """Read-only voucher checks.

    Usage counters are only read here; they are incremented by the order
    commit, in the same transaction as the order they gate.
    """

    def __init__(self, db: Session):
        self.db = db

    def validate_product_voucher(
        self,
        code: str,
        subtotal: Decimal,
        product_types: Iterable[str],
        now: Optional[datetime] = None,
    ) -> VoucherQuote:
        now = now or utcnow()
        stmt = select(Voucher).where(
            Voucher.code == _normalize_code(code),
            Voucher.is_active.is_(True),
            Voucher.valid_from <= now,
            Voucher.valid_until >= now,
            Voucher.used_count < Voucher.max_uses,
        )
        voucher = self.db.scalars(stmt).first()
        if voucher is None:
            raise InvalidVoucher("product")

        applicable = voucher.applicable_product_types or []
        if applicable and not set(applicable) & set(product_types):
            raise VoucherNotApplicable("product")

        minimum = Decimal(voucher.min_order_amount or 0)
        if minimum > 0 and subtotal < minimum:
            raise MinimumOrderNotMet(_format_minimum(minimum), "product")

        value = Decimal(voucher.discount_value)
        if voucher.discount_type == DiscountType.PERCENTAGE.value:
            discount = subtotal * value / 100
        else:
            discount = min(value, subtotal)
        if voucher.max_discount_amount and discount > voucher.max_discount_amount:
            discount = Decimal(voucher.max_discount_amount)
        return VoucherQuote(voucher, to_money(min(discount, subtotal)))

    def validate_delivery_voucher(
        self,
        code: str,
        subtotal: Decimal,
        delivery_fee: Decimal,
        now: Optional[datetime] = None,
    ) -> DeliveryVoucherQuote:
        now = now or utcnow()
        stmt = select(DeliveryVoucher).where(
            DeliveryVoucher.code == _normalize_code(code),
            DeliveryVoucher.is_active.is_(True),
            or_(DeliveryVoucher.expires_at.is_(None), DeliveryVoucher.expires_at >= now),
            DeliveryVoucher.used_count < DeliveryVoucher.max_uses,
        )
        voucher = self.db.scalars(stmt).first()
        if voucher is None:
            raise InvalidVoucher("delivery")

        minimum = Decimal(voucher.min_order_amount or 0)
        if minimum > 0 and subtotal < minimum:
            raise MinimumOrderNotMet(_format_minimum(minimum), "delivery")

        value = Decimal(voucher.discount_value or 0)
        if voucher.discount_type == DiscountType.PERCENTAGE.value:
            discount = delivery_fee * value / 100
        elif voucher.discount_type == DiscountType.FIXED_AMOUNT.value:
            discount = min(value, delivery_fee)
        elif voucher.discount_type == DiscountType.FREE_SHIPPING.value:
            discount = delivery_fee
        else:
            discount = ZERO
        discount = to_money(discount)
        return DeliveryVoucherQuote(voucher, discount, max(ZERO, delivery_fee - discount))
