"""Authoritative repricing of a cart against current inventory.

Only product ids and quantities are taken from the client; prices,
discounts and stock are always re-read from the product table.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP
from typing import Iterable, List, Optional, Set
from sqlalchemy import select
from sqlalchemy.orm import Session
from checkout.domain.enums import DiscountType
from checkout.domain.errors import InsufficientStock, ProductUnavailable
from checkout.domain.models import Product, DeliveryFee, utcnow

CENT = Decimal("0.01")
ZERO = Decimal("0")


def to_money(value) -> Decimal:
    return Decimal(value if value is not None else 0).quantize(CENT, rounding=ROUND_HALF_UP)


def round_shilling(amount: Decimal) -> Decimal:
    """Round to whole shillings: a fraction of 0.4 or less rounds down, anything above rounds up."""
    amount = Decimal(amount)
    whole = amount.to_integral_value(rounding=ROUND_FLOOR)
    if amount - whole <= Decimal("0.4"):
        return whole
    return amount.to_integral_value(rounding=ROUND_CEILING)


@dataclass
class PricedLine:
    product: Product
    quantity: int
    unit_price: Decimal
    discount_applied: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass
class PricedCart:
    lines: List[PricedLine] = field(default_factory=list)
    subtotal: Decimal = ZERO
    product_types: Set[str] = field(default_factory=set)
    seller_ids: List[str] = field(default_factory=list)


def discount_active(product: Product, now: datetime) -> bool:
    return bool(
        product.has_discount
        and product.discount_start_date
        and product.discount_end_date
        and product.discount_start_date <= now <= product.discount_end_date
    )


def effective_unit_price(product: Product, now: datetime) -> tuple[Decimal, Decimal]:
    """Return ``(unit_price, discount_applied)`` for one unit of ``product`` at ``now``."""
    price = to_money(product.price)
    if not discount_active(product, now):
        return price, ZERO

    amount = Decimal(product.discount_amount or 0)
    if product.discount_type == DiscountType.PERCENTAGE.value:
        discount = to_money(price * amount / 100)
    elif product.discount_type == DiscountType.FIXED_AMOUNT.value:
        discount = to_money(amount)
    else:
        discount = ZERO
    return max(ZERO, price - discount), min(discount, price)


class InventoryPricingResolver:
    def __init__(self, db: Session):
        self.db = db

    def resolve(self, items: Iterable, now: Optional[datetime] = None) -> PricedCart:
        """Reprice ``items`` (objects with ``product_id`` and ``quantity``).

        Raises ``ProductUnavailable`` for missing or inactive products and
        ``InsufficientStock`` when the current stock cannot cover a line.
        """
        now = now or utcnow()
        cart = PricedCart()
        for item in items:
            product = self.db.get(Product, item.product_id)
            if product is None or not product.is_active:
                raise ProductUnavailable(item.product_id)
            if product.stock < item.quantity:
                raise InsufficientStock(product.name)

            unit_price, discount_applied = effective_unit_price(product, now)
            cart.lines.append(PricedLine(product, item.quantity, unit_price, discount_applied))
            cart.subtotal += unit_price * item.quantity
            cart.product_types.add(product.type)
            if product.seller_id not in cart.seller_ids:
                cart.seller_ids.append(product.seller_id)
        return cart

    def default_delivery_fee(self) -> Decimal:
        fee = self.db.scalars(select(DeliveryFee).where(DeliveryFee.is_default.is_(True)).limit(1)).first()
        return to_money(fee.amount) if fee else ZERO
