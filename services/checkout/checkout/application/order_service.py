"""Order creation and the order-side state transitions.

``create`` is split into ``quote`` (read-only repricing and reconciliation)
and ``commit`` (the single all-or-nothing write). Everything after the commit
(seller notifications, timeline) is best-effort.
"""

import math
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update, func, exists
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from checkout.auth_local import AuthenticatedPrincipal, require_roles
from checkout.core_settings import Settings, get_settings
from checkout.domain.enums import (
    NotificationChannel, OrderStatus, PaymentMethod, PaymentStatus, PaymentType, Role,
    SELLER_PROGRESS_STATUSES,
)
from checkout.domain.errors import (
    AmountMismatch, CheckoutError, Forbidden, InsufficientStock, InvalidOrderState, InvalidVoucher,
    MissingPaymentDetails, NoItems, OrderNotFound, TransactionFailed, Unauthorized,
)
from checkout.domain.models import (
    Delivery, DeliveryVoucher, Order, OrderItem, Payment, Product, Voucher, utcnow,
)
from checkout.infrastructure.db import apply_transaction_timeout
from checkout.infrastructure.lipia import normalize_phone_number
from checkout.infrastructure.notifications import NotificationDispatcher
from shared.core import get_logger
from .pricing import InventoryPricingResolver, PricedCart, round_shilling, ZERO
from .schemas import OrderCreate
from .timeline import OrderTimelineLogger
from .vouchers import VoucherValidator, VoucherQuote, DeliveryVoucherQuote

logger = get_logger(__name__)

UNAPPROVED_STATUSES = (OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value, OrderStatus.PAID.value)
CLOSED_STATUSES = (
    OrderStatus.REJECTED.value, OrderStatus.CANCELLED.value,
    OrderStatus.DELIVERED.value, OrderStatus.COMPLETED.value,
)


def release_stock(db: Session, order_id: int) -> bool:
    """Return an order's items to stock unless that already happened.

    Runs inside the caller's transaction; the flag flip and the restock commit
    or roll back together.
    """
    result = db.execute(
        update(Order)
        .where(Order.id == order_id, Order.stock_released.is_(False))
        .values(stock_released=True, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    items = db.scalars(select(OrderItem).where(OrderItem.order_id == order_id)).all()
    for item in items:
        db.execute(
            update(Product)
            .where(Product.id == item.product_id)
            .values(stock=Product.stock + item.quantity, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
    return True


@dataclass
class OrderQuote:
    """Server-side amounts for a cart, already reconciled with the client's."""
    cart: PricedCart
    subtotal: Decimal
    discount_amount: Decimal
    delivery_fee: Decimal
    total: Decimal
    voucher: Optional[VoucherQuote] = None
    delivery_voucher: Optional[DeliveryVoucherQuote] = None
    payment_phone: Optional[str] = None


@dataclass
class OrderFilter:
    customer_id: Optional[str] = None
    seller_id: Optional[str] = None
    status: Optional[OrderStatus] = None


@dataclass
class Page:
    items: list
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


def _ms() -> int:
    return int(time.time() * 1000)


class OrderService:
    def __init__(
        self,
        db: Session,
        notifier: Optional[NotificationDispatcher] = None,
        timeline: Optional[OrderTimelineLogger] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.notifier = notifier or NotificationDispatcher(db)
        self.timeline = timeline or OrderTimelineLogger(db)
        self.settings = settings or get_settings()
        self.pricing = InventoryPricingResolver(db)
        self.vouchers = VoucherValidator(db)

    # Creation

    def create(self, principal: AuthenticatedPrincipal, data: OrderCreate) -> Order:
        if principal.role is not Role.CUSTOMER:
            raise Unauthorized()
        quote = self.quote(data)
        order = self.commit(principal, data, quote)
        self._after_create(principal, order, quote)
        return self._load(order.id)

    def quote(self, data: OrderCreate, now: Optional[datetime] = None) -> OrderQuote:
        """Validate and reprice ``data`` without writing anything."""
        if not data.items:
            raise NoItems()

        payment_phone = None
        if data.payment_type is PaymentType.MPESA:
            details = data.payment_details
            if not details or not details.phone or not details.reference:
                raise MissingPaymentDetails()
            payment_phone = normalize_phone_number(details.phone)

        now = now or utcnow()
        cart = self.pricing.resolve(data.items, now)
        delivery_fee = self.pricing.default_delivery_fee() if data.delivery_address else ZERO

        voucher_quote = None
        discount = ZERO
        if data.voucher_code:
            voucher_quote = self.vouchers.validate_product_voucher(
                data.voucher_code, cart.subtotal, cart.product_types, now
            )
            discount = voucher_quote.discount_amount

        delivery_quote = None
        delivery_after_voucher = delivery_fee
        if data.delivery_voucher_code:
            delivery_quote = self.vouchers.validate_delivery_voucher(
                data.delivery_voucher_code, cart.subtotal, delivery_fee, now
            )
            delivery_after_voucher = delivery_quote.final_delivery_fee

        final_delivery_fee = round_shilling(max(ZERO, delivery_after_voucher))
        total = round_shilling(max(ZERO, cart.subtotal - discount + final_delivery_fee))

        tolerance = self.settings.AMOUNT_TOLERANCE
        for name, server, client in (
            ("subtotal", cart.subtotal, data.subtotal),
            ("discountAmount", discount, data.discount_amount),
            ("total", total, data.total),
        ):
            if abs(server - client) > tolerance:
                logger.warning(
                    "Client/server amount mismatch",
                    extra={'extra_fields': {'field': name, 'server': str(server), 'client': str(client)}},
                )
                raise AmountMismatch(name)

        return OrderQuote(
            cart=cart,
            subtotal=cart.subtotal,
            discount_amount=discount,
            delivery_fee=final_delivery_fee,
            total=total,
            voucher=voucher_quote,
            delivery_voucher=delivery_quote,
            payment_phone=payment_phone,
        )

    def commit(self, principal: AuthenticatedPrincipal, data: OrderCreate, quote: OrderQuote) -> Order:
        """Persist the order and consume stock and vouchers in one transaction.

        Stock and voucher counters use guarded updates; a guard that matches
        no row aborts the whole transaction.
        """
        prepaid = data.payment_type.is_prepaid
        details = data.payment_details
        try:
            apply_transaction_timeout(self.db, self.settings.ORDER_TX_TIMEOUT_SECONDS)

            order = Order(
                customer_id=principal.id,
                created_at=utcnow(),
                customer_name=principal.name,
                subtotal=quote.subtotal,
                discount_amount=quote.discount_amount,
                delivery_fee=quote.delivery_fee,
                total=quote.total,
                status=(OrderStatus.CONFIRMED if prepaid else OrderStatus.PENDING).value,
                payment_type=data.payment_type.value,
                payment_status=(PaymentStatus.PAID if prepaid else PaymentStatus.UNPAID).value,
                voucher_code=quote.voucher.voucher.code if quote.voucher else None,
                delivery_voucher_code=quote.delivery_voucher.voucher.code if quote.delivery_voucher else None,
                payment_phone=quote.payment_phone,
                payment_reference=details.reference if details else None,
                notes=data.notes,
            )
            self.db.add(order)
            self.db.flush()
            order.order_number = f"ORD-{order.created_at.year}-{order.id:05d}"

            for line in quote.cart.lines:
                order.items.append(OrderItem(
                    product_id=line.product.id,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    discount_applied=line.discount_applied,
                    product_name_snapshot=line.product.name,
                    product_type_snapshot=line.product.type,
                    seller_id=line.product.seller_id,
                ))

            if data.delivery_address:
                self.db.add(Delivery(
                    order=order,
                    address=data.delivery_address,
                    tracking_id=f"TRK{_ms()}",
                    status=OrderStatus.PENDING.value,
                    fee=quote.delivery_fee,
                    delivery_notes=(
                        f"Applied voucher: {quote.delivery_voucher.voucher.code}" if quote.delivery_voucher else None
                    ),
                ))

            if prepaid:
                applied = []
                if quote.voucher:
                    applied.append(f"Applied voucher: {quote.voucher.voucher.code}")
                if quote.delivery_voucher:
                    applied.append(f"Applied delivery voucher: {quote.delivery_voucher.voucher.code}")
                self.db.add(Payment(
                    order=order,
                    user_id=principal.id,
                    amount=quote.total,
                    method=PaymentMethod.MPESA.value,
                    status=PaymentStatus.PENDING.value,
                    phone_number=quote.payment_phone,
                    transaction_code=details.reference,
                    reference_number=f"PAY-{_ms()}",
                    mpesa_message=details.details,
                    description=" | ".join(applied) or None,
                ))
            self.db.flush()

            for line in quote.cart.lines:
                self._decrement_stock(line.product, line.quantity)
            if quote.voucher:
                self._consume_voucher(Voucher, quote.voucher.voucher.id, "product")
            if quote.delivery_voucher:
                self._consume_voucher(DeliveryVoucher, quote.delivery_voucher.voucher.id, "delivery")

            self.db.commit()
        except CheckoutError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Order transaction failed", exc_info=True)
            raise TransactionFailed(details=e.__class__.__name__) from e
        except Exception as e:
            self.db.rollback()
            logger.error("Unexpected error while committing order", exc_info=True)
            raise TransactionFailed(details=e.__class__.__name__) from e

        logger.info(
            f"Order {order.order_number} created",
            extra={'extra_fields': {
                'order_id': order.id, 'customer_id': principal.id,
                'total': str(order.total), 'payment_type': order.payment_type,
            }},
        )
        return order

    def _decrement_stock(self, product: Product, quantity: int) -> None:
        result = self.db.execute(
            update(Product)
            .where(Product.id == product.id, Product.stock >= quantity)
            .values(stock=Product.stock - quantity, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InsufficientStock(product.name)

    def _consume_voucher(self, model, voucher_id: int, scope: str) -> None:
        result = self.db.execute(
            update(model)
            .where(model.id == voucher_id, model.used_count < model.max_uses, model.is_active.is_(True))
            .values(used_count=model.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidVoucher(scope)

    def _after_create(self, principal: AuthenticatedPrincipal, order: Order, quote: OrderQuote) -> None:
        self.notifier.notify_many(
            quote.cart.seller_ids,
            [NotificationChannel.EMAIL],
            "new_order",
            order_id=order.id,
            sender_id=principal.id,
            order_number=order.order_number,
            payment_type=order.payment_type,
        )
        self.timeline.order_created(order.id, principal.id, principal.name, order.payment_type)

    # Reads

    def _base_query(self):
        return select(Order).options(
            selectinload(Order.items), selectinload(Order.delivery), selectinload(Order.payment)
        )

    def _load(self, order_id: int) -> Order:
        order = self.db.scalars(
            self._base_query().where(Order.id == order_id).execution_options(populate_existing=True)
        ).first()
        if order is None:
            raise OrderNotFound()
        return order

    def can_view(self, principal: AuthenticatedPrincipal, order: Order) -> bool:
        if principal.is_admin:
            return True
        if principal.role is Role.CUSTOMER:
            return order.customer_id == principal.id
        if principal.role.sells:
            return principal.id in order.seller_ids
        return False

    def get(self, principal: AuthenticatedPrincipal, order_id: int) -> Order:
        order = self._load(order_id)
        if not self.can_view(principal, order):
            raise OrderNotFound()
        return order

    def filter_for(self, principal: AuthenticatedPrincipal, status: Optional[OrderStatus] = None) -> OrderFilter:
        if principal.role is Role.CUSTOMER:
            return OrderFilter(customer_id=principal.id, status=status)
        if principal.role.sells:
            return OrderFilter(seller_id=principal.id, status=status)
        if principal.is_admin:
            return OrderFilter(status=status)
        raise Forbidden()

    def list_orders(self, order_filter: OrderFilter, page: int = 1, limit: int = 10) -> Page:
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        conditions = []
        if order_filter.customer_id:
            conditions.append(Order.customer_id == order_filter.customer_id)
        if order_filter.seller_id:
            conditions.append(
                exists().where(OrderItem.order_id == Order.id, OrderItem.seller_id == order_filter.seller_id)
            )
        if order_filter.status:
            conditions.append(Order.status == OrderStatus(order_filter.status).value)

        total = self.db.scalar(select(func.count(Order.id)).where(*conditions))
        orders = self.db.scalars(
            self._base_query()
            .where(*conditions)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        return Page(list(orders), page, limit, total or 0)

    # Seller and admin transitions

    def _seller_order(self, principal: AuthenticatedPrincipal, order_id: int) -> Order:
        require_roles(principal, Role.SELLER, Role.COMPANY)
        order = self._load(order_id)
        if principal.id not in order.seller_ids:
            raise OrderNotFound()
        return order

    def _transition(self, order: Order, expected_status: str, **values) -> None:
        """Apply ``values`` only if the order is still in ``expected_status``."""
        result = self.db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == expected_status)
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise InvalidOrderState("Order was modified concurrently, please retry", status_code=409)

    def approve(self, principal: AuthenticatedPrincipal, order_id: int) -> Order:
        order = self._seller_order(principal, order_id)
        if order.status == OrderStatus.APPROVED.value:
            raise InvalidOrderState("Order already approved")
        if order.payment_status != PaymentStatus.CONFIRMED.value:
            raise InvalidOrderState("Payment must be confirmed before approving the order")
        if order.status not in UNAPPROVED_STATUSES:
            raise InvalidOrderState(f"Order cannot be approved while {order.status}")

        old_status = order.status
        now = utcnow()
        self._transition(order, old_status, status=OrderStatus.APPROVED.value, approved_at=now, approved_by=principal.id)
        self.db.commit()
        order = self._load(order.id)

        self.timeline.order_approved(order.id, principal.id, principal.name, old_status)
        self.notifier.notify_many(
            [order.customer_id],
            [NotificationChannel.EMAIL, NotificationChannel.SMS],
            "order_approved",
            order_id=order.id,
            sender_id=principal.id,
            order_number=order.order_number,
        )
        return order

    def update_status(
        self,
        principal: AuthenticatedPrincipal,
        order_id: int,
        status: OrderStatus,
        status_message: Optional[str] = None,
    ) -> Order:
        status = OrderStatus(status)
        if status not in SELLER_PROGRESS_STATUSES:
            raise InvalidOrderState(f"Sellers cannot set status {status.value}")
        order = self._seller_order(principal, order_id)
        if order.status in UNAPPROVED_STATUSES:
            raise InvalidOrderState("Order must be approved before updating its status")
        if order.status in CLOSED_STATUSES:
            raise InvalidOrderState(f"Order is already {order.status}")

        old_status = order.status
        self._transition(order, old_status, status=status.value)
        if order.delivery is not None:
            order.delivery.status = status.value
        self.db.commit()
        order = self._load(order.id)

        self.timeline.status_updated(order.id, principal.id, principal.name, old_status, status.value)
        self.notifier.notify_many(
            [order.customer_id],
            [NotificationChannel.EMAIL],
            "order_status",
            order_id=order.id,
            sender_id=principal.id,
            order_number=order.order_number,
            status=status.value,
            status_message=status_message,
        )
        return order

    def reject(self, principal: AuthenticatedPrincipal, order_id: int, reason: Optional[str]) -> Order:
        """Reject an order and return its items to stock, exactly once."""
        require_roles(principal, Role.ADMIN)
        reason = (reason or "").strip()
        if not reason:
            raise CheckoutError("Rejection reason is required")
        order = self._load(order_id)
        if order.status in CLOSED_STATUSES:
            raise InvalidOrderState(f"Order is already {order.status}")

        old_status = order.status
        try:
            self._transition(order, old_status, status=OrderStatus.REJECTED.value, rejection_reason=reason)
            if not release_stock(self.db, order.id):
                logger.info("Stock already released for rejected order", extra={'extra_fields': {'order_id': order.id}})
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Order rejection failed", exc_info=True)
            raise TransactionFailed("Failed to reject order", details=e.__class__.__name__) from e
        order = self._load(order.id)

        self.timeline.order_rejected(order.id, principal.id, principal.name, reason, old_status)
        self.notifier.notify_many(
            [order.customer_id],
            [NotificationChannel.EMAIL, NotificationChannel.SMS],
            "order_rejected",
            order_id=order.id,
            sender_id=principal.id,
            order_number=order.order_number,
            reason=reason,
        )
        return order
