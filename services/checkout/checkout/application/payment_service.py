"""Payment initiation, gateway callback reconciliation and manual confirmation."""

import json
import time
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update, func, exists
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from checkout.auth_local import AuthenticatedPrincipal, require_roles
from checkout.core_settings import Settings, get_settings
from checkout.domain.enums import (
    ApprovalAction, NotificationChannel, OrderStatus, PaymentMethod, PaymentStatus, Role,
)
from checkout.domain.errors import (
    Forbidden, InvalidOrderState, MissingPaymentDetails, OrderNotFound, PaymentAlreadyExists,
    PaymentNotFound, TransactionFailed,
)
from checkout.domain.models import Order, OrderItem, Payment, PaymentApprovalLog, utcnow
from checkout.infrastructure.db import apply_transaction_timeout
from checkout.infrastructure.lipia import (
    LipiaClient, create_payment_metadata, format_payment_amount, generate_callback_url,
    generate_external_reference, normalize_phone_number,
)
from checkout.infrastructure.notifications import NotificationDispatcher
from shared.core import get_logger
from .order_service import Page, CLOSED_STATUSES, release_stock
from .schemas import GatewayCallback, PaymentCreate
from .timeline import OrderTimelineLogger, parse_json_blob

logger = get_logger(__name__)

RESULT_SUCCESS = 0
RESULT_CANCELLED_BY_USER = 1032
CONFIRMABLE_PAYMENT_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.APPROVED.value)


@dataclass
class CallbackOutcome:
    payment_status: str
    duplicate: bool = False

    @property
    def message(self) -> str:
        if self.duplicate:
            return "Callback already processed"
        return "Callback processed successfully"


def outcome_for(result_code: int, result_desc: Optional[str]) -> tuple[PaymentStatus, Optional[str]]:
    """Map a gateway result code to the payment's terminal status and failure reason."""
    if result_code == RESULT_SUCCESS:
        return PaymentStatus.CONFIRMED, None
    if result_code == RESULT_CANCELLED_BY_USER:
        return PaymentStatus.REJECTED, "Payment cancelled by user"
    return PaymentStatus.FAILED, result_desc or "Payment failed"


class PaymentService:
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

    def _order(self, order_id: int) -> Order:
        order = self.db.scalars(
            select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        ).first()
        if order is None:
            raise OrderNotFound()
        return order

    def _existing_payment(self, order_id: int) -> Optional[Payment]:
        return self.db.scalars(
            select(Payment).where(Payment.order_id == order_id).execution_options(populate_existing=True)
        ).first()

    # Initiation

    def initiate(self, principal: AuthenticatedPrincipal, data: PaymentCreate, gateway: LipiaClient) -> dict:
        order = self._order(data.order_id)
        if order.customer_id != principal.id:
            raise OrderNotFound()
        if order.status in CLOSED_STATUSES:
            raise InvalidOrderState(f"Cannot pay for an order that is {order.status}")
        if self._existing_payment(order.id) is not None:
            raise PaymentAlreadyExists()

        if data.stk_push and data.method is PaymentMethod.MPESA:
            return self._initiate_stk_push(principal, order, data, gateway)
        return self._record_manual_payment(principal, order, data)

    def _initiate_stk_push(
        self, principal: AuthenticatedPrincipal, order: Order, data: PaymentCreate, gateway: LipiaClient
    ) -> dict:
        raw_phone = data.phone_number or order.payment_phone
        if not raw_phone:
            raise MissingPaymentDetails("Phone number is required for STK Push payments")
        phone = normalize_phone_number(raw_phone)
        amount = format_payment_amount(order.total)
        external_reference = generate_external_reference("ORDER", order.id)
        metadata = create_payment_metadata(
            orderId=order.id,
            orderNumber=order.order_number,
            userId=principal.id,
            customerName=principal.name,
            paymentType="ORDER_PAYMENT",
        )

        # The pending row claims the order before the customer is prompted;
        # its reference is replaced by the gateway's once the push is accepted.
        payment = Payment(
            order_id=order.id,
            user_id=principal.id,
            amount=amount,
            method=PaymentMethod.MPESA.value,
            status=PaymentStatus.PENDING.value,
            phone_number=phone,
            reference_number=external_reference,
            external_reference=external_reference,
            description=f"STK Push payment for order {order.order_number}",
            metadata_json=json.dumps(metadata, default=str),
        )
        self._persist_payment(payment)

        try:
            result = gateway.initiate_stk_push(
                phone_number=phone,
                amount=amount,
                external_reference=external_reference,
                callback_url=generate_callback_url(f"order/{order.id}", self.settings.APP_URL),
                metadata=metadata,
            )
        except Exception:
            self._discard_payment(payment)
            raise

        payment.reference_number = result.transaction_reference
        payment.stk_push_data = json.dumps(result.raw, default=str)
        self._persist_payment(payment)
        logger.info(
            "STK push initiated",
            extra={'extra_fields': {
                'order_id': order.id, 'transaction_reference': result.transaction_reference, 'phone': phone,
            }},
        )
        self.timeline.payment_submitted(order.id, principal.id, principal.name, "MPESA STK Push", amount)
        return {
            "success": True,
            "payment": payment,
            "stk_push": {
                "initiated": True,
                "transaction_reference": result.transaction_reference,
                "message": result.customer_message,
            },
        }

    def _record_manual_payment(self, principal: AuthenticatedPrincipal, order: Order, data: PaymentCreate) -> dict:
        phone = None
        if data.method is PaymentMethod.MPESA:
            if not data.transaction_code and not data.mpesa_message:
                raise MissingPaymentDetails("MPESA payment requires a transaction code or the confirmation message")
            if data.phone_number:
                phone = normalize_phone_number(data.phone_number)
        payment = Payment(
            order_id=order.id,
            user_id=principal.id,
            amount=order.total,
            method=data.method.value,
            status=PaymentStatus.PENDING.value,
            phone_number=phone,
            transaction_code=data.transaction_code,
            reference_number=f"PAY{int(time.time() * 1000)}",
            mpesa_message=data.mpesa_message,
            description=f"{data.method.value} payment for order {order.order_number}",
        )
        self._persist_payment(payment)
        self.timeline.payment_submitted(order.id, principal.id, principal.name, data.method.value, order.total)
        return {"success": True, "payment": payment, "stk_push": None}

    def _discard_payment(self, payment: Payment) -> None:
        try:
            self.db.delete(payment)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error("Failed to discard unsent payment", exc_info=True, extra={'extra_fields': {'payment_id': payment.id}})
            raise

    def _persist_payment(self, payment: Payment) -> None:
        try:
            self.db.add(payment)
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise PaymentAlreadyExists() from e
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Failed to record payment", exc_info=True)
            raise TransactionFailed("Failed to process payment", details=e.__class__.__name__) from e

    # Callback reconciliation

    def reconcile_callback(self, order_id: int, callback: GatewayCallback) -> CallbackOutcome:
        """Apply a gateway callback to the matching pending payment.

        A payment already in a terminal state is left untouched; replays and
        late duplicates only produce a log line.
        """
        payment = self.db.scalars(
            select(Payment)
            .where(Payment.order_id == order_id, Payment.reference_number == callback.transaction_reference)
            .execution_options(populate_existing=True)
        ).first()
        if payment is None:
            logger.error(
                "Payment not found for callback",
                extra={'extra_fields': {'order_id': order_id, 'transaction_reference': callback.transaction_reference}},
            )
            raise PaymentNotFound("Payment record not found")

        if PaymentStatus(payment.status).is_terminal:
            logger.info(
                "Duplicate payment callback ignored",
                extra={'extra_fields': {'payment_id': payment.id, 'status': payment.status}},
            )
            return CallbackOutcome(payment.status, duplicate=True)

        new_status, failure_reason = outcome_for(callback.result_code, callback.result_desc)
        order = self._order(order_id)
        old_order_status = order.status
        try:
            apply_transaction_timeout(self.db, self.settings.ORDER_TX_TIMEOUT_SECONDS)
            result = self.db.execute(
                update(Payment)
                .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING.value)
                .values(
                    status=new_status.value,
                    callback_data=callback.model_dump_json(by_alias=True),
                    callback_received=True,
                    failure_reason=failure_reason,
                    transaction_code=callback.mpesa_receipt_number or payment.transaction_code,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.db.rollback()
                logger.info("Concurrent payment callback ignored", extra={'extra_fields': {'payment_id': payment.id}})
                return CallbackOutcome(self._existing_payment(order_id).status, duplicate=True)

            promoted = False
            if new_status is PaymentStatus.CONFIRMED:
                promoted = self.db.execute(
                    update(Order)
                    .where(Order.id == order_id, Order.status.notin_(CLOSED_STATUSES))
                    .values(
                        payment_status=PaymentStatus.CONFIRMED.value,
                        status=OrderStatus.PAID.value,
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                ).rowcount == 1
            if promoted:
                self.db.add(PaymentApprovalLog(
                    order_id=order_id,
                    approver_id=None,
                    action=ApprovalAction.APPROVED.value,
                    notes=f"Confirmed by gateway callback, receipt {callback.mpesa_receipt_number or 'n/a'}",
                ))
            elif new_status is not PaymentStatus.CONFIRMED and self.settings.RESTOCK_ON_PAYMENT_FAILURE:
                release_stock(self.db, order_id)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

        logger.info(
            f"Payment {new_status.value.lower()} by gateway callback",
            extra={'extra_fields': {
                'order_id': order_id, 'payment_id': payment.id, 'result_code': callback.result_code,
                'receipt': callback.mpesa_receipt_number, 'amount': str(callback.amount),
            }},
        )
        if new_status is PaymentStatus.CONFIRMED and not promoted:
            logger.warning(
                "Payment confirmed for a closed order; refund required",
                extra={'extra_fields': {
                    'order_id': order_id, 'payment_id': payment.id, 'order_status': old_order_status,
                    'receipt': callback.mpesa_receipt_number, 'amount': str(callback.amount),
                }},
            )
        elif new_status is PaymentStatus.CONFIRMED:
            self.timeline.payment_confirmed(order_id, automatic=True, old_status=old_order_status)
            self._notify_confirmed(order_id, order.customer_id, order.order_number)
        else:
            self.timeline.payment_failed(order_id, new_status.value, failure_reason, callback.result_code)
            self.notifier.notify_many(
                [order.customer_id],
                [NotificationChannel.EMAIL],
                "payment_failed",
                order_id=order_id,
                order_number=order.order_number,
                reason=failure_reason,
            )
        return CallbackOutcome(new_status.value)

    def _seller_ids(self, order_id: int) -> list[str]:
        rows = self.db.scalars(
            select(OrderItem.seller_id).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
        ).all()
        return list(dict.fromkeys(rows))

    def _notify_confirmed(self, order_id: int, customer_id: str, order_number: Optional[str], customer_channels=None):
        self.notifier.notify_many(
            self._seller_ids(order_id),
            [NotificationChannel.EMAIL, NotificationChannel.SMS],
            "payment_received",
            order_id=order_id,
            order_number=order_number,
        )
        self.notifier.notify_many(
            [customer_id],
            customer_channels or [NotificationChannel.EMAIL, NotificationChannel.SMS],
            "payment_confirmed",
            order_id=order_id,
            order_number=order_number,
        )

    # Manual confirmation

    def confirm_manually(self, principal: AuthenticatedPrincipal, order_id: int, notes: Optional[str] = None) -> Order:
        """Admin verification of a payment the gateway did not confirm."""
        require_roles(principal, Role.ADMIN)
        order = self._order(order_id)
        if order.payment_status == PaymentStatus.CONFIRMED.value:
            raise InvalidOrderState("Payment already confirmed")
        if order.status in CLOSED_STATUSES:
            raise InvalidOrderState(f"Cannot confirm payment for an order that is {order.status}")
        payment = self._existing_payment(order_id)
        if payment is not None and payment.status not in CONFIRMABLE_PAYMENT_STATUSES:
            raise InvalidOrderState(f"Payment is {payment.status}; a new payment is required")

        old_status = order.status
        try:
            apply_transaction_timeout(self.db, self.settings.ORDER_TX_TIMEOUT_SECONDS)
            if payment is not None:
                result = self.db.execute(
                    update(Payment)
                    .where(Payment.id == payment.id, Payment.status.in_(CONFIRMABLE_PAYMENT_STATUSES))
                    .values(status=PaymentStatus.CONFIRMED.value, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    self.db.rollback()
                    raise InvalidOrderState("Payment is no longer awaiting confirmation")
            result = self.db.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.payment_status != PaymentStatus.CONFIRMED.value,
                    Order.status.notin_(CLOSED_STATUSES),
                )
                .values(payment_status=PaymentStatus.CONFIRMED.value, status=OrderStatus.PAID.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.db.rollback()
                raise InvalidOrderState("Payment already confirmed")
            self.db.add(PaymentApprovalLog(
                order_id=order_id,
                approver_id=principal.id,
                action=ApprovalAction.APPROVED.value,
                notes=notes or "Payment manually verified",
            ))
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Manual payment confirmation failed", exc_info=True)
            raise TransactionFailed("Failed to confirm payment", details=e.__class__.__name__) from e

        self.timeline.payment_confirmed(order_id, principal.id, principal.name, automatic=False, old_status=old_status)
        self._notify_confirmed(order_id, order.customer_id, order.order_number, [NotificationChannel.EMAIL])
        return self.db.scalars(
            select(Order)
            .where(Order.id == order_id)
            .options(selectinload(Order.items), selectinload(Order.delivery), selectinload(Order.payment))
            .execution_options(populate_existing=True)
        ).one()

    # Reads

    def status(self, principal: AuthenticatedPrincipal, order_id: int) -> dict:
        order = self._order(order_id)
        if order.customer_id != principal.id and not principal.is_admin:
            raise OrderNotFound()
        payment = self._existing_payment(order_id)
        return {
            "order_id": order.id,
            "order_status": order.status,
            "payment_status": order.payment_status,
            "payment": payment,
            "stk_push_data": parse_json_blob(payment.stk_push_data) if payment else None,
            "callback_data": parse_json_blob(payment.callback_data) if payment else None,
        }

    def list_payments(self, principal: AuthenticatedPrincipal, page: int = 1, limit: int = 10) -> Page:
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        conditions = []
        if principal.role is Role.CUSTOMER:
            conditions.append(Payment.user_id == principal.id)
        elif principal.role.sells:
            conditions.append(
                exists().where(OrderItem.order_id == Payment.order_id, OrderItem.seller_id == principal.id)
            )
        elif not principal.is_admin:
            raise Forbidden()

        total = self.db.scalar(select(func.count(Payment.id)).where(*conditions))
        payments = self.db.scalars(
            select(Payment).where(*conditions).order_by(Payment.created_at.desc(), Payment.id.desc())
            .offset((page - 1) * limit).limit(limit)
        ).all()
        return Page(list(payments), page, limit, total or 0)
