"""Closed value sets shared by the order and payment pipeline."""

from enum import Enum


class Role(str, Enum):
    CUSTOMER = "CUSTOMER"
    SELLER = "SELLER"
    COMPANY = "COMPANY"
    ADMIN = "ADMIN"
    DELIVERY_AGENT = "DELIVERY_AGENT"

    @property
    def sells(self) -> bool:
        return self in (Role.SELLER, Role.COMPANY)


class ProductType(str, Enum):
    EGGS = "EGGS"
    CHICKEN_MEAT = "CHICKEN_MEAT"
    CHICKEN_FEED = "CHICKEN_FEED"
    CHICKS = "CHICKS"
    HATCHING_EGGS = "HATCHING_EGGS"


class DiscountType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"
    # Delivery vouchers only
    FREE_SHIPPING = "FREE_SHIPPING"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PAID = "PAID"
    APPROVED = "APPROVED"
    PACKED = "PACKED"
    READY_FOR_DELIVERY = "READY_FOR_DELIVERY"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


# Progress a seller may report once the order is approved
SELLER_PROGRESS_STATUSES = (
    OrderStatus.PACKED,
    OrderStatus.READY_FOR_DELIVERY,
    OrderStatus.IN_TRANSIT,
    OrderStatus.DELIVERED,
)


class PaymentType(str, Enum):
    """How the customer chose to pay at checkout."""
    # Customer already paid and pastes the M-Pesa confirmation (phone + code)
    MPESA = "MPESA"
    # Push prompt to the customer's phone, started after the order exists
    STK_PUSH = "STK_PUSH"
    CASH_ON_DELIVERY = "CASH_ON_DELIVERY"

    @property
    def is_prepaid(self) -> bool:
        return self is PaymentType.MPESA


class PaymentMethod(str, Enum):
    MPESA = "MPESA"
    CASH_ON_DELIVERY = "CASH_ON_DELIVERY"
    BANK = "BANK"


class PaymentStatus(str, Enum):
    UNPAID = "UNPAID"
    PAID = "PAID"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentStatus.CONFIRMED, PaymentStatus.REJECTED, PaymentStatus.FAILED)


class ApprovalAction(str, Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class NotificationChannel(str, Enum):
    EMAIL = "EMAIL"
    SMS = "SMS"


class TimelineEventType(str, Enum):
    ORDER_CREATED = "ORDER_CREATED"
    PAYMENT_SUBMITTED = "PAYMENT_SUBMITTED"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    ORDER_APPROVED = "ORDER_APPROVED"
    ORDER_REJECTED = "ORDER_REJECTED"
    STATUS_UPDATED = "STATUS_UPDATED"
    DELIVERY_ASSIGNED = "DELIVERY_ASSIGNED"
    DELIVERY_STARTED = "DELIVERY_STARTED"
    DELIVERY_COMPLETED = "DELIVERY_COMPLETED"
    ORDER_RECEIVED = "ORDER_RECEIVED"
    ORDER_COMPLETED = "ORDER_COMPLETED"
    REVIEW_SUBMITTED = "REVIEW_SUBMITTED"


class TimelineActor(str, Enum):
    SYSTEM = "SYSTEM"
    CUSTOMER = "CUSTOMER"
    SELLER = "SELLER"
    ADMIN = "ADMIN"
    DELIVERY_AGENT = "DELIVERY_AGENT"
