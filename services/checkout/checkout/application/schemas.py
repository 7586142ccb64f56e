from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from checkout.domain.enums import OrderStatus, PaymentMethod, PaymentType, ProductType

class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True

# Requests

class OrderItemCreate(CamelModel):
    product_id: int
    quantity: int = Field(gt=0)

class PaymentDetails(CamelModel):
    phone: Optional[str] = None
    reference: Optional[str] = None
    details: Optional[str] = None

class OrderCreate(CamelModel):
    items: list[OrderItemCreate] = []
    delivery_address: Optional[str] = None
    payment_type: PaymentType
    payment_details: Optional[PaymentDetails] = None
    voucher_code: Optional[str] = None
    delivery_voucher_code: Optional[str] = None
    # Client-computed amounts, cross-checked against the server's
    subtotal: Decimal
    discount_amount: Decimal = Decimal("0")
    delivery_fee: Decimal = Decimal("0")
    total: Decimal
    notes: Optional[str] = None

class VoucherValidateRequest(CamelModel):
    code: str
    order_total: Decimal
    product_types: list[ProductType] = []

class DeliveryVoucherValidateRequest(CamelModel):
    code: str
    order_total: Decimal
    delivery_fee: Optional[Decimal] = None

class PaymentCreate(CamelModel):
    order_id: int
    method: PaymentMethod
    phone_number: Optional[str] = None
    transaction_code: Optional[str] = None
    mpesa_message: Optional[str] = None
    stk_push: bool = False

class OrderReject(CamelModel):
    reason: Optional[str] = None

class SellerStatusUpdate(CamelModel):
    status: OrderStatus
    status_message: Optional[str] = None

class GatewayCallback(BaseModel):
    """Callback body posted by the gateway; field names are the gateway's own."""
    transaction_reference: str = Field(alias="TransactionReference")
    result_code: int = Field(alias="ResultCode")
    result_desc: Optional[str] = Field(default=None, alias="ResultDesc")
    amount: Optional[Decimal] = Field(default=None, alias="Amount")
    mpesa_receipt_number: Optional[str] = Field(default=None, alias="MpesaReceiptNumber")
    transaction_date: Optional[str] = Field(default=None, alias="TransactionDate")
    phone_number: Optional[str] = Field(default=None, alias="PhoneNumber")
    external_reference: Optional[str] = Field(default=None, alias="ExternalReference")
    class Config:
        populate_by_name = True
        extra = "allow"

# Responses

class OrderItemRead(CamelModel):
    id: int
    product_id: int
    quantity: int
    unit_price: float
    discount_applied: float
    product_name_snapshot: Optional[str] = None
    product_type_snapshot: Optional[str] = None
    seller_id: str

class DeliveryRead(CamelModel):
    id: int
    address: str
    tracking_id: str
    status: str
    fee: float
    delivery_notes: Optional[str] = None

class PaymentRead(CamelModel):
    id: int
    order_id: int
    user_id: str
    amount: float
    method: str
    status: str
    phone_number: Optional[str] = None
    transaction_code: Optional[str] = None
    reference_number: str
    external_reference: Optional[str] = None
    description: Optional[str] = None
    callback_received: bool = False
    failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

class OrderRead(CamelModel):
    id: int
    order_number: Optional[str] = None
    customer_id: str
    customer_name: Optional[str] = None
    subtotal: float
    discount_amount: float
    delivery_fee: float
    total: float
    status: str
    payment_type: str
    payment_status: str
    voucher_code: Optional[str] = None
    delivery_voucher_code: Optional[str] = None
    notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    approved_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    items: list[OrderItemRead]
    delivery: Optional[DeliveryRead] = None
    payment: Optional[PaymentRead] = None

class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    pages: int

class OrderPage(CamelModel):
    orders: list[OrderRead]
    pagination: Pagination

class PaymentPage(CamelModel):
    payments: list[PaymentRead]
    pagination: Pagination

class TimelineEventRead(CamelModel):
    id: int
    order_id: int
    action: str
    actor_role: str
    actor_id: Optional[str] = None
    actor_name: Optional[str] = None
    old_status: Optional[str] = None
    new_status: Optional[str] = None
    description: str
    metadata: Optional[Any] = None
    created_at: datetime

class OrderTimelineRead(CamelModel):
    order_id: int
    order_number: Optional[str] = None
    status: str
    payment_status: str
    events: list[TimelineEventRead]

class VoucherRead(CamelModel):
    id: int
    code: str
    name: Optional[str] = None
    discount_type: str
    discount_value: float

class VoucherValidation(CamelModel):
    valid: bool
    voucher: VoucherRead
    discount_amount: float
    final_total: float

class DeliveryVoucherValidation(CamelModel):
    valid: bool
    voucher: VoucherRead
    discount_amount: float
    final_delivery_fee: float

class StkPushStatus(CamelModel):
    initiated: bool
    transaction_reference: Optional[str] = None
    message: str

class PaymentInitiated(CamelModel):
    success: bool
    payment: PaymentRead
    stk_push: Optional[StkPushStatus] = None

class PaymentStatusRead(CamelModel):
    order_id: int
    order_status: str
    payment_status: str
    payment: Optional[PaymentRead] = None
    stk_push_data: Optional[Any] = None
    callback_data: Optional[Any] = None

class CallbackAck(CamelModel):
    success: bool
    message: str
    payment_status: Optional[str] = None
