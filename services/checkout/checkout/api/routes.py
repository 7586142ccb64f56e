from typing import Optional
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from checkout.auth_local import AuthenticatedPrincipal, get_principal
from checkout.application.order_service import OrderService, Page
from checkout.application.pricing import InventoryPricingResolver, ZERO
from checkout.application.schemas import (
    DeliveryVoucherValidateRequest, DeliveryVoucherValidation, OrderCreate, OrderPage, OrderRead,
    OrderReject, OrderTimelineRead, SellerStatusUpdate, TimelineEventRead, VoucherValidateRequest,
    VoucherValidation,
)
from checkout.application.timeline import OrderTimelineLogger, parse_json_blob
from checkout.application.vouchers import VoucherValidator
from checkout.domain.enums import OrderStatus
from checkout.infrastructure.db import get_db
from .deps import get_order_service, get_timeline

router = APIRouter(tags=["orders"])

def page_response(page: Page, key: str) -> dict:
    return {
        key: page.items,
        "pagination": {"page": page.page, "limit": page.limit, "total": page.total, "pages": page.pages},
    }

@router.post("/orders", response_model=OrderRead)
def create_order(
    payload: OrderCreate,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    service: OrderService = Depends(get_order_service),
):
    """Reprice the cart server-side and commit the order atomically."""
    return service.create(principal, payload)

@router.get("/orders", response_model=OrderPage)
def list_orders(
    status: Optional[OrderStatus] = None,
    page: int = 1,
    limit: int = 10,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    service: OrderService = Depends(get_order_service),
):
    order_filter = service.filter_for(principal, status)
    return page_response(service.list_orders(order_filter, page, limit), "orders")

@router.get("/orders/{order_id}", response_model=OrderRead)
def get_order(
    order_id: int,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    service: OrderService = Depends(get_order_service),
):
    return service.get(principal, order_id)

@router.get("/orders/{order_id}/timeline", response_model=OrderTimelineRead)
def get_order_timeline(
    order_id: int,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    service: OrderService = Depends(get_order_service),
    timeline: OrderTimelineLogger = Depends(get_timeline),
):
    """Timeline events for an order, newest first."""
    order = service.get(principal, order_id)
    events = [
        TimelineEventRead(
            id=event.id,
            order_id=event.order_id,
            action=event.action,
            actor_role=event.actor_role,
            actor_id=event.actor_id,
            actor_name=event.actor_name,
            old_status=event.old_status,
            new_status=event.new_status,
            description=event.description,
            metadata=parse_json_blob(event.metadata_json),
            created_at=event.created_at,
        )
        for event in timeline.get_timeline(order.id)
    ]
    return OrderTimelineRead(
        order_id=order.id,
        order_number=order.order_number,
        status=order.status,
        payment_status=order.payment_status,
        events=events,
    )

@router.post("/orders/{order_id}/reject", response_model=OrderRead)
def reject_order(
    order_id: int,
    payload: OrderReject,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    service: OrderService = Depends(get_order_service),
):
    """Reject an order and return its items to stock (admin only)."""
    return service.reject(principal, order_id, payload.reason)

@router.post("/seller/orders/{order_id}/approve", response_model=OrderRead)
def approve_order(
    order_id: int,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    service: OrderService = Depends(get_order_service),
):
    return service.approve(principal, order_id)

@router.patch("/seller/orders/{order_id}/status", response_model=OrderRead)
def update_order_status(
    order_id: int,
    payload: SellerStatusUpdate,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    service: OrderService = Depends(get_order_service),
):
    return service.update_status(principal, order_id, payload.status, payload.status_message)

@router.post("/vouchers/validate", response_model=VoucherValidation, tags=["vouchers"])
def validate_voucher(
    payload: VoucherValidateRequest,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    quote = VoucherValidator(db).validate_product_voucher(
        payload.code, payload.order_total, [t.value for t in payload.product_types]
    )
    return {
        "valid": True,
        "voucher": quote.voucher,
        "discount_amount": quote.discount_amount,
        "final_total": max(ZERO, payload.order_total - quote.discount_amount),
    }

@router.post("/delivery-vouchers/validate", response_model=DeliveryVoucherValidation, tags=["vouchers"])
def validate_delivery_voucher(
    payload: DeliveryVoucherValidateRequest,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    fee = payload.delivery_fee
    if fee is None:
        fee = InventoryPricingResolver(db).default_delivery_fee()
    quote = VoucherValidator(db).validate_delivery_voucher(payload.code, payload.order_total, fee)
    return {
        "valid": True,
        "voucher": quote.voucher,
        "discount_amount": quote.discount_amount,
        "final_delivery_fee": quote.final_delivery_fee,
    }
