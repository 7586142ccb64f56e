import json
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool
from checkout.auth_local import AuthenticatedPrincipal, get_principal
from checkout.application.payment_service import PaymentService
from checkout.application.schemas import (
    CallbackAck, GatewayCallback, OrderRead, PaymentCreate, PaymentInitiated, PaymentPage, PaymentStatusRead,
)
from checkout.domain.errors import PaymentNotFound
from checkout.infrastructure.lipia import LipiaClient
from shared.core import get_logger, set_request_context
from .deps import get_gateway, get_payment_service
from .routes import page_response

logger = get_logger(__name__)

router = APIRouter(tags=["payments"])

@router.post("/payments", response_model=PaymentInitiated)
def create_payment(
    payload: PaymentCreate,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    service: PaymentService = Depends(get_payment_service),
    gateway: LipiaClient = Depends(get_gateway),
):
    """Start an STK push for an order, or record a manually submitted payment."""
    set_request_context(order_id=str(payload.order_id))
    return service.initiate(principal, payload, gateway)

@router.get("/payments", response_model=PaymentPage)
def list_payments(
    page: int = 1,
    limit: int = 10,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    service: PaymentService = Depends(get_payment_service),
):
    return page_response(service.list_payments(principal, page, limit), "payments")

@router.get("/payments/status/{order_id}", response_model=PaymentStatusRead)
def payment_status(
    order_id: int,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    service: PaymentService = Depends(get_payment_service),
):
    return service.status(principal, order_id)

@router.post("/payments/callback/order/{order_id}", response_model=CallbackAck)
async def payment_callback(
    order_id: int,
    request: Request,
    service: PaymentService = Depends(get_payment_service),
):
    """Gateway webhook.

    Answers 200 for anything except an unknown payment, so the gateway stops
    retrying; processing errors are logged only.
    """
    set_request_context(order_id=str(order_id))
    try:
        callback = GatewayCallback.model_validate(json.loads(await request.body()))
    except (ValueError, ValidationError):
        logger.error("Invalid payment callback payload", exc_info=True, extra={'extra_fields': {'order_id': order_id}})
        return {"success": False, "message": "Invalid callback payload", "paymentStatus": None}

    logger.info(
        "Received STK push callback",
        extra={'extra_fields': {
            'order_id': order_id,
            'transaction_reference': callback.transaction_reference,
            'result_code': callback.result_code,
        }},
    )
    try:
        outcome = await run_in_threadpool(service.reconcile_callback, order_id, callback)
    except PaymentNotFound as e:
        return JSONResponse(status_code=e.status_code, content=e.to_dict())
    except Exception:
        logger.error("STK push callback processing error", exc_info=True, extra={'extra_fields': {'order_id': order_id}})
        return {"success": False, "message": "Error processing callback", "paymentStatus": None}
    return {"success": True, "message": outcome.message, "paymentStatus": outcome.payment_status}

@router.get("/payments/callback/order/{order_id}")
def payment_callback_info(order_id: int):
    return {
        "message": "STK Push callback endpoint",
        "orderId": order_id,
        "method": "POST",
        "description": "This endpoint receives STK Push payment callbacks from Lipia",
    }

@router.post("/admin/orders/{order_id}/confirm-payment", response_model=OrderRead, tags=["admin"])
def confirm_payment(
    order_id: int,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    service: PaymentService = Depends(get_payment_service),
):
    """Admin verification of a payment the gateway never confirmed."""
    return service.confirm_manually(principal, order_id)
