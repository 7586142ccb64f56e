from decimal import Decimal

import httpx
import pytest

from checkout.application.payment_service import PaymentService, outcome_for
from checkout.application.schemas import GatewayCallback, PaymentCreate
from checkout.core_settings import Settings
from checkout.domain.enums import PaymentStatus
from checkout.domain.errors import (
    Forbidden, GatewayError, InvalidOrderState, OrderNotFound, PaymentAlreadyExists, PaymentNotFound,
)
from checkout.domain.models import Order, Payment, PaymentApprovalLog
from checkout.infrastructure.lipia import LipiaClient
from conftest import LIPIA_BASE_URL, count, make_product, notification_count, order_payload, stock_of


@pytest.fixture
def product(db):
    return make_product(db, stock=5)


@pytest.fixture
def stk_order(db, order_service, customer, product):
    payload = order_payload([(product.id, 2)], subtotal=200, total=200, paymentType="STK_PUSH")
    return order_service.create(customer, payload)


@pytest.fixture
def pending_payment(payment_service, customer, stk_order, gateway):
    request = PaymentCreate(orderId=stk_order.id, method="MPESA", phoneNumber="0712345678", stkPush=True)
    return payment_service.initiate(customer, request, gateway)["payment"]


def callback(reference="TX-REF-001", code=0, desc="The service request is processed successfully.", receipt="SJK7XYZ123"):
    body = {
        "TransactionReference": reference,
        "ResultCode": code,
        "ResultDesc": desc,
        "Amount": 200,
        "PhoneNumber": "254712345678",
    }
    if receipt:
        body["MpesaReceiptNumber"] = receipt
    return GatewayCallback.model_validate(body)


def reload(db, model, id_):
    return db.get(model, id_, populate_existing=True)


@pytest.mark.parametrize("code,status,reason", [
    (0, PaymentStatus.CONFIRMED, None),
    (1032, PaymentStatus.REJECTED, "Payment cancelled by user"),
    (1, PaymentStatus.FAILED, "Insufficient funds"),
    (2001, PaymentStatus.FAILED, "Insufficient funds"),
])
def test_result_code_mapping(code, status, reason):
    assert outcome_for(code, "Insufficient funds") == (status, reason)


def test_failed_without_description():
    assert outcome_for(1, None) == (PaymentStatus.FAILED, "Payment failed")


def test_stk_push_creates_pending_payment(db, pending_payment, stk_order, gateway_handler):
    assert pending_payment.status == "PENDING"
    assert pending_payment.reference_number == "TX-REF-001"
    assert pending_payment.phone_number == "254712345678"
    assert pending_payment.amount == Decimal("200")
    assert pending_payment.external_reference.startswith(f"ORDER_{stk_order.id}_")

    sent = gateway_handler.calls[0]
    assert sent.url.path == "/api/v2/payments/stk-push"
    assert f"/api/payments/callback/order/{stk_order.id}" in sent.content.decode()
    assert reload(db, Order, stk_order.id).payment_status == "UNPAID"


def test_second_initiation_rejected(payment_service, customer, stk_order, pending_payment, gateway, gateway_handler):
    request = PaymentCreate(orderId=stk_order.id, method="MPESA", phoneNumber="0712345678", stkPush=True)
    with pytest.raises(PaymentAlreadyExists):
        payment_service.initiate(customer, request, gateway)
    assert len(gateway_handler.calls) == 1


def test_cannot_pay_for_someone_elses_order(payment_service, other_customer, stk_order, gateway):
    request = PaymentCreate(orderId=stk_order.id, method="MPESA", phoneNumber="0712345678", stkPush=True)
    with pytest.raises(OrderNotFound):
        payment_service.initiate(other_customer, request, gateway)


def test_manual_payment_skips_gateway(db, payment_service, customer, stk_order, gateway, gateway_handler):
    request = PaymentCreate(orderId=stk_order.id, method="MPESA", transactionCode="SJK7XYZ123")
    result = payment_service.initiate(customer, request, gateway)
    assert result["stk_push"] is None
    assert result["payment"].status == "PENDING"
    assert result["payment"].reference_number.startswith("PAY")
    assert gateway_handler.calls == []


def test_successful_callback_confirms_payment_and_order(db, payment_service, stk_order, pending_payment):
    before = notification_count(db, stk_order.id)

    outcome = payment_service.reconcile_callback(stk_order.id, callback())

    assert outcome.payment_status == "CONFIRMED"
    assert not outcome.duplicate
    payment = reload(db, Payment, pending_payment.id)
    assert payment.status == "CONFIRMED"
    assert payment.transaction_code == "SJK7XYZ123"
    assert payment.callback_received is True
    assert "SJK7XYZ123" in payment.callback_data
    order = reload(db, Order, stk_order.id)
    assert order.status == "PAID"
    assert order.payment_status == "CONFIRMED"
    log = db.query(PaymentApprovalLog).filter_by(order_id=stk_order.id).one()
    assert log.action == "APPROVED"
    assert log.approver_id is None
    # seller and customer, email and sms each
    assert notification_count(db, stk_order.id) - before == 4


def test_replayed_callback_is_a_no_op(db, payment_service, stk_order, pending_payment):
    payment_service.reconcile_callback(stk_order.id, callback())
    after_first = notification_count(db, stk_order.id)

    outcome = payment_service.reconcile_callback(stk_order.id, callback())

    assert outcome.duplicate
    assert outcome.payment_status == "CONFIRMED"
    assert notification_count(db, stk_order.id) == after_first
    assert count(db, PaymentApprovalLog, PaymentApprovalLog.order_id == stk_order.id) == 1
    assert reload(db, Order, stk_order.id).status == "PAID"


def test_cancelled_payment_leaves_order_untouched(db, payment_service, stk_order, pending_payment, product):
    outcome = payment_service.reconcile_callback(stk_order.id, callback(code=1032, desc="Request cancelled by user", receipt=None))

    assert outcome.payment_status == "REJECTED"
    payment = reload(db, Payment, pending_payment.id)
    assert payment.failure_reason == "Payment cancelled by user"
    order = reload(db, Order, stk_order.id)
    assert order.status == "PENDING"
    assert order.payment_status == "UNPAID"
    assert stock_of(db, product.id) == 3


def test_terminal_payment_never_transitions_again(db, payment_service, stk_order, pending_payment):
    payment_service.reconcile_callback(stk_order.id, callback(code=1, desc="Insufficient funds", receipt=None))

    outcome = payment_service.reconcile_callback(stk_order.id, callback())

    assert outcome.duplicate
    payment = reload(db, Payment, pending_payment.id)
    assert payment.status == "FAILED"
    assert payment.failure_reason == "Insufficient funds"
    assert reload(db, Order, stk_order.id).status == "PENDING"


def test_unknown_reference(payment_service, stk_order, pending_payment):
    with pytest.raises(PaymentNotFound):
        payment_service.reconcile_callback(stk_order.id, callback(reference="TX-BOGUS"))


def test_reference_must_match_order(db, order_service, payment_service, customer, product, pending_payment):
    other = order_service.create(customer, order_payload([(product.id, 1)], subtotal=100, total=100))
    with pytest.raises(PaymentNotFound):
        payment_service.reconcile_callback(other.id, callback())


def test_restock_on_failure_when_enabled(db, customer, stk_order, pending_payment, product):
    settings = Settings(DATABASE_URL="sqlite://", RESTOCK_ON_PAYMENT_FAILURE=True)
    service = PaymentService(db, settings=settings)
    assert stock_of(db, product.id) == 3

    service.reconcile_callback(stk_order.id, callback(code=1, desc="Insufficient funds", receipt=None))

    assert stock_of(db, product.id) == 5


def test_admin_confirms_payment_manually(db, payment_service, admin, stk_order, pending_payment):
    order = payment_service.confirm_manually(admin, stk_order.id)

    assert order.status == "PAID"
    assert order.payment_status == "CONFIRMED"
    assert order.payment.status == "CONFIRMED"
    log = db.query(PaymentApprovalLog).filter_by(order_id=stk_order.id).one()
    assert log.approver_id == admin.id
    with pytest.raises(InvalidOrderState):
        payment_service.confirm_manually(admin, stk_order.id)


def test_only_admins_confirm_manually(payment_service, seller, stk_order):
    with pytest.raises(Forbidden):
        payment_service.confirm_manually(seller, stk_order.id)


def test_payment_status_and_listing(payment_service, customer, other_customer, seller, admin, stk_order, pending_payment):
    status = payment_service.status(customer, stk_order.id)
    assert status["payment_status"] == "UNPAID"
    assert status["payment"].id == pending_payment.id
    assert status["stk_push_data"]["data"]["TransactionReference"] == "TX-REF-001"
    assert status["callback_data"] is None

    with pytest.raises(OrderNotFound):
        payment_service.status(other_customer, stk_order.id)

    assert payment_service.list_payments(customer).total == 1
    assert payment_service.list_payments(other_customer).total == 0
    assert payment_service.list_payments(seller).total == 1
    assert payment_service.list_payments(admin).total == 1


def test_rejecting_after_failure_restock_does_not_restock_twice(db, order_service, admin, stk_order, pending_payment, product):
    settings = Settings(DATABASE_URL="sqlite://", RESTOCK_ON_PAYMENT_FAILURE=True)
    PaymentService(db, settings=settings).reconcile_callback(
        stk_order.id, callback(code=1, desc="Insufficient funds", receipt=None)
    )
    assert stock_of(db, product.id) == 5

    order = order_service.reject(admin, stk_order.id, "Customer could not pay")

    assert order.status == "REJECTED"
    assert order.stock_released is True
    assert stock_of(db, product.id) == 5


def test_late_success_does_not_reopen_rejected_order(db, order_service, payment_service, admin, stk_order, pending_payment, product):
    order_service.reject(admin, stk_order.id, "Out of delivery area")
    before = notification_count(db, stk_order.id)

    outcome = payment_service.reconcile_callback(stk_order.id, callback())

    assert outcome.payment_status == "CONFIRMED"
    assert reload(db, Payment, pending_payment.id).status == "CONFIRMED"
    order = reload(db, Order, stk_order.id)
    assert order.status == "REJECTED"
    assert order.payment_status == "UNPAID"
    assert count(db, PaymentApprovalLog, PaymentApprovalLog.order_id == stk_order.id) == 0
    assert notification_count(db, stk_order.id) == before
    assert stock_of(db, product.id) == 5


def test_failed_payment_cannot_be_confirmed_manually(db, payment_service, admin, stk_order, pending_payment):
    payment_service.reconcile_callback(stk_order.id, callback(code=1, desc="Insufficient funds", receipt=None))

    with pytest.raises(InvalidOrderState):
        payment_service.confirm_manually(admin, stk_order.id)

    assert reload(db, Payment, pending_payment.id).status == "FAILED"
    order = reload(db, Order, stk_order.id)
    assert order.status == "PENDING"
    assert order.payment_status == "UNPAID"


def test_order_is_claimed_before_the_customer_is_prompted(
    session_factory, settings, payment_service, customer, stk_order, gateway_handler
):
    request = PaymentCreate(orderId=stk_order.id, method="MPESA", phoneNumber="0712345678", stkPush=True)
    during_push = []

    def handler(http_request):
        other = session_factory()
        try:
            PaymentService(other, settings=settings).initiate(customer, request, gateway)
            during_push.append("initiated")
        except PaymentAlreadyExists:
            during_push.append("already exists")
        finally:
            other.close()
        return gateway_handler(http_request)

    gateway = LipiaClient(LIPIA_BASE_URL, "test-key", transport=httpx.MockTransport(handler))
    result = payment_service.initiate(customer, request, gateway)

    assert during_push == ["already exists"]
    assert len(gateway_handler.calls) == 1
    assert result["payment"].reference_number == "TX-REF-001"


def test_gateway_failure_releases_the_claim(db, payment_service, customer, stk_order, gateway_handler):
    def reject(http_request):
        return httpx.Response(400, json={"success": False, "message": "Invalid phone number"})

    request = PaymentCreate(orderId=stk_order.id, method="MPESA", phoneNumber="0712345678", stkPush=True)
    failing = LipiaClient(LIPIA_BASE_URL, "test-key", transport=httpx.MockTransport(reject))
    with pytest.raises(GatewayError):
        payment_service.initiate(customer, request, failing)
    assert count(db, Payment, Payment.order_id == stk_order.id) == 0

    working = LipiaClient(LIPIA_BASE_URL, "test-key", transport=httpx.MockTransport(gateway_handler))
    assert payment_service.initiate(customer, request, working)["payment"].status == "PENDING"
