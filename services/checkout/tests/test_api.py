from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient

from checkout.api.deps import get_gateway, get_order_service
from checkout.infrastructure.lipia import LipiaClient
from checkout.main import app
from conftest import (
    LIPIA_BASE_URL, auth_headers, make_delivery_fee, make_product, make_voucher, stock_of,
)


@pytest.fixture
def product(db):
    return make_product(db, stock=5, price=Decimal("150"))


def create_order(client, principal, product_id, quantity=1, subtotal=150, total=150, **extra):
    body = {
        "items": [{"productId": product_id, "quantity": quantity}],
        "paymentType": "STK_PUSH",
        "subtotal": subtotal,
        "total": total,
    }
    body.update(extra)
    return client.post("/api/orders", json=body, headers=auth_headers(principal))


def start_stk_push(client, principal, order_id):
    return client.post(
        "/api/payments",
        json={"orderId": order_id, "method": "MPESA", "phoneNumber": "0712345678", "stkPush": True},
        headers=auth_headers(principal),
    )


def test_requests_without_token_are_rejected(client):
    response = client.get("/api/orders")
    assert response.status_code == 401
    assert response.json() == {"error": "Missing token"}

    response = client.get("/api/orders", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401
    assert response.json() == {"error": "Invalid token"}


def test_create_order(client, db, customer, product):
    make_delivery_fee(db, "50")

    response = create_order(client, customer, product.id, quantity=2, subtotal=300, total=350, deliveryAddress="Kiambu Road")

    assert response.status_code == 200
    body = response.json()
    assert body["orderNumber"].startswith("ORD-")
    assert body["customerId"] == customer.id
    assert body["total"] == 350.0
    assert body["deliveryFee"] == 50.0
    assert body["status"] == "PENDING"
    assert body["paymentStatus"] == "UNPAID"
    assert body["items"][0]["productNameSnapshot"] == "Kienyeji Eggs (tray)"
    assert body["delivery"]["trackingId"].startswith("TRK")
    assert stock_of(db, product.id) == 3


def test_create_order_validation_errors(client, customer, product):
    response = client.post(
        "/api/orders",
        json={"items": [], "paymentType": "CASH_ON_DELIVERY", "subtotal": 0, "total": 0},
        headers=auth_headers(customer),
    )
    assert response.status_code == 400
    assert response.json() == {"error": "No items in order"}

    response = create_order(client, customer, product.id, subtotal=150, total=100)
    assert response.status_code == 400
    assert response.json() == {"error": "Client/server mismatch in amounts"}


def test_last_unit_goes_to_first_buyer(client, db, customer, other_customer):
    product = make_product(db, stock=1)

    first = create_order(client, customer, product.id, subtotal=100, total=100)
    second = create_order(client, other_customer, product.id, subtotal=100, total=100)

    assert first.status_code == 200
    assert second.status_code == 400
    assert second.json() == {"error": "Insufficient stock for Kienyeji Eggs (tray)"}
    assert stock_of(db, product.id) == 0


def test_stk_push_and_callback_flow(client, customer, product, gateway_handler):
    order = create_order(client, customer, product.id).json()

    response = start_stk_push(client, customer, order["id"])
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["payment"]["status"] == "PENDING"
    assert body["stkPush"]["transactionReference"] == "TX-REF-001"
    assert len(gateway_handler.calls) == 1

    callback = {
        "TransactionReference": "TX-REF-001",
        "ResultCode": 0,
        "ResultDesc": "The service request is processed successfully.",
        "Amount": 150,
        "MpesaReceiptNumber": "SJK7XYZ123",
    }
    url = f"/api/payments/callback/order/{order['id']}"

    response = client.post(url, json=callback)
    assert response.status_code == 200
    assert response.json() == {
        "success": True, "message": "Callback processed successfully", "paymentStatus": "CONFIRMED",
    }

    replay = client.post(url, json=callback)
    assert replay.status_code == 200
    assert replay.json()["message"] == "Callback already processed"

    status = client.get(f"/api/payments/status/{order['id']}", headers=auth_headers(customer)).json()
    assert status["orderStatus"] == "PAID"
    assert status["paymentStatus"] == "CONFIRMED"
    assert status["payment"]["transactionCode"] == "SJK7XYZ123"
    assert status["callbackData"]["MpesaReceiptNumber"] == "SJK7XYZ123"


def test_callback_edge_cases(client, customer, product):
    order = create_order(client, customer, product.id).json()
    start_stk_push(client, customer, order["id"])
    url = f"/api/payments/callback/order/{order['id']}"

    unknown = client.post(url, json={"TransactionReference": "TX-BOGUS", "ResultCode": 0})
    assert unknown.status_code == 404
    assert unknown.json() == {"error": "Payment record not found"}

    garbage = client.post(url, content=b"not json", headers={"Content-Type": "application/json"})
    assert garbage.status_code == 200
    assert garbage.json()["success"] is False

    info = client.get(url)
    assert info.json()["orderId"] == order["id"]


def test_gateway_error_is_passed_through(client, customer, product):
    def reject(request):
        return httpx.Response(400, json={
            "success": False,
            "message": "Invalid phone number",
            "customerMessage": "Please check the phone number and try again",
            "error": {"code": "INVALID_PHONE_NUMBER", "field": "phone_number"},
        })

    app.dependency_overrides[get_gateway] = lambda: LipiaClient(
        LIPIA_BASE_URL, "test-key", transport=httpx.MockTransport(reject)
    )
    order = create_order(client, customer, product.id).json()

    response = start_stk_push(client, customer, order["id"])

    assert response.status_code == 400
    assert response.json() == {
        "error": "Please check the phone number and try again",
        "code": "INVALID_PHONE_NUMBER",
        "field": "phone_number",
    }
    payments = client.get("/api/payments", headers=auth_headers(customer)).json()
    assert payments["pagination"]["total"] == 0


def test_order_visibility(client, customer, other_customer, seller, product):
    order = create_order(client, customer, product.id).json()

    assert client.get(f"/api/orders/{order['id']}", headers=auth_headers(customer)).status_code == 200
    assert client.get(f"/api/orders/{order['id']}", headers=auth_headers(seller)).status_code == 200
    assert client.get(f"/api/orders/{order['id']}", headers=auth_headers(other_customer)).status_code == 404

    listing = client.get("/api/orders", headers=auth_headers(other_customer)).json()
    assert listing["orders"] == []
    assert listing["pagination"]["total"] == 0


def test_timeline_endpoint(client, customer, product):
    order = create_order(client, customer, product.id).json()
    start_stk_push(client, customer, order["id"])

    response = client.get(f"/api/orders/{order['id']}/timeline", headers=auth_headers(customer))

    assert response.status_code == 200
    body = response.json()
    assert body["orderNumber"] == order["orderNumber"]
    assert [e["action"] for e in body["events"]] == ["PAYMENT_SUBMITTED", "ORDER_CREATED"]
    assert body["events"][1]["metadata"] == {"paymentType": "STK_PUSH"}


def test_admin_confirmation_then_seller_approval(client, customer, seller, admin, product):
    order = create_order(client, customer, product.id).json()
    start_stk_push(client, customer, order["id"])
    url = f"/api/seller/orders/{order['id']}/approve"

    early = client.post(url, headers=auth_headers(seller))
    assert early.status_code == 400

    forbidden = client.post(f"/api/admin/orders/{order['id']}/confirm-payment", headers=auth_headers(seller))
    assert forbidden.status_code == 403

    confirmed = client.post(f"/api/admin/orders/{order['id']}/confirm-payment", headers=auth_headers(admin))
    assert confirmed.status_code == 200
    assert confirmed.json()["paymentStatus"] == "CONFIRMED"

    approved = client.post(url, headers=auth_headers(seller))
    assert approved.status_code == 200
    assert approved.json()["status"] == "APPROVED"


def test_voucher_validation_endpoints(client, db, customer):
    make_voucher(db, code="KUKU20", discount_value=Decimal("20"), max_discount_amount=Decimal("50"))

    response = client.post(
        "/api/vouchers/validate",
        json={"code": "KUKU20", "orderTotal": 400, "productTypes": ["EGGS"]},
        headers=auth_headers(customer),
    )
    assert response.status_code == 200
    assert response.json()["discountAmount"] == 50.0
    assert response.json()["finalTotal"] == 350.0

    response = client.post(
        "/api/vouchers/validate",
        json={"code": "NOPE", "orderTotal": 400},
        headers=auth_headers(customer),
    )
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid voucher"}


def test_unexpected_errors_render_json(client, customer, product):
    class BrokenOrderService:
        def create(self, principal, payload):
            raise RuntimeError("cache unavailable")

    app.dependency_overrides[get_order_service] = lambda: BrokenOrderService()
    quiet_client = TestClient(app, raise_server_exceptions=False)

    response = quiet_client.post(
        "/api/orders",
        json={"items": [{"productId": product.id, "quantity": 1}], "paymentType": "STK_PUSH", "subtotal": 150, "total": 150},
        headers=auth_headers(customer),
    )

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to process request"}
