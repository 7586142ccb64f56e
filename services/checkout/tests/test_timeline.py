import json

import pytest
from sqlalchemy.exc import OperationalError

from checkout.application.schemas import GatewayCallback, PaymentCreate
from checkout.application.timeline import OrderTimelineLogger, parse_json_blob
from checkout.domain.enums import TimelineActor, TimelineEventType
from checkout.domain.models import OrderTimeline
from conftest import count, make_product, order_payload


@pytest.fixture
def order(db, order_service, customer):
    product = make_product(db)
    return order_service.create(customer, order_payload([(product.id, 1)], subtotal=100, total=100, paymentType="STK_PUSH"))


def test_payment_lifecycle_is_listed_newest_first(db, order, customer, payment_service, gateway):
    request = PaymentCreate(orderId=order.id, method="MPESA", phoneNumber="0712345678", stkPush=True)
    payment_service.initiate(customer, request, gateway)
    payment_service.reconcile_callback(order.id, GatewayCallback.model_validate({
        "TransactionReference": "TX-REF-001",
        "ResultCode": 0,
        "ResultDesc": "Success",
        "MpesaReceiptNumber": "SJK7XYZ123",
    }))

    events = OrderTimelineLogger(db).get_timeline(order.id)

    assert [e.action for e in events] == ["PAYMENT_CONFIRMED", "PAYMENT_SUBMITTED", "ORDER_CREATED"]
    confirmed = events[0]
    assert confirmed.actor_role == "SYSTEM"
    assert confirmed.actor_name == "System"
    assert confirmed.old_status == "PENDING"
    assert confirmed.new_status == "PAID"
    assert parse_json_blob(confirmed.metadata_json) == {"automatic": True}
    created = events[-1]
    assert created.actor_id == customer.id
    assert json.loads(created.metadata_json) == {"paymentType": "STK_PUSH"}


def test_events_are_scoped_to_their_order(db, order, order_service, customer):
    other = order_service.create(customer, order_payload([(make_product(db).id, 1)], subtotal=100, total=100))
    logger = OrderTimelineLogger(db)
    logger.record(other.id, TimelineEventType.STATUS_UPDATED, TimelineActor.SELLER, "Other order")

    assert [e.order_id for e in logger.get_timeline(order.id)] == [order.id]


def test_storage_failure_is_swallowed(db, order, monkeypatch):
    logger = OrderTimelineLogger(db)
    before = count(db, OrderTimeline)

    def broken_commit():
        raise OperationalError("INSERT INTO order_timeline", {}, Exception("database is locked"))

    monkeypatch.setattr(db, "commit", broken_commit)
    assert logger.order_approved(order.id, "seller-1", "Kienyeji Farm") is None
    monkeypatch.undo()

    assert count(db, OrderTimeline) == before


def test_parse_json_blob():
    assert parse_json_blob(None) is None
    assert parse_json_blob('{"a": 1}') == {"a": 1}
    assert parse_json_blob("not json") == "not json"
