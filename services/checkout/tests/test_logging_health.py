import json
import logging

from shared.core import HealthStatus, SecurityFilter, ServiceHealth
from shared.core.logging_config import StructuredFormatter


def make_record(msg, *args, **extra):
    record = logging.LogRecord("checkout.test", logging.INFO, __file__, 10, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_phone_numbers_are_masked():
    assert SecurityFilter.redact("254712345678") == "254******678"
    assert SecurityFilter.redact("0712345678") == "0******678"
    assert SecurityFilter.redact("call +254712345678 now") == "call +254******678 now"
    assert SecurityFilter.redact("order 12345") == "order 12345"


def test_bearer_tokens_are_masked():
    assert SecurityFilter.redact("Authorization: Bearer abc.def-ghi") == "Authorization: Bearer ***REDACTED***"


def test_filter_rewrites_message_and_extra_fields():
    record = make_record("STK push to %s", "254712345678", extra_fields={"phone": "0712345678", "order_id": 7})

    assert SecurityFilter().filter(record) is True
    assert record.getMessage() == "STK push to 254******678"
    assert record.extra_fields == {"phone": "0******678", "order_id": 7}


def test_structured_formatter_emits_json():
    record = make_record("Payment confirmed", extra_fields={"order_id": 7})

    line = json.loads(StructuredFormatter().format(record))

    assert line["level"] == "INFO"
    assert line["message"] == "Payment confirmed"
    assert line["custom"] == {"order_id": 7}


def test_overall_status():
    calc = ServiceHealth.calculate_overall_status
    assert calc({"a": {"status": HealthStatus.PASS}}) == HealthStatus.PASS
    assert calc({"a": {"status": HealthStatus.PASS}, "b": {"status": HealthStatus.WARN}}) == HealthStatus.WARN
    assert calc({"a": {"status": HealthStatus.WARN}, "b": {"status": HealthStatus.FAIL}}) == HealthStatus.FAIL


def test_missing_gateway_key_degrades_readiness(engine):
    health = ServiceHealth("checkout-service", engine_provider=lambda: engine, gateway_configured=lambda: False)

    checks = health.perform_readiness_checks()

    assert checks["database:connectivity"]["status"] == HealthStatus.PASS
    assert checks["payments:gateway"]["status"] == HealthStatus.WARN
    assert "system:disk" in checks


def test_health_endpoints(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "pass"
    assert response.json()["service"] == "checkout-service"

    assert client.get("/health/live").json() == {"status": "alive"}
    assert "checks" in client.get("/health/ready").json()


def test_request_id_is_echoed(client):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"
