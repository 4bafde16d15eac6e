import json
import logging

from shared.core.logging_config import SecurityFilter, StructuredFormatter, set_request_context


def make_record(msg, extra_fields=None):
    record = logging.LogRecord("app.test", logging.INFO, __file__, 1, msg, None, None)
    if extra_fields is not None:
        record.extra_fields = extra_fields
    return record


def test_security_filter_redacts_secrets_in_messages():
    record = make_record("token exchange client_secret=abc123 access_token: xyz")

    SecurityFilter().filter(record)

    assert "abc123" not in record.msg
    assert "xyz" not in record.msg
    assert "client_secret=***REDACTED***" in record.msg


def test_security_filter_redacts_nested_extra_fields():
    record = make_record("PhonePe request", {
        "merchant_order_id": "CHULBULI-1-ABC",
        "headers": {"Authorization": "O-Bearer abc", "Content-Type": "application/json"},
        "client_secret": "s3cret",
    })

    SecurityFilter().filter(record)

    assert record.extra_fields["merchant_order_id"] == "CHULBULI-1-ABC"
    assert record.extra_fields["client_secret"] == "***REDACTED***"
    assert record.extra_fields["headers"]["Authorization"] == "***REDACTED***"
    assert record.extra_fields["headers"]["Content-Type"] == "application/json"


def test_structured_formatter_emits_json_with_context():
    set_request_context(request_id="req-42")
    record = make_record("Order placed", {"order_id": "order_1", "total_price": "180.00"})

    doc = json.loads(StructuredFormatter().format(record))

    assert doc["message"] == "Order placed"
    assert doc["level"] == "INFO"
    assert doc["custom"] == {"order_id": "order_1", "total_price": "180.00"}
    assert doc["trace"]["request_id"] == "req-42"
