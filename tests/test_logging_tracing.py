"""
Tests for observability logging, tracing and error responses.
"""
import json
import logging
import uuid
from io import StringIO
from unittest.mock import Mock

from fastapi import Request

from newsletter.obs.errors import ProblemDetail, UnexpectedError, error_chain
from newsletter.obs.logging import (
    PIIRedactor,
    StructuredFormatter,
    extract_trace_id,
    fingerprint_key,
    generate_trace_id,
    log_error,
)
from newsletter.obs.sentry import before_send_event


def _capture_logger(name, redact_pii=True):
    log_stream = StringIO()
    handler = logging.StreamHandler(log_stream)
    handler.setFormatter(StructuredFormatter(redact_pii=redact_pii))

    logger = logging.getLogger(name)
    logger.handlers = [handler]
    logger.setLevel(logging.INFO)
    logger.propagate = False
    return logger, log_stream


class TestLogging:
    """Test structured logging functionality."""

    def test_generate_trace_id(self):
        trace_id = generate_trace_id()
        assert len(trace_id) == 36
        uuid.UUID(trace_id)

    def test_extract_trace_id_from_header(self):
        request = Mock(spec=Request)
        request.headers = {"X-Request-Id": "test-trace-id-123"}
        assert extract_trace_id(request) == "test-trace-id-123"

    def test_extract_trace_id_from_traceparent(self):
        request = Mock(spec=Request)
        request.headers = {"traceparent": "00-12345678901234567890123456789012-1234567890123456-01"}
        assert extract_trace_id(request) == "12345678901234567890123456789012"

    def test_structured_logging_format(self):
        logger, stream = _capture_logger("test_structured_format", redact_pii=False)

        logger.info("Idempotency key admitted", extra={'account_id': 'account-1', 'idempotency': 'first'})

        entry = json.loads(stream.getvalue())
        assert entry["level"] == "INFO"
        assert entry["message"] == "Idempotency key admitted"
        assert entry["account_id"] == "account-1"
        assert entry["idempotency"] == "first"
        assert "ts" in entry

    def test_subscriber_emails_are_redacted(self):
        logger, stream = _capture_logger("test_redaction")

        logger.warning("Delivery failed for reader@example.com")

        entry = json.loads(stream.getvalue())
        assert "reader@example.com" not in entry["message"]
        assert "[REDACTED_EMAIL]" in entry["message"]

    def test_redactor_can_be_disabled(self):
        assert PIIRedactor(enabled=False).redact("a@example.com") == "a@example.com"

    def test_fingerprint_key_is_stable_and_opaque(self):
        assert fingerprint_key("abc123") == fingerprint_key("abc123")
        assert fingerprint_key("abc123") != fingerprint_key("abc124")
        assert "abc123" not in fingerprint_key("abc123")
        assert len(fingerprint_key("abc123")) == 12

    def test_log_error_includes_cause_chain(self):
        logger, stream = _capture_logger("test_cause_chain")

        try:
            try:
                raise ConnectionError("connection reset")
            except ConnectionError as e:
                raise UnexpectedError("Failed to save the idempotent response") from e
        except UnexpectedError as error:
            log_error(logger, error, trace_id="trace-1")

        entry = json.loads(stream.getvalue())
        assert entry["error_type"] == "UnexpectedError"
        assert entry["trace_id"] == "trace-1"
        assert "ConnectionError: connection reset" in entry["cause_chain"]


class TestErrors:

    def test_error_chain_walks_causes(self):
        root = ValueError("bad value")
        outer = UnexpectedError("wrapped")
        outer.__cause__ = root

        chain = error_chain(outer)

        assert chain == "UnexpectedError: wrapped\nCaused by: ValueError: bad value"

    def test_problem_detail_to_dict(self):
        problem = ProblemDetail(
            type="about:blank",
            title="Bad Request",
            detail="The idempotency key cannot be empty",
            status=400,
            instance="/admin/newsletters",
            trace_id="trace-1",
        )

        assert problem.to_dict() == {
            "type": "about:blank",
            "title": "Bad Request",
            "detail": "The idempotency key cannot be empty",
            "status": 400,
            "instance": "/admin/newsletters",
            "trace_id": "trace-1",
        }

    def test_error_response_carries_request_id(self, client):
        response = client.post(
            "/admin/newsletters",
            data={"title": "t", "html": "h", "text": "t", "idempotency_key": ""},
            headers={"X-Account-Id": "account-1", "X-Request-Id": "req-42"},
        )

        assert response.status_code == 400
        assert response.headers["X-Request-Id"] == "req-42"
        assert response.json()["trace_id"] == "req-42"

    def test_unexpected_error_hides_details(self, client, db_session):
        from newsletter.models.idempotency import IdempotencyRecord
        from newsletter.utils.clock import utcnow

        db_session.add(IdempotencyRecord(account_id="account-1", idempotency_key="stuck", created_at=utcnow()))
        db_session.commit()

        response = client.post(
            "/admin/newsletters",
            data={"title": "t", "html": "h", "text": "t", "idempotency_key": "stuck"},
            headers={"X-Account-Id": "account-1"},
        )

        assert response.status_code == 500
        assert response.json()["detail"] == "An unexpected error occurred"


class TestSentry:

    def test_before_send_redacts_emails(self):
        event = {"exception": {"values": [{"value": "send to reader@example.com failed"}]}}
        redacted = before_send_event(event, hint={})
        assert "reader@example.com" not in redacted["exception"]["values"][0]["value"]

    def test_before_send_drops_client_errors(self):
        from newsletter.obs.errors import ValidationError

        error = ValidationError("The idempotency key cannot be empty")
        event = {"exception": {"values": [{"value": str(error)}]}}

        assert before_send_event(event, hint={"exc_info": (ValidationError, error, None)}) is None

    def test_before_send_redacts_breadcrumbs(self):
        event = {"breadcrumbs": {"values": [{"message": "queued reader@example.com"}]}}
        redacted = before_send_event(event, hint={})
        assert redacted["breadcrumbs"]["values"][0]["message"] == "queued [REDACTED_EMAIL]"
