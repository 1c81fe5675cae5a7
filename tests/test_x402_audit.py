# tests/test_x402_audit.py
"""
Unit tests for x402 audit logging.
"""
import json
import tempfile
from pathlib import Path
from unittest.mock import patch

from app.x402.audit import (
    AuditEventType,
    create_audit_event,
    ensure_audit_log_directory,
    generate_request_id,
    get_audit_stats,
    log_audit_event,
    log_error,
    log_payment_rejected,
    log_payment_required_sent,
    log_payment_settled,
    log_payment_verified,
    log_payment_voided,
    log_preflight_check,
    log_reconciliation_required,
    log_service_executed,
    read_audit_log,
)

PAYER = "0x" + "aa" * 20


def _read_events(log_path):
    with open(log_path) as f:
        return [json.loads(line) for line in f if line.strip()]


class TestAuditEventType:
    """Test audit event type enumeration."""

    def test_event_types_exist(self):
        """All expected event types exist."""
        assert AuditEventType.PAYMENT_REQUIRED_SENT.value == "payment_required_sent"
        assert AuditEventType.PAYMENT_VERIFIED.value == "payment_verified"
        assert AuditEventType.PAYMENT_REJECTED.value == "payment_rejected"
        assert AuditEventType.PREFLIGHT_CHECK.value == "preflight_check"
        assert AuditEventType.SERVICE_EXECUTED.value == "service_executed"
        assert AuditEventType.PAYMENT_SETTLED.value == "payment_settled"
        assert AuditEventType.PAYMENT_VOIDED.value == "payment_voided"
        assert AuditEventType.RECONCILIATION_REQUIRED.value == "reconciliation_required"
        assert AuditEventType.ERROR.value == "error"


class TestGenerateRequestId:
    """Test request ID generation."""

    def test_correct_length(self):
        """Request ID has expected length."""
        assert len(generate_request_id()) == 8

    def test_unique_ids(self):
        """Generated IDs are unique."""
        ids = [generate_request_id() for _ in range(100)]
        assert len(set(ids)) == 100


class TestCreateAuditEvent:
    """Test audit event creation."""

    def test_creates_event_structure(self):
        """Creates event with all required fields."""
        event = create_audit_event(
            event_type=AuditEventType.PAYMENT_VERIFIED,
            data={"amount": "10000"},
            client_ip="192.168.1.1",
            wallet_address=PAYER,
            request_id="abc12345"
        )

        assert event["event_type"] == "payment_verified"
        assert event["request_id"] == "abc12345"
        assert event["client_ip"] == "192.168.1.1"
        assert event["wallet_address"] == PAYER
        assert event["data"]["amount"] == "10000"
        assert event["timestamp"].endswith("+00:00")


class TestLogAuditEvent:
    """Test writing events to the log file."""

    @patch("app.x402.audit.settings")
    def test_writes_json_line(self, mock_settings):
        """Events are appended as JSON lines."""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_path = Path(tmpdir) / "audit.jsonl"
            mock_settings.X402_AUDIT_LOG_PATH = str(log_path)

            request_id = log_audit_event(AuditEventType.ERROR, {"x": 1}, client_ip="10.0.0.1")
            log_audit_event(AuditEventType.ERROR, {"x": 2}, client_ip="10.0.0.1")

            events = _read_events(log_path)
            assert len(events) == 2
            assert events[0]["request_id"] == request_id
            assert events[1]["data"] == {"x": 2}

    @patch("app.x402.audit.settings")
    def test_creates_directory(self, mock_settings):
        """Missing parent directories are created."""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_path = Path(tmpdir) / "nested" / "audit.jsonl"
            mock_settings.X402_AUDIT_LOG_PATH = str(log_path)

            assert ensure_audit_log_directory() is True
            assert log_path.parent.exists()

    @patch("app.x402.audit.settings")
    def test_write_failure_returns_none(self, mock_settings):
        """A write failure is logged and reported as None, not raised."""
        with tempfile.TemporaryDirectory() as tmpdir:
            # A directory where the file should be makes open() fail
            mock_settings.X402_AUDIT_LOG_PATH = tmpdir
            assert log_audit_event(AuditEventType.ERROR, {}) is None


class TestConvenienceLoggers:
    """Test the event-specific helpers."""

    def test_payment_required_sent(self, isolated_settings):
        """402 challenges record resource, amount and recipient."""
        log_payment_required_sent("1.2.3.4", "http://x/translate", "10000", "base-sepolia", "0x" + "22" * 20)
        event = read_audit_log()[0]
        assert event["event_type"] == "payment_required_sent"
        assert event["data"]["amount"] == "10000"

    def test_payment_verified(self, isolated_settings):
        """Verified payments record the payer as wallet address."""
        log_payment_verified("1.2.3.4", PAYER, 10000, "0x" + "01" * 32, "base-sepolia", request_id="r1")
        event = read_audit_log()[0]
        assert event["wallet_address"] == PAYER
        assert event["data"]["amount"] == "10000"

    def test_rejected_and_voided(self, isolated_settings):
        """Rejections and voids record reason and stage."""
        log_payment_rejected("1.2.3.4", "InvalidSignature", "verification", "bad sig")
        log_payment_voided("1.2.3.4", "ServiceError", "service", "HTTP 500")
        events = read_audit_log()
        assert events[0]["data"]["stage"] == "service"
        assert events[1]["data"]["reason"] == "InvalidSignature"

    def test_preflight_check(self, isolated_settings):
        """can_accept requires executor gas and payer funds when checked."""
        log_preflight_check("1.2.3.4", executor_ok=True, payer_ok=False, balances={})
        log_preflight_check("1.2.3.4", executor_ok=True, payer_ok=None, balances={})
        events = read_audit_log()
        assert events[0]["data"]["can_accept"] is True
        assert events[1]["data"]["can_accept"] is False

    def test_service_settled_reconciliation(self, isolated_settings):
        """Settlement lifecycle events are written."""
        log_service_executed("1.2.3.4", "translation", 200, 123.456, True)
        log_payment_settled("1.2.3.4", PAYER, "0x" + "ab" * 32, "base-sepolia", 10000)
        log_reconciliation_required(
            "1.2.3.4", PAYER, "SettlementTimeout", "no receipt", "0x" + "ab" * 32,
            "0x" + "01" * 32, 10000, "base-sepolia",
        )
        log_error("1.2.3.4", "RPCError", "boom")

        stats = get_audit_stats()
        assert stats["total_events"] == 4
        assert stats["events_by_type"]["reconciliation_required"] == 1
        assert read_audit_log(event_type=AuditEventType.SERVICE_EXECUTED)[0]["data"]["latency_ms"] == 123.5


class TestReadAuditLog:
    """Test reading and filtering the log."""

    def test_missing_log(self, isolated_settings):
        """No log file yields no events."""
        assert read_audit_log() == []
        assert get_audit_stats()["log_exists"] is False

    def test_most_recent_first_and_limit(self, isolated_settings):
        """Events come back newest first, limited."""
        for i in range(5):
            log_error("1.2.3.4", "E", str(i))
        events = read_audit_log(max_entries=2)
        assert [e["data"]["error_message"] for e in events] == ["4", "3"]

    def test_filters(self, isolated_settings):
        """Filter by event type and client IP."""
        log_error("1.1.1.1", "E", "a")
        log_error("2.2.2.2", "E", "b")
        log_payment_voided("1.1.1.1", "ServiceError", "service", "x")

        assert len(read_audit_log(client_ip="1.1.1.1")) == 2
        assert len(read_audit_log(event_type=AuditEventType.ERROR, client_ip="2.2.2.2")) == 1

    def test_skips_corrupt_lines(self, isolated_settings):
        """Corrupt lines are ignored."""
        log_error("1.1.1.1", "E", "a")
        with open(isolated_settings / "audit.jsonl", "a") as f:
            f.write("{broken\n")
        assert len(read_audit_log()) == 1
        assert get_audit_stats()["total_events"] == 1
