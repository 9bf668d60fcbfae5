"""
Tests for shared/audit_log.py - daily JSONL files, hash chain, and the
never-raise guarantee.
"""

import json
import logging
import os
from datetime import date, datetime, timezone
from unittest.mock import patch

from capbroker.shared.audit_log import AuditLogger
from capbroker.shared.models import AuditOutcome, AuditRecord

DAY = date(2025, 3, 14)
TS = datetime(2025, 3, 14, 12, 0, 0, tzinfo=timezone.utc)


def _record(outcome=AuditOutcome.ALLOWED, path="/v1/customers/cus_1", **kwargs):
    return AuditRecord(
        capability="stripe_readonly",
        service="stripe",
        method="GET",
        path=path,
        outcome=outcome,
        timestamp=kwargs.pop("timestamp", TS),
        **kwargs,
    )


class TestAuditFormat:
    def test_daily_file_name(self, audit_log):
        audit_log.log(_record())
        assert os.path.exists(os.path.join(audit_log.audit_dir, "audit-2025-03-14.jsonl"))

    def test_one_json_object_per_line(self, audit_log):
        audit_log.log(_record(status=200, latency_ms=12.345))
        audit_log.log(_record(AuditOutcome.DENIED, denial_reason="no matching rule"))
        with open(audit_log.path_for(DAY)) as f:
            lines = f.read().splitlines()
        assert len(lines) == 2
        first = json.loads(lines[0])
        assert first["outcome"] == "allowed"
        assert first["status"] == 200
        assert first["latency_ms"] == 12.35
        assert json.loads(lines[1])["denial_reason"] == "no matching rule"

    def test_query_string_stripped(self, audit_log):
        audit_log.log(_record(path="/v5/order?apiKey=leak&symbol=BTC"))
        assert audit_log.read_day(DAY)[0]["path"] == "/v5/order"

    def test_error_outcome_carries_code(self, audit_log):
        audit_log.log(_record(AuditOutcome.ERROR, error_code="UPSTREAM_TIMEOUT"))
        entry = audit_log.read_day(DAY)[0]
        assert entry["outcome"] == "error"
        assert entry["error_code"] == "UPSTREAM_TIMEOUT"

    def test_entries_hold_no_request_content(self, audit_log):
        audit_log.log(_record())
        assert set(audit_log.read_day(DAY)[0]) == {
            "timestamp", "capability", "service", "method", "path", "outcome",
            "status", "latency_ms", "denial_reason", "error_code", "prev_hash", "entry_hash",
        }

    def test_file_is_private(self, audit_log):
        audit_log.log(_record())
        assert os.stat(audit_log.path_for(DAY)).st_mode & 0o777 == 0o600

    def test_days_split_into_files(self, audit_log):
        audit_log.log(_record())
        audit_log.log(_record(timestamp=datetime(2025, 3, 15, 0, 0, 1, tzinfo=timezone.utc)))
        assert len(audit_log.read_day(DAY)) == 1
        assert len(audit_log.read_day(date(2025, 3, 15))) == 1
        assert audit_log.read_day(date(2025, 3, 15))[0]["prev_hash"] == "genesis"

    def test_missing_day_is_empty(self, audit_log):
        assert audit_log.read_day(date(2000, 1, 1)) == []


class TestAuditIntegrity:
    def test_chain_links_entries(self, audit_log):
        h1 = audit_log.log(_record())
        audit_log.log(_record())
        entries = audit_log.read_day(DAY)
        assert entries[0]["prev_hash"] == "genesis"
        assert entries[1]["prev_hash"] == h1
        assert audit_log.verify_integrity(DAY)

    def test_tampering_detected(self, audit_log):
        audit_log.log(_record())
        audit_log.log(_record(AuditOutcome.DENIED))
        path = audit_log.path_for(DAY)
        with open(path) as f:
            lines = f.read().splitlines()
        tampered = json.loads(lines[1])
        tampered["outcome"] = "allowed"
        lines[1] = json.dumps(tampered)
        with open(path, "w") as f:
            f.write("\n".join(lines) + "\n")
        assert not audit_log.verify_integrity(DAY)

    def test_deleted_entry_detected(self, audit_log):
        for _ in range(3):
            audit_log.log(_record())
        path = audit_log.path_for(DAY)
        with open(path) as f:
            lines = f.read().splitlines()
        with open(path, "w") as f:
            f.write("\n".join([lines[0], lines[2]]) + "\n")
        assert not audit_log.verify_integrity(DAY)

    def test_chain_continues_across_instances(self, tmp_dir):
        audit_dir = os.path.join(tmp_dir, "audit")
        AuditLogger(audit_dir).log(_record())
        AuditLogger(audit_dir).log(_record())
        assert AuditLogger(audit_dir).verify_integrity(DAY)


class TestAuditNeverRaises:
    def test_write_failure_returns_none(self, audit_log, caplog):
        with patch.object(AuditLogger, "_append", side_effect=OSError("disk full")):
            with caplog.at_level(logging.ERROR, logger="capbroker.audit.fallback"):
                assert audit_log.log(_record()) is None
        assert "AUDIT WRITE FAILED" in caplog.text
        assert "disk full" in caplog.text

    def test_missing_directory_does_not_raise(self, audit_log):
        os.rmdir(audit_log.audit_dir)
        assert audit_log.log(_record()) is None
