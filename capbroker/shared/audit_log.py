"""
Immutable Audit Log - append-only record of every mediated request.

One JSONL file per UTC day (audit-YYYY-MM-DD.jsonl). Each entry carries the
SHA-256 hash of the previous entry of the same day, making tampering
detectable.

Entries hold identifiers only: capability, service, method, path (without
query string), outcome, status, latency and the denial/error reason. Never
headers, bodies, secrets or session ids.

Zero Trust principle: Log everything, trust nothing, verify integrity.
"""

import hashlib
import json
import logging
import os
from datetime import date, datetime, timezone
from threading import Lock
from typing import Optional

from .constants import AUDIT_FILE_PREFIX, AUDIT_FILE_SUFFIX, AUDIT_GENESIS_HASH
from .models import AuditRecord

logger = logging.getLogger(__name__)

# Failures of the audit sink itself go here instead of being raised into
# the dispatch path they observe.
fallback_logger = logging.getLogger("capbroker.audit.fallback")


class AuditLogger:
    """
    Append-only, hash-chained audit log with daily files.

    Format: JSONL (one JSON object per line). Thread-safe.
    """

    def __init__(self, audit_dir: str):
        self._audit_dir = audit_dir
        self._lock = Lock()
        self._day: Optional[date] = None
        self._last_hash = AUDIT_GENESIS_HASH

        os.makedirs(audit_dir, mode=0o700, exist_ok=True)

    @property
    def audit_dir(self) -> str:
        return self._audit_dir

    def path_for(self, day: date) -> str:
        return os.path.join(self._audit_dir, f"{AUDIT_FILE_PREFIX}{day.isoformat()}{AUDIT_FILE_SUFFIX}")

    def log(self, record: AuditRecord) -> Optional[str]:
        """
        Append a record. Returns the entry hash, or None if the write failed.

        Never raises: a broken audit sink must not abort the request it is
        recording.
        """
        try:
            return self._append(record)
        except Exception as e:
            fallback_logger.error(
                f"AUDIT WRITE FAILED ({type(e).__name__}: {e}) - "
                f"capability={record.capability} service={record.service} "
                f"method={record.method} outcome={getattr(record.outcome, 'value', record.outcome)}"
            )
            return None

    def _append(self, record: AuditRecord) -> str:
        entry = record.to_dict()
        entry["path"] = entry["path"].split("?", 1)[0]
        day = record.timestamp.astimezone(timezone.utc).date()

        with self._lock:
            if day != self._day:
                self._day = day
                self._last_hash = self._recover_last_hash(day)

            entry["prev_hash"] = self._last_hash
            entry_str = json.dumps(entry, sort_keys=True, separators=(",", ":"))
            entry_hash = hashlib.sha256(entry_str.encode()).hexdigest()
            entry["entry_hash"] = entry_hash

            path = self.path_for(day)
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
            with os.fdopen(fd, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, separators=(",", ":")) + "\n")

            self._last_hash = entry_hash
            return entry_hash

    def read_day(self, day: Optional[date] = None) -> list[dict]:
        """Read all entries of one day (default: today, UTC)."""
        day = day or datetime.now(timezone.utc).date()
        path = self.path_for(day)
        if not os.path.exists(path):
            return []

        entries = []
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    try:
                        entries.append(json.loads(line))
                    except json.JSONDecodeError:
                        logger.error(f"Corrupt audit log line in {path}: {line[:100]}")
        return entries

    def verify_integrity(self, day: Optional[date] = None) -> bool:
        """
        Verify the hash chain of one day's log.
        Returns True if all entries are consistent (no tampering).
        """
        entries = self.read_day(day)
        prev_hash = AUDIT_GENESIS_HASH
        for i, entry in enumerate(entries):
            if entry.get("prev_hash") != prev_hash:
                logger.error(
                    f"INTEGRITY VIOLATION at entry {i}: "
                    f"expected prev_hash={prev_hash}, got {entry.get('prev_hash')}"
                )
                return False

            stored_hash = entry.pop("entry_hash", "")
            entry_str = json.dumps(entry, sort_keys=True, separators=(",", ":"))
            computed_hash = hashlib.sha256(entry_str.encode()).hexdigest()
            entry["entry_hash"] = stored_hash

            if computed_hash != stored_hash:
                logger.error(
                    f"INTEGRITY VIOLATION at entry {i}: "
                    f"hash mismatch (computed={computed_hash[:16]}..., stored={stored_hash[:16]}...)"
                )
                return False
            prev_hash = stored_hash
        return True

    def _recover_last_hash(self, day: date) -> str:
        """Continue the chain of an existing day file (e.g. after restart)."""
        entries = self.read_day(day)
        if entries:
            return entries[-1].get("entry_hash", AUDIT_GENESIS_HASH)
        return AUDIT_GENESIS_HASH
