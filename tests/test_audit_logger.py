"""
Unit Tests — Audit Logger (HMAC integrity tags)

  - Rows are stamped, canonicalised and tagged before persistence
  - Recomputing the tag with the right secret reproduces it
  - Mutating any field (or using the wrong secret) breaks verification
"""
import hashlib
import hmac
import json

import pytest
from pydantic import ValidationError

from sessionguard.audit import (
    AuditAction,
    AuditLogger,
    canonical_encoding,
    compute_integrity_tag,
)
from sessionguard.storage import AuditStorage, SqliteAuditStorage

from conftest import TEST_SECRET


def _event(**overrides):
    event = {
        "session_id": "a" * 64,
        "user_id": "alice",
        "action": AuditAction.CREATE,
        "ip": "203.0.113.10",
        "user_agent": "pytest",
        "fingerprint": "f" * 64,
        "meta": {"z": 1, "a": [1, 2]},
        "created_at": "2026-01-01T00:00:00+00:00",
    }
    event.update(overrides)
    return event


class FailingStorage(AuditStorage):
    def persist_log(self, entry):
        return False

    def query_logs(self, filters=None):
        return []


class TestCanonicalForm:

    def test_canonical_form_is_deterministic(self):
        row = {"b": 1, "a": {"y": 2, "x": 1}}
        assert canonical_encoding(row) == canonical_encoding(dict(reversed(list(row.items()))))

    def test_canonical_form_excludes_tag(self):
        row = {"a": 1}
        assert canonical_encoding({**row, "integrity_tag": "deadbeef"}) == canonical_encoding(row)

    def test_tag_is_hmac_sha256_over_canonical_json(self):
        row = {"action": "create", "meta": {}}
        expected = hmac.new(
            TEST_SECRET.encode(),
            json.dumps(row, sort_keys=True, separators=(",", ":")).encode(),
            hashlib.sha256,
        ).hexdigest()
        assert compute_integrity_tag(row, TEST_SECRET) == expected


class TestWrite:

    def test_write_persists_tagged_row(self, audit_logger, audit_storage):
        assert audit_logger.write(_event()) is True
        rows = audit_storage.query_logs()
        assert len(rows) == 1
        row = rows[0]
        assert row["action"] == "create"
        assert len(row["integrity_tag"]) == 64
        assert TEST_SECRET not in json.dumps(row)

    def test_created_at_is_stamped_when_absent(self, audit_logger, audit_storage):
        event = _event()
        del event["created_at"]
        audit_logger.write(event)
        created = audit_storage.query_logs()[0]["created_at"]
        assert created.endswith("+00:00")

    def test_caller_supplied_tag_is_ignored(self, audit_logger, audit_storage):
        audit_logger.write(_event(integrity_tag="0" * 64))
        row = audit_storage.query_logs()[0]
        assert row["integrity_tag"] != "0" * 64
        assert audit_logger.verify(row)

    def test_unknown_action_is_rejected(self, audit_logger):
        with pytest.raises(ValidationError):
            audit_logger.write(_event(action="login"))

    def test_storage_failure_returns_false(self):
        assert AuditLogger(FailingStorage(), TEST_SECRET).write(_event()) is False

    def test_short_secret_rejected(self, audit_storage):
        with pytest.raises(ValueError):
            AuditLogger(audit_storage, "short")

    def test_repr_hides_secret(self, audit_logger):
        assert TEST_SECRET not in repr(audit_logger)


class TestVerify:

    def test_roundtrip_verifies(self, audit_logger, audit_storage):
        audit_logger.write(_event())
        assert audit_logger.verify(audit_storage.query_logs()[0])

    @pytest.mark.parametrize("field,value", [
        ("session_id", "b" * 64),
        ("user_id", "mallory"),
        ("action", "destroy"),
        ("ip", "198.51.100.1"),
        ("created_at", "2020-01-01T00:00:00+00:00"),
        ("meta", {"z": 2, "a": [1, 2]}),
    ])
    def test_mutating_any_field_breaks_tag(self, audit_logger, audit_storage, field, value):
        audit_logger.write(_event())
        row = dict(audit_storage.query_logs()[0])
        row[field] = value
        assert not audit_logger.verify(row)

    def test_wrong_secret_fails(self, audit_logger, audit_storage):
        audit_logger.write(_event())
        row = audit_storage.query_logs()[0]
        other = AuditLogger(audit_storage, "a-completely-different-secret-123")
        assert not other.verify(row)

    def test_missing_tag_fails(self, audit_logger, audit_storage):
        audit_logger.write(_event())
        row = dict(audit_storage.query_logs()[0])
        row.pop("integrity_tag")
        assert not audit_logger.verify(row)

    def test_sqlite_rows_verify(self, tmp_path):
        storage = SqliteAuditStorage(tmp_path / "logs.sqlite")
        al = AuditLogger(storage, TEST_SECRET)
        al.write(_event(meta={"reasons": ["IP address changed"], "n": 1.5}))
        row = al.query({"session_id": "a" * 64})[0]
        assert "id" in row
        assert al.verify(row)
        storage.close()
