"""
Tests for the Audit Trail

Tests cover:
- Redaction of sensitive keys (case-insensitive, substrings, nested)
- Ordered listing per application
- Concurrent writers
- record() never raising
"""

import asyncio
import json
from unittest.mock import MagicMock, patch

import pytest

from autoapply.services.audit import REDACTED, AuditTrail, is_sensitive_key, sanitize


class TestSanitize:
    """Test metadata redaction."""

    @pytest.mark.parametrize(
        "key",
        ["password", "Password", "db_password", "API_KEY", "x-api-key", "client secret",
         "refresh_token", "Authorization", "credentials", "passwd"],
    )
    def test_sensitive_keys_detected(self, key):
        assert is_sensitive_key(key)

    @pytest.mark.parametrize("key", ["username", "job_url", "reason", "stage", "keyword"])
    def test_ordinary_keys_kept(self, key):
        assert not is_sensitive_key(key)

    def test_password_value_replaced(self):
        assert sanitize({"user": "ada", "password": "hunter2"}) == {
            "user": "ada",
            "password": REDACTED,
        }

    def test_nested_mappings_redacted(self):
        metadata = {
            "request": {"login": {"username": "ada", "Password": "hunter2"}},
            "attempts": [{"token": "abc"}, {"stage": "automate"}],
        }

        result = sanitize(metadata)

        assert result["request"]["login"] == {"username": "ada", "Password": REDACTED}
        assert result["attempts"] == [{"token": REDACTED}, {"stage": "automate"}]

    def test_whole_subtree_redacted_under_sensitive_key(self):
        result = sanitize({"credentials": {"username": "ada", "password": "x"}})

        assert result == {"credentials": REDACTED}

    def test_input_not_modified(self):
        metadata = {"password": "hunter2"}
        sanitize(metadata)

        assert metadata == {"password": "hunter2"}

    def test_empty_metadata(self):
        assert sanitize(None) == {}
        assert sanitize({}) == {}


class TestAuditTrail:
    """Test persistence of audit events."""

    @pytest.mark.asyncio
    async def test_record_and_list_in_order(self, audit):
        for kind in ("tailoring_started", "tailoring_succeeded", "approval_required"):
            await audit.record("app-1", kind, kind.replace("_", " "))

        events = await audit.list_for("app-1")

        assert [e.kind for e in events] == [
            "tailoring_started",
            "tailoring_succeeded",
            "approval_required",
        ]
        assert [e.created_at for e in events] == sorted(e.created_at for e in events)

    @pytest.mark.asyncio
    async def test_stored_metadata_is_redacted(self, audit):
        await audit.record(
            "app-1",
            "automation_started",
            "Submitting",
            {"job_url": "https://jobs.example.com/1", "auth": {"password": "hunter2"}},
        )

        [event] = await audit.list_for("app-1")

        assert event.details == {
            "job_url": "https://jobs.example.com/1",
            "auth": {"password": REDACTED},
        }
        assert "hunter2" not in json.dumps(event.details)

    @pytest.mark.asyncio
    async def test_concurrent_records_are_all_redacted(self, audit):
        """Many applications writing at once never leak a password."""

        async def write(app_id: str, n: int):
            await audit.record(app_id, "stage", f"event {n}", {"nested": {"password": f"secret-{n}"}})

        await asyncio.gather(
            *(write(f"app-{i % 4}", i) for i in range(40))
        )

        total = 0
        for i in range(4):
            events = await audit.list_for(f"app-{i}")
            total += len(events)
            for event in events:
                assert event.details["nested"]["password"] == REDACTED
        assert total == 40

    @pytest.mark.asyncio
    async def test_non_json_values_stored_as_strings(self, audit):
        from datetime import datetime, timezone

        when = datetime(2026, 1, 2, tzinfo=timezone.utc)
        await audit.record("app-1", "approval_expired", "", {"approval_requested_at": when})

        [event] = await audit.list_for("app-1")

        assert event.details["approval_requested_at"] == str(when)

    @pytest.mark.asyncio
    async def test_persistence_failure_is_swallowed(self):
        """A broken database must not fail the caller."""
        broken_factory = MagicMock(side_effect=RuntimeError("database is locked"))
        audit = AuditTrail(broken_factory)

        with patch("autoapply.services.audit.record_audit_failure") as mock_counter:
            await audit.record("app-1", "stage", "message", {"password": "x"})

        mock_counter.assert_called_once()

    @pytest.mark.asyncio
    async def test_events_scoped_to_application(self, audit):
        await audit.record("app-1", "one")
        await audit.record("app-2", "two")

        assert [e.kind for e in await audit.list_for("app-1")] == ["one"]
