"""Unit tests for the PostgreSQL provider with a mocked connection."""

from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import MagicMock, patch

import psycopg
import pytest

from jobdrain.exceptions import StorageError
from jobdrain.jobs import Job, ShouldQueue, encode_job
from jobdrain.providers.postgres import PostgresProvider, is_postgres_healthy
from jobdrain.queue import JobStatus
from jobdrain.settings import SharedSettings

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class SyncContact(Job, ShouldQueue):
    """Typed job stored as JSON."""

    contact_id: str

    def handle(self) -> Any:
        return self.contact_id


def _row(job_id: str, payload: dict[str, Any], **overrides: Any) -> dict[str, Any]:
    row = {
        "id": job_id,
        "queue": "default",
        "job_type": "test_postgres_provider:SyncContact",
        "payload": payload,
        "status": "running",
        "attempts": 1,
        "available_at": NOW,
        "locked_until": NOW + timedelta(seconds=600),
        "failed": False,
        "last_error": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def _connection() -> tuple[MagicMock, MagicMock]:
    conn = MagicMock()
    conn.__enter__.return_value = conn
    cursor = conn.cursor.return_value.__enter__.return_value
    return conn, cursor


def test_push_inserts_encoded_payload() -> None:
    """Pushing should insert one pending row with the encoded job."""
    conn, cursor = _connection()
    cursor.fetchone.return_value = {"id": "job-1"}
    provider = PostgresProvider(SharedSettings())
    job = SyncContact(contact_id="c-1", queue="crm", timeout=30)

    with patch("jobdrain.providers.postgres.get_postgres_connection", return_value=conn):
        assert provider.push(job) is True

    query, params = cursor.execute.call_args.args
    assert "INSERT INTO queue_jobs" in query
    assert params["queue"] == "crm"
    assert params["timeout"] == 30
    assert params["available_at"] is None
    assert params["payload"].obj == encode_job(job)


def test_pushes_before_ready_are_buffered() -> None:
    """Jobs pushed before the provider is ready should be written on mark_ready."""
    conn, cursor = _connection()
    cursor.fetchone.return_value = {"id": "job-1"}
    provider = PostgresProvider(SharedSettings(), ready=False)

    with patch(
        "jobdrain.providers.postgres.get_postgres_connection", return_value=conn
    ) as connect:
        provider.push(SyncContact(contact_id="c-1"))
        provider.push(SyncContact(contact_id="c-2"))
        connect.assert_not_called()

        assert provider.mark_ready() == 2

    assert cursor.execute.call_count == 2
    assert provider.ready is True


def test_pop_leases_rows_and_fails_undecodable_ones() -> None:
    """Decodable rows should be leased; broken payloads should be marked failed."""
    conn, cursor = _connection()
    good = _row("job-1", encode_job(SyncContact(contact_id="c-1")))
    broken = _row("job-2", {"kind": "typed", "type": "missing.module:Nope"})
    cursor.fetchall.return_value = [good, broken]
    provider = PostgresProvider(SharedSettings(queue_lease_seconds=90))

    with patch("jobdrain.providers.postgres.get_postgres_connection", return_value=conn):
        (leased,) = provider.pop("default", 5)

    assert leased.id == "job-1"
    assert leased.job == SyncContact(contact_id="c-1")
    assert leased.record.status == JobStatus.RUNNING
    pop_query, pop_params = cursor.execute.call_args_list[0].args
    assert "FOR UPDATE SKIP LOCKED" in pop_query
    assert pop_params == {"queue": "default", "count": 5, "lease_seconds": 90}
    fail_query, fail_params = cursor.execute.call_args_list[1].args
    assert "status = 'failed'" in fail_query
    assert fail_params[1] == "job-2"


def test_pop_wraps_database_errors() -> None:
    """psycopg errors should surface as StorageError."""
    conn, cursor = _connection()
    cursor.execute.side_effect = psycopg.OperationalError("connection lost")
    provider = PostgresProvider(SharedSettings())

    with patch("jobdrain.providers.postgres.get_postgres_connection", return_value=conn):
        with pytest.raises(StorageError, match="connection lost"):
            provider.pop("default", 1)


def test_pending_count_and_in_queue() -> None:
    """Count and membership checks should read single rows."""
    conn, cursor = _connection()
    provider = PostgresProvider(SharedSettings())

    with patch("jobdrain.providers.postgres.get_postgres_connection", return_value=conn):
        cursor.fetchone.return_value = {"pending": 7}
        assert provider.pending_count("default") == 7

        cursor.fetchone.return_value = None
        assert provider.in_queue(SyncContact(contact_id="c-1")) is False


def test_leased_failure_releases_row_for_retry() -> None:
    """A retryable failure should put the row back to pending behind a lease."""
    conn, cursor = _connection()
    cursor.fetchall.return_value = [
        _row("job-1", encode_job(SyncContact(contact_id="c-1", tries=3, retry_after=60)))
    ]
    provider = PostgresProvider(SharedSettings())

    with patch("jobdrain.providers.postgres.get_postgres_connection", return_value=conn):
        (leased,) = provider.pop("default", 1)
        assert leased.fail(RuntimeError("crm timeout")) is False

    query, params = cursor.execute.call_args.args
    assert "status = 'pending'" in query
    assert params[1] == "RuntimeError: crm timeout"
    assert params[2] == "job-1"


def test_retry_returns_none_when_row_not_failed() -> None:
    """Retrying something that is not a failed row should do nothing."""
    conn, cursor = _connection()
    cursor.fetchone.return_value = None
    provider = PostgresProvider(SharedSettings())

    with patch("jobdrain.providers.postgres.get_postgres_connection", return_value=conn):
        assert provider.retry("job-9") is None


def test_is_postgres_healthy_reports_failures() -> None:
    """Health check should be False when the connection fails."""
    with patch(
        "jobdrain.providers.postgres.get_postgres_connection",
        side_effect=psycopg.OperationalError("down"),
    ):
        assert is_postgres_healthy(SharedSettings()) is False


def test_renew_only_extends_the_current_claim() -> None:
    """Renewal should be keyed on the attempt number that popped the row."""
    conn, cursor = _connection()
    cursor.fetchall.return_value = [
        _row("job-1", encode_job(SyncContact(contact_id="c-1")), attempts=2)
    ]
    provider = PostgresProvider(SharedSettings(queue_lease_seconds=90))
    renewed_until = NOW + timedelta(seconds=690)

    with patch("jobdrain.providers.postgres.get_postgres_connection", return_value=conn):
        (leased,) = provider.pop("default", 1)
        cursor.fetchone.return_value = {"locked_until": renewed_until}
        assert leased.renew() is True
        query, params = cursor.execute.call_args.args

        cursor.fetchone.return_value = None
        assert leased.renew() is False

    assert "attempts = %(attempts)s" in query
    assert "status = 'running'" in query
    assert params == {"id": "job-1", "attempts": 2, "lease_seconds": 90}
    assert leased.record.lease.locked_until == renewed_until
