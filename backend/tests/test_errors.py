"""Tests for the error taxonomy and the central error handler."""

import json
import re

import pytest
from sqlalchemy import select

from app.database import Database
from app.errors import (
    AppError,
    ErrorContext,
    ErrorType,
    InsufficientCreditsError,
    Severity,
    create_error,
)
from app.models.error_record import ErrorRecord
from app.services.error_handler import (
    REDACTED,
    ErrorHandler,
    RequestContext,
    classify_message,
    error_context,
    redact_fields,
)


class TestCreateError:
    def test_id_format_and_uniqueness(self):
        first = create_error(ErrorType.INTERNAL, "boom")
        second = create_error(ErrorType.INTERNAL, "boom")

        assert re.fullmatch(r"err_\d+_[a-z0-9]{9}", first.id)
        assert first.id != second.id
        assert first.timestamp.tzinfo is not None

    def test_default_user_message_from_type(self):
        error = create_error(ErrorType.NETWORK, "socket closed")
        assert error.user_message == "Connection problem. Please check your network connection."

    def test_special_user_messages(self):
        assert create_error(ErrorType.VALIDATION, "File too large for upload").user_message.startswith(
            "The file is too large"
        )
        assert create_error(ErrorType.VALIDATION, "Invalid format: .xyz").user_message.startswith(
            "Unsupported file format"
        )
        assert InsufficientCreditsError(5, 2).user_message == (
            "Insufficient credits for this operation. Please recharge your account."
        )

    def test_explicit_user_message_wins(self):
        error = create_error(ErrorType.VALIDATION, "bad", user_message="Try again")
        assert error.user_message == "Try again"

    def test_cause_is_chained(self):
        cause = OSError("disk full")
        error = create_error(ErrorType.FILESYSTEM, "write failed", cause=cause)
        assert error.__cause__ is cause


class TestSeverityInference:
    @pytest.mark.parametrize(
        "error_type,status,expected",
        [
            (ErrorType.INTERNAL, 500, Severity.CRITICAL),
            (ErrorType.DATASTORE, None, Severity.CRITICAL),
            (ErrorType.VALIDATION, 404, Severity.HIGH),
            (ErrorType.AUTHENTICATION, None, Severity.HIGH),
            (ErrorType.PAYMENT, None, Severity.HIGH),
            (ErrorType.VALIDATION, None, Severity.MEDIUM),
            (ErrorType.FILESYSTEM, None, Severity.MEDIUM),
            (ErrorType.MEDIA_PROCESSING, None, Severity.LOW),
        ],
    )
    def test_inferred(self, error_type, status, expected):
        assert create_error(error_type, "x", http_status=status).severity == expected

    def test_explicit_severity_kept(self):
        error = create_error(ErrorType.DATASTORE, "x", severity=Severity.LOW)
        assert error.severity == Severity.LOW

    def test_rank_is_ascending(self):
        assert Severity.LOW.rank < Severity.MEDIUM.rank < Severity.HIGH.rank < Severity.CRITICAL.rank


class TestRecoverability:
    def test_auth_errors_not_recoverable(self):
        assert not create_error(ErrorType.AUTHENTICATION, "expired session").recoverable
        assert not create_error(ErrorType.AUTHORIZATION, "nope").recoverable

    def test_fatal_markers_not_recoverable(self):
        assert not create_error(ErrorType.FILESYSTEM, "file is corrupted").recoverable
        assert not create_error(ErrorType.DATASTORE, "database is locked").recoverable

    def test_retryable_types_and_markers(self):
        assert create_error(ErrorType.NETWORK, "reset").retryable
        assert create_error(ErrorType.INTERNAL, "upstream timeout").retryable
        assert create_error(ErrorType.INTERNAL, "rate limit reached").retryable
        assert not create_error(ErrorType.VALIDATION, "bad input").retryable


class TestClassification:
    @pytest.mark.parametrize(
        "message,expected",
        [
            ("invalid database row", ErrorType.VALIDATION),
            ("not authenticated", ErrorType.AUTHENTICATION),
            ("permission denied for job", ErrorType.AUTHORIZATION),
            ("sqlite3.OperationalError: no such table", ErrorType.DATASTORE),
            ("connection refused", ErrorType.NETWORK),
            ("no such file: clip.mp4", ErrorType.FILESYSTEM),
            ("s3 bucket missing", ErrorType.CLOUD_STORAGE),
            ("smtp relay down", ErrorType.EMAIL),
            ("credit balance stale", ErrorType.CREDIT_SYSTEM),
            ("ffmpeg crashed", ErrorType.MEDIA_PROCESSING),
            ("something odd", ErrorType.INTERNAL),
        ],
    )
    def test_keyword_groups(self, message, expected):
        assert classify_message(message) == expected

    def test_status_codes(self):
        assert classify_message("boom", 401) == ErrorType.AUTHENTICATION
        assert classify_message("boom", 403) == ErrorType.AUTHORIZATION

    def test_enrich_wraps_untyped_exception(self):
        handler = ErrorHandler()
        original = ValueError("invalid clip duration")

        enriched = handler.enrich(original)

        assert isinstance(enriched, AppError)
        assert enriched.type == ErrorType.VALIDATION
        assert enriched.cause is original

    def test_enrich_keeps_app_errors(self):
        handler = ErrorHandler()
        error = create_error(ErrorType.PAYMENT, "card declined")
        assert handler.enrich(error) is error


class TestRedaction:
    def test_nested_fields(self):
        data = {"password": "p", "profile": {"api_key": "k", "name": "ok"}, "items": [{"token": "t"}]}
        assert redact_fields(data) == {
            "password": REDACTED,
            "profile": {"api_key": REDACTED, "name": "ok"},
            "items": [{"token": REDACTED}],
        }


class TestErrorHandler:
    async def test_handle_persists_redacted_record(self, context):
        error = create_error(
            ErrorType.VALIDATION,
            "invalid clip request",
            context=error_context(job_id="job-1", operation="process", password="hunter2"),
        )
        request = RequestContext(
            user_id="alice",
            url="http://test/api/jobs/job-1/process",
            method="POST",
            headers={"Authorization": "Bearer abc", "Accept": "application/json"},
            body={"password": "secret", "duration": 60},
        )

        handled = await context.error_handler.handle(error, request)

        async with context.database.session() as db:
            record = (await db.execute(select(ErrorRecord))).scalar_one()

        assert record.id == handled.id == error.id
        assert record.user_id == "alice"
        assert record.severity == Severity.MEDIUM.value
        stored = json.loads(record.context)
        assert stored["job_id"] == "job-1"
        assert stored["extra"]["password"] == REDACTED
        assert stored["request"]["headers"]["Authorization"] == REDACTED
        assert stored["request"]["headers"]["Accept"] == "application/json"
        assert stored["request"]["body"] == {"password": REDACTED, "duration": 60}

    async def test_handled_error_hides_internals(self, context):
        handled = await context.error_handler.handle(RuntimeError("sqlalchemy pool exhausted"))

        body = handled.to_dict()
        assert body["type"] == ErrorType.DATASTORE.value
        assert body["message"] == "A technical problem occurred. Our team has been notified."
        assert "stack" not in body and "context" not in body
        assert handled.http_status == 500

    async def test_persistence_failure_does_not_propagate(self):
        # Tables were never created, so the insert fails
        database = Database("sqlite+aiosqlite:///:memory:")
        handler = ErrorHandler(database)
        try:
            handled = await handler.handle(create_error(ErrorType.NETWORK, "reset"))
        finally:
            await database.dispose()

        assert handled.type == "network"
        assert handler.get_stats()["total_errors"] == 1

    async def test_counters_are_bounded(self):
        handler = ErrorHandler(max_counter_keys=2)
        await handler.handle(create_error(ErrorType.VALIDATION, "a"))
        await handler.handle(create_error(ErrorType.NETWORK, "b"))
        await handler.handle(create_error(ErrorType.EMAIL, "c"))

        assert list(handler.error_counts) == [("network", "low"), ("email", "low")]

    async def test_recent_errors_ring_buffer(self):
        handler = ErrorHandler(max_recent=3)
        for n in range(5):
            await handler.handle(create_error(ErrorType.INTERNAL, f"error {n}"))

        assert [e["message"] for e in handler.recent_errors] == ["error 4", "error 3", "error 2"]

    async def test_stats_group_by_type_and_severity(self):
        handler = ErrorHandler()
        await handler.handle(create_error(ErrorType.VALIDATION, "a"))
        await handler.handle(create_error(ErrorType.VALIDATION, "b"))
        await handler.handle(create_error(ErrorType.VALIDATION, "c", http_status=500))

        stats = handler.get_stats()
        assert stats["total_errors"] == 3
        assert stats["by_type"]["validation"] == {"medium": 2, "critical": 1}
        assert len(stats["recent_errors"]) == 3

    async def test_notifier_called_only_for_critical(self):
        notified = []

        async def notifier(error):
            notified.append(error.id)

        handler = ErrorHandler(notifier=notifier)
        critical = create_error(ErrorType.DATASTORE, "db down")
        await handler.handle(critical)
        await handler.handle(create_error(ErrorType.MEDIA_PROCESSING, "codec"))

        assert notified == [critical.id]

    async def test_notifier_failure_is_logged_not_raised(self, caplog):
        async def notifier(error):
            raise RuntimeError("pager offline")

        handler = ErrorHandler(notifier=notifier)
        handled = await handler.handle(create_error(ErrorType.INTERNAL, "x", http_status=503))

        assert handled.http_status == 503
        assert "pager offline" in caplog.text

    def test_error_context_helper(self):
        ctx = error_context(job_id="j", path="/tmp/a", attempt=2)
        assert ctx == ErrorContext(job_id="j", path="/tmp/a", extra={"attempt": "2"})

    async def test_plain_credit_message_gets_recharge_hint(self, context):
        handled = await context.error_handler.handle(Exception("insufficient credits for operation"))

        assert handled.type == ErrorType.CREDIT_SYSTEM.value
        assert handled.message == (
            "Insufficient credits for this operation. Please recharge your account."
        )
