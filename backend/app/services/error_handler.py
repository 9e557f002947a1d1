"""Centralised error handling: classification, logging, persistence and stats."""

import json
import logging
import traceback
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import func, select

from app.database import Database
from app.errors import AppError, ErrorContext, ErrorType, Severity
from app.models.error_record import ErrorRecord

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
SENSITIVE_HEADERS = ("authorization", "cookie", "set-cookie", "x-api-key")
SENSITIVE_FIELDS = ("password", "passwd", "token", "secret", "key", "credit_card")

# Checked in this order; the first group with a hit wins
CLASSIFICATION_KEYWORDS: List[Tuple[ErrorType, Tuple[str, ...]]] = [
    (ErrorType.VALIDATION, ("validation", "invalid")),
    (ErrorType.AUTHENTICATION, ("unauthorized", "authentication", "not authenticated")),
    (ErrorType.AUTHORIZATION, ("forbidden", "permission", "access denied")),
    (ErrorType.DATASTORE, ("sqlite", "database", "sqlalchemy", "integrity")),
    (ErrorType.NETWORK, ("network", "fetch", "connection")),
    (ErrorType.FILESYSTEM, ("enoent", "no such file", "file", "directory")),
    (ErrorType.CLOUD_STORAGE, ("s3", "aws", "bucket")),
    (ErrorType.EMAIL, ("smtp", "email")),
    (ErrorType.CREDIT_SYSTEM, ("credit", "subscription")),
    (ErrorType.MEDIA_PROCESSING, ("video", "ffmpeg", "ffprobe", "codec")),
]

MAX_COUNTER_KEYS = 1000
MAX_RECENT_ERRORS = 100

CriticalNotifier = Callable[[AppError], Awaitable[None]]


@dataclass
class RequestContext:
    """What the transport layer knows about the request that failed."""

    user_id: Optional[str] = None
    session_id: Optional[str] = None
    request_id: Optional[str] = None
    url: Optional[str] = None
    method: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[Dict[str, Any]] = None


@dataclass
class HandledError:
    """The caller-facing view of a handled error."""

    id: str
    type: str
    message: str
    code: Optional[str]
    http_status: int
    recoverable: bool
    retryable: bool
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "message": self.message,
            "code": self.code,
            "recoverable": self.recoverable,
            "retryable": self.retryable,
            "timestamp": self.timestamp,
        }


def classify_message(message: str, http_status: Optional[int] = None) -> ErrorType:
    """Guess the error type of an untyped error from its message."""
    lowered = message.lower()
    for error_type, keywords in CLASSIFICATION_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return error_type
        if error_type == ErrorType.AUTHENTICATION and http_status == 401:
            return error_type
        if error_type == ErrorType.AUTHORIZATION and http_status == 403:
            return error_type
    return ErrorType.INTERNAL


def redact_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {
        name: (REDACTED if name.lower() in SENSITIVE_HEADERS else value)
        for name, value in headers.items()
    }


def redact_fields(data: Any) -> Any:
    """Recursively replace password-like fields with the redaction marker."""
    if isinstance(data, Mapping):
        return {
            key: (
                REDACTED
                if any(marker in str(key).lower() for marker in SENSITIVE_FIELDS)
                else redact_fields(value)
            )
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [redact_fields(item) for item in data]
    return data


async def _noop_notifier(error: AppError) -> None:
    return None


class ErrorHandler:
    """Classifies, logs, persists and counts errors."""

    def __init__(
        self,
        database: Optional[Database] = None,
        notifier: Optional[CriticalNotifier] = None,
        max_recent: int = MAX_RECENT_ERRORS,
        max_counter_keys: int = MAX_COUNTER_KEYS,
    ):
        self.database = database
        self.notifier = notifier or _noop_notifier
        self.max_counter_keys = max_counter_keys
        self.error_counts: "OrderedDict[Tuple[str, str], int]" = OrderedDict()
        self.recent_errors: Deque[Dict[str, Any]] = deque(maxlen=max_recent)

    def set_notifier(self, notifier: CriticalNotifier):
        self.notifier = notifier

    def enrich(self, error: BaseException) -> AppError:
        """Wrap an arbitrary exception into an ``AppError``."""
        if isinstance(error, AppError):
            return error

        message = str(error) or type(error).__name__
        http_status = getattr(error, "status_code", None)
        error_type = classify_message(message, http_status)
        enriched = AppError(message, error_type, http_status=http_status, cause=error)
        enriched.__traceback__ = error.__traceback__
        return enriched

    async def handle(
        self, error: BaseException, request: Optional[RequestContext] = None
    ) -> HandledError:
        """Run an error through classification, logging, persistence and stats."""
        app_error = self.enrich(error)

        self._log(app_error, request)
        await self._persist(app_error, request)
        self._update_stats(app_error)
        self._remember(app_error)
        if app_error.severity == Severity.CRITICAL:
            await self._notify(app_error)

        return HandledError(
            id=app_error.id,
            type=app_error.type.value,
            message=app_error.user_message,
            code=app_error.code,
            http_status=app_error.http_status or 500,
            recoverable=app_error.recoverable,
            retryable=app_error.retryable,
            timestamp=app_error.timestamp.isoformat(),
        )

    def _log(self, error: AppError, request: Optional[RequestContext]):
        log_data = {
            "id": error.id,
            "type": error.type.value,
            "severity": error.severity.value,
            "context": error.context.to_dict(),
            "recoverable": error.recoverable,
            "retryable": error.retryable,
        }
        if request:
            log_data["request"] = {
                "url": request.url,
                "method": request.method,
                "headers": redact_headers(request.headers),
            }

        exc_info = (type(error), error, error.__traceback__) if error.__traceback__ else None
        if error.severity in (Severity.CRITICAL, Severity.HIGH):
            logger.error(
                f"{error.severity.value.upper()} SEVERITY ERROR: {error.message} {log_data}",
                exc_info=exc_info,
            )
        elif error.severity == Severity.MEDIUM:
            logger.warning(f"MEDIUM SEVERITY ERROR: {error.message} {log_data}")
        else:
            logger.info(f"LOW SEVERITY ERROR: {error.message} {log_data}")

    def build_record(self, error: AppError, request: Optional[RequestContext] = None) -> ErrorRecord:
        """Redact and serialise an error into a persistable row."""
        context: Dict[str, Any] = redact_fields(error.context.to_dict())
        if request:
            context["request"] = {
                "headers": redact_headers(request.headers),
                "body": redact_fields(request.body) if request.body is not None else None,
            }

        stack = None
        if error.__traceback__ is not None:
            stack = "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            )

        return ErrorRecord(
            id=error.id,
            type=error.type.value,
            severity=error.severity.value,
            message=error.message,
            stack=stack,
            context=json.dumps(context, default=str),
            user_id=(request.user_id if request else None) or error.context.user_id,
            session_id=request.session_id if request else None,
            request_id=request.request_id if request else None,
            url=request.url if request else None,
            method=request.method if request else None,
            recoverable=error.recoverable,
            retryable=error.retryable,
            created_at=error.timestamp.astimezone(timezone.utc).replace(tzinfo=None),
        )

    async def _persist(self, error: AppError, request: Optional[RequestContext]):
        if self.database is None:
            return
        try:
            async with self.database.session() as db:
                db.add(self.build_record(error, request))
                await db.commit()
        except Exception as e:
            logger.error(f"Failed to save error {error.id} to database: {e}")

    async def _notify(self, error: AppError):
        try:
            await self.notifier(error)
        except Exception as e:
            logger.error(f"Failed to send critical error notification for {error.id}: {e}")

    def _update_stats(self, error: AppError):
        key = (error.type.value, error.severity.value)
        self.error_counts[key] = self.error_counts.get(key, 0) + 1
        while len(self.error_counts) > self.max_counter_keys:
            self.error_counts.popitem(last=False)

    def _remember(self, error: AppError):
        # appendleft keeps newest first; maxlen evicts the oldest
        self.recent_errors.appendleft(
            {
                "id": error.id,
                "type": error.type.value,
                "severity": error.severity.value,
                "message": error.message,
                "timestamp": error.timestamp.isoformat(),
                "recoverable": error.recoverable,
            }
        )

    def get_stats(self) -> Dict[str, Any]:
        by_type: Dict[str, Dict[str, int]] = {}
        for (error_type, severity), count in self.error_counts.items():
            by_type.setdefault(error_type, {})[severity] = count
        return {
            "total_errors": sum(self.error_counts.values()),
            "by_type": by_type,
            "recent_errors": list(self.recent_errors)[:10],
            "last_updated": datetime.now(timezone.utc).isoformat(),
        }

    async def count_recent(self, since: datetime) -> int:
        """Number of persisted error records created after ``since``."""
        if self.database is None:
            return 0
        async with self.database.session() as db:
            result = await db.execute(
                select(func.count()).select_from(ErrorRecord).where(ErrorRecord.created_at > since)
            )
            return result.scalar() or 0


def error_context(**values: Any) -> ErrorContext:
    """Shorthand for building an ``ErrorContext`` from keyword arguments."""
    known = {k: values.pop(k) for k in ("job_id", "clip_id", "user_id", "path", "operation") if k in values}
    return ErrorContext(**known).with_extra(**values)

