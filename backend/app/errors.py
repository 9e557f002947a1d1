"""Error taxonomy shared by every component.

Errors raised inside the pipeline are ``AppError`` instances carrying a
closed ``ErrorType``, a ``Severity`` and a structured ``ErrorContext``. The
context stays a typed object until it reaches the persistence boundary in
``ErrorHandler``, where it is redacted and serialised.
"""

import enum
import random
import string
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class ErrorType(str, enum.Enum):
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    DATASTORE = "datastore"
    NETWORK = "network"
    FILESYSTEM = "filesystem"
    CLOUD_STORAGE = "cloud_storage"
    EMAIL = "email"
    PAYMENT = "payment"
    API = "api"
    INTERNAL = "internal"
    CREDIT_SYSTEM = "credit_system"
    MEDIA_PROCESSING = "media_processing"


class Severity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)


_SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


USER_MESSAGES: Dict[ErrorType, str] = {
    ErrorType.VALIDATION: "The data provided is not valid. Please check it and try again.",
    ErrorType.AUTHENTICATION: "Please sign in to continue.",
    ErrorType.AUTHORIZATION: "You do not have permission to perform this action.",
    ErrorType.DATASTORE: "A technical problem occurred. Our team has been notified.",
    ErrorType.NETWORK: "Connection problem. Please check your network connection.",
    ErrorType.FILESYSTEM: "The file could not be processed. Please try again.",
    ErrorType.CLOUD_STORAGE: "Temporary storage problem. Please try again in a few minutes.",
    ErrorType.EMAIL: "The email could not be sent. Please try again later.",
    ErrorType.PAYMENT: "Payment error. Please check your payment details.",
    ErrorType.CREDIT_SYSTEM: "There is a problem with your credits. Please contact support.",
    ErrorType.MEDIA_PROCESSING: "The video could not be processed. Please try again.",
    ErrorType.API: "Communication error. Please try again in a moment.",
    ErrorType.INTERNAL: "An unexpected error occurred. Our team has been notified.",
}

# Message fragments that override the per-type message
SPECIAL_USER_MESSAGES = (
    ("insufficient credits", "Insufficient credits for this operation. Please recharge your account."),
    ("file too large", "The file is too large. The maximum allowed size was exceeded."),
    ("invalid format", "Unsupported file format. Please use a valid format."),
)

RETRYABLE_TYPES = frozenset(
    {ErrorType.NETWORK, ErrorType.CLOUD_STORAGE, ErrorType.EMAIL, ErrorType.API}
)
NON_RECOVERABLE_TYPES = frozenset({ErrorType.AUTHENTICATION, ErrorType.AUTHORIZATION})
TEMPORARY_MARKERS = ("timeout", "temporary", "rate limit")
FATAL_MARKERS = ("corrupted", "locked")


@dataclass
class ErrorContext:
    """Structured context attached to an error."""

    job_id: Optional[str] = None
    clip_id: Optional[str] = None
    user_id: Optional[str] = None
    path: Optional[str] = None
    operation: Optional[str] = None
    extra: Dict[str, str] = field(default_factory=dict)

    def with_extra(self, **values: Any) -> "ErrorContext":
        self.extra.update({key: str(value) for key, value in values.items()})
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value not in (None, {})}


def generate_error_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"err_{int(time.time() * 1000)}_{suffix}"


def user_message_for(error_type: ErrorType, message: str) -> str:
    lowered = message.lower()
    for marker, text in SPECIAL_USER_MESSAGES:
        if marker in lowered:
            return text
    return USER_MESSAGES.get(error_type, USER_MESSAGES[ErrorType.INTERNAL])


def infer_severity(error_type: ErrorType, http_status: Optional[int]) -> Severity:
    if (http_status is not None and http_status >= 500) or error_type == ErrorType.DATASTORE:
        return Severity.CRITICAL
    if (http_status is not None and http_status >= 400) or error_type in (
        ErrorType.AUTHENTICATION,
        ErrorType.AUTHORIZATION,
        ErrorType.PAYMENT,
    ):
        return Severity.HIGH
    if error_type in (ErrorType.VALIDATION, ErrorType.FILESYSTEM, ErrorType.CLOUD_STORAGE):
        return Severity.MEDIUM
    return Severity.LOW


def is_recoverable(error_type: ErrorType, message: str) -> bool:
    lowered = message.lower()
    return error_type not in NON_RECOVERABLE_TYPES and not any(
        marker in lowered for marker in FATAL_MARKERS
    )


def is_retryable(error_type: ErrorType, message: str) -> bool:
    lowered = message.lower()
    return error_type in RETRYABLE_TYPES or any(marker in lowered for marker in TEMPORARY_MARKERS)


class AppError(Exception):
    """Typed application error."""

    default_type = ErrorType.INTERNAL
    default_status: Optional[int] = None

    def __init__(
        self,
        message: str,
        error_type: Optional[ErrorType] = None,
        *,
        code: Optional[str] = None,
        http_status: Optional[int] = None,
        severity: Optional[Severity] = None,
        context: Optional[ErrorContext] = None,
        recoverable: Optional[bool] = None,
        user_message: Optional[str] = None,
        retryable: Optional[bool] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.type = ErrorType(error_type) if error_type else self.default_type
        self.code = code
        self.http_status = http_status if http_status is not None else self.default_status
        self.severity = severity or infer_severity(self.type, self.http_status)
        self.context = context or ErrorContext()
        self.recoverable = (
            recoverable if recoverable is not None else is_recoverable(self.type, message)
        )
        self.retryable = retryable if retryable is not None else is_retryable(self.type, message)
        self.user_message = user_message or user_message_for(self.type, message)
        self.cause = cause
        self.id = generate_error_id()
        self.timestamp = datetime.now(timezone.utc)
        if cause is not None:
            self.__cause__ = cause

    def __repr__(self) -> str:
        return f"{type(self).__name__}(type={self.type.value!r}, message={self.message!r}, id={self.id!r})"


class ValidationError(AppError):
    default_type = ErrorType.VALIDATION
    default_status = 400


class NotFoundError(AppError):
    default_type = ErrorType.VALIDATION
    default_status = 404


class AuthorizationError(AppError):
    default_type = ErrorType.AUTHORIZATION
    default_status = 403


class InvalidTransitionError(AppError):
    default_type = ErrorType.VALIDATION
    default_status = 409


class JobBusyError(AppError):
    default_type = ErrorType.VALIDATION
    default_status = 409


class InsufficientCreditsError(AppError):
    default_type = ErrorType.CREDIT_SYSTEM
    default_status = 402

    def __init__(self, required: int, available: int, **kwargs: Any):
        kwargs.setdefault("code", "INSUFFICIENT_CREDITS")
        super().__init__(
            f"insufficient credits for operation: required {required}, available {available}",
            **kwargs,
        )
        self.required = required
        self.available = available


class MediaProcessingError(AppError):
    default_type = ErrorType.MEDIA_PROCESSING


class JobCancelledError(AppError):
    """Raised inside a worker when its job was cancelled mid-flight."""

    default_type = ErrorType.MEDIA_PROCESSING
    default_status = 409


def create_error(
    error_type: ErrorType,
    message: str,
    *,
    code: Optional[str] = None,
    http_status: Optional[int] = None,
    severity: Optional[Severity] = None,
    context: Optional[ErrorContext] = None,
    recoverable: Optional[bool] = None,
    user_message: Optional[str] = None,
    retryable: Optional[bool] = None,
    cause: Optional[BaseException] = None,
) -> AppError:
    """Build a structured ``AppError`` of the given type."""
    return AppError(
        message,
        error_type,
        code=code,
        http_status=http_status,
        severity=severity,
        context=context,
        recoverable=recoverable,
        user_message=user_message,
        retryable=retryable,
        cause=cause,
    )
