import asyncio
import json
from enum import Enum

import httpx
import openai
from pydantic import BaseModel, ValidationError


class ErrorKind(str, Enum):
    NETWORK = "network_error"
    TIMEOUT = "timeout"
    AUTH = "missing_api_key"
    QUOTA = "quota_exceeded"
    PARSING = "json_parse_error"
    LOW_QUALITY = "low_quality_image"
    USER_CANCELLED = "user_cancelled"
    UNKNOWN = "unknown_error"


USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.NETWORK: "지금 연결이 잠시 불안정해요.\n네트워크가 안정되면 다시 시도해 주세요.",
    ErrorKind.TIMEOUT: "분석 시간이 조금 길어졌어요.\n다시 시도하거나 직접 입력할 수 있어요.",
    ErrorKind.AUTH: "일시적으로 분석을 진행할 수 없어요.\n잠시 후 다시 시도해 주세요.",
    ErrorKind.QUOTA: "일시적으로 분석을 진행할 수 없어요.\n잠시 후 다시 시도해 주세요.",
    ErrorKind.PARSING: "내용을 완벽하게 읽지 못했어요.\n남은 내용을 확인해 주세요.",
    ErrorKind.LOW_QUALITY: "사진이 너무 흐리거나 어두워요.\n다시 찍어주시겠어요?",
    ErrorKind.USER_CANCELLED: "분석이 취소되었습니다.",
    ErrorKind.UNKNOWN: "알 수 없는 오류가 발생했습니다.\n잠시 후 다시 시도해 주세요.",
}

RETRYABLE_KINDS = frozenset({ErrorKind.NETWORK, ErrorKind.TIMEOUT})


class FailureReport(BaseModel):
    kind: ErrorKind
    message: str
    retryable: bool
    stage: str | None = None


class ExtractionError(Exception):
    """A pipeline failure tagged with its ``ErrorKind``.

    Callers branch on ``kind`` rather than on exception subclasses.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str | None = None,
        *,
        stage: str | None = None,
        code: str | None = None,
        original_error: BaseException | None = None,
    ):
        super().__init__(message or kind.value)
        self.kind = kind
        self.stage = stage
        self.code = code
        self.original_error = original_error

    @property
    def user_message(self) -> str:
        return USER_MESSAGES.get(self.kind, USER_MESSAGES[ErrorKind.UNKNOWN])

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def to_report(self) -> FailureReport:
        return FailureReport(
            kind=self.kind,
            message=self.user_message,
            retryable=self.retryable,
            stage=self.stage,
        )

    def __repr__(self) -> str:
        return f"ExtractionError(kind={self.kind.value!r}, stage={self.stage!r}, message={str(self)!r})"


class StoreError(Exception):
    """Raised when the record store cannot complete a request."""

    def __init__(self, message: str, original_error: BaseException | None = None):
        super().__init__(message)
        self.original_error = original_error


def _classify_openai_status(exc: openai.APIStatusError) -> ErrorKind:
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ErrorKind.AUTH
    if isinstance(exc, openai.RateLimitError):
        return ErrorKind.QUOTA
    if exc.status_code in (408, 504):
        return ErrorKind.TIMEOUT
    if exc.status_code >= 500:
        return ErrorKind.NETWORK
    return ErrorKind.UNKNOWN


def classify_exception(exc: BaseException, stage: str | None = None) -> ExtractionError:
    """Map any failure raised during a stage onto a tagged ``ExtractionError``."""
    if isinstance(exc, ExtractionError):
        if stage and not exc.stage:
            exc.stage = stage
        return exc

    # APITimeoutError subclasses APIConnectionError, so it is checked first.
    if isinstance(exc, (asyncio.TimeoutError, openai.APITimeoutError, httpx.TimeoutException)):
        kind = ErrorKind.TIMEOUT
    elif isinstance(exc, (openai.APIConnectionError, httpx.TransportError)):
        kind = ErrorKind.NETWORK
    elif isinstance(exc, openai.APIStatusError):
        kind = _classify_openai_status(exc)
    elif isinstance(exc, (json.JSONDecodeError, ValidationError)):
        kind = ErrorKind.PARSING
    elif isinstance(exc, asyncio.CancelledError):
        kind = ErrorKind.USER_CANCELLED
    else:
        kind = ErrorKind.UNKNOWN

    code = getattr(exc, "code", None)
    return ExtractionError(
        kind,
        str(exc) or exc.__class__.__name__,
        stage=stage,
        code=code if isinstance(code, str) else None,
        original_error=exc,
    )
