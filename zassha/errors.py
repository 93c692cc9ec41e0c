import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)

QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
FILE_TIMEOUT = "FILE_TIMEOUT"
FILE_FAILED = "FILE_FAILED"
RUN_TIMEOUT = "RUN_TIMEOUT"
INTERNAL = "INTERNAL"

UPLOAD_CONFLICT = "UPLOAD_CONFLICT"
UPLOAD_INCOMPLETE = "UPLOAD_INCOMPLETE"
SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
INVALID_UPLOAD = "INVALID_UPLOAD"

FILE_TIMEOUT_MESSAGE = "Timed out waiting for ACTIVE"
FILE_FAILED_MESSAGE = "File processing failed"


class UploadError(Exception):
    """Base class for resumable-upload failures that map onto an HTTP status."""

    code = INTERNAL
    status_code = 500

    def body(self) -> dict:
        return {"ok": False, "code": self.code, "error": str(self)}


class UploadConflict(UploadError):
    code = UPLOAD_CONFLICT
    status_code = 409

    def __init__(self, expected: int):
        super().__init__(f"chunk index mismatch, expected {expected}")
        self.expected = expected

    def body(self) -> dict:
        payload = super().body()
        payload["expected"] = self.expected
        return payload


class UploadIncomplete(UploadError):
    code = UPLOAD_INCOMPLETE
    status_code = 409

    def __init__(self, received: int, size: int):
        super().__init__("incomplete")
        self.received = received
        self.size = size


class SessionNotFound(UploadError):
    code = SESSION_NOT_FOUND
    status_code = 404

    def __init__(self, session_id: str):
        super().__init__("not found")
        self.session_id = session_id


class InvalidUpload(UploadError):
    code = INVALID_UPLOAD
    status_code = 400


class FileProcessingTimeout(Exception):
    def __init__(self, message: str = FILE_TIMEOUT_MESSAGE):
        super().__init__(message)


class FileProcessingFailed(Exception):
    def __init__(self, message: Optional[str] = None):
        super().__init__(message or FILE_FAILED_MESSAGE)


class RunTimeout(Exception):
    pass


MESSAGES: dict[str, dict[str, str]] = {
    "en": {
        QUOTA_EXCEEDED: "The analysis quota has been exceeded. Please wait about {seconds} seconds and try again.",
        f"{QUOTA_EXCEEDED}_NO_DELAY": "The analysis quota has been exceeded. Please wait a moment and try again.",
        FILE_TIMEOUT: "The video took too long to be prepared for analysis. Please try again.",
        FILE_FAILED: "The video could not be processed. Please check the file and try again.",
        RUN_TIMEOUT: "The analysis took too long and was stopped. Try a shorter video or enable segmentation.",
        INTERNAL: "Processing failed",
    },
    "ja": {
        QUOTA_EXCEEDED: "利用上限に達しました。約{seconds}秒待ってから再試行してください。",
        f"{QUOTA_EXCEEDED}_NO_DELAY": "利用上限に達しました。しばらく待ってから再試行してください。",
        FILE_TIMEOUT: "動画の準備に時間がかかりすぎました。もう一度お試しください。",
        FILE_FAILED: "動画を処理できませんでした。ファイルを確認して再試行してください。",
        RUN_TIMEOUT: "解析に時間がかかりすぎたため中断しました。短い動画で再試行するか、分割を有効にしてください。",
        INTERNAL: "処理に失敗しました",
    },
}

_QUOTA_KEYWORDS = ("resource_exhausted", "resource exhausted", "quota", "rate limit", "too many requests")
_RETRY_IN_RE = re.compile(r"retry in\s+(\d+(?:\.\d+)?)\s*s", re.IGNORECASE)
_DELAY_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*s?\s*$")
_HTTP_429_RE = re.compile(r"\b429\b")


@dataclass
class NormalizedError:
    code: str
    message: str


def _message(lang: str, key: str, **kwargs: Any) -> str:
    table = MESSAGES.get(lang) or MESSAGES["en"]
    return table[key].format(**kwargs)


def _extract_error_fields(raw: Any) -> tuple[Optional[int], str, str, list]:
    """
    Pull (numeric code, status, message, details) from an exception or a remote JSON error payload.
    Handles google-genai APIError attributes, `{"error": {...}}` envelopes and JSON embedded in messages.
    """
    payload: Any = None
    if isinstance(raw, dict):
        payload = raw
        message = ""
    else:
        message = str(raw) if raw is not None else ""
        payload = getattr(raw, "details", None)
        if payload is None and message.lstrip().startswith("{"):
            try:
                payload = json.loads(message)
            except ValueError:
                payload = None

    code: Optional[int] = None
    status = ""
    details: list = []
    numeric = getattr(raw, "code", None)
    if isinstance(numeric, int):
        code = numeric
    status = str(getattr(raw, "status", "") or "")
    remote_message = getattr(raw, "message", None)
    if isinstance(remote_message, str) and remote_message:
        message = f"{message} {remote_message}".strip()

    if isinstance(payload, dict):
        body = payload.get("error") if isinstance(payload.get("error"), dict) else payload
        if isinstance(body.get("code"), int):
            code = body["code"]
        status = str(body.get("status") or status)
        if isinstance(body.get("message"), str):
            message = f"{message} {body['message']}".strip()
        if isinstance(body.get("details"), list):
            details = body["details"]
    elif isinstance(payload, list):
        details = payload
    return code, status, message, details


def _retry_after_seconds(message: str, details: list) -> Optional[int]:
    delay: Optional[float] = None
    for item in details:
        if not isinstance(item, dict):
            continue
        raw_delay = item.get("retryDelay") or item.get("retry_delay")
        if raw_delay is None:
            continue
        if isinstance(raw_delay, (int, float)):
            delay = float(raw_delay)
            break
        match = _DELAY_RE.match(str(raw_delay))
        if match:
            delay = float(match.group(1))
            break
    if delay is None:
        match = _RETRY_IN_RE.search(message)
        if match:
            delay = float(match.group(1))
    if delay is None:
        return None
    return max(1, math.ceil(delay))


def is_quota_error(code: Optional[int], status: str, message: str) -> bool:
    if code == 429 or status.upper() == "RESOURCE_EXHAUSTED":
        return True
    lowered = message.lower()
    if _HTTP_429_RE.search(message) or any(keyword in lowered for keyword in _QUOTA_KEYWORDS):
        return True
    return _RETRY_IN_RE.search(message) is not None


def normalize_error(raw: Any, lang: str = "en") -> NormalizedError:
    """
    Classify a raw failure into a stable (code, localized message) pair. First match wins:
    quota exhaustion, remote file timeout, remote processing failure, run deadline, otherwise INTERNAL.
    The raw detail never appears in the INTERNAL message.
    """
    code, status, message, details = _extract_error_fields(raw)

    if is_quota_error(code, status, message):
        seconds = _retry_after_seconds(message, details)
        if seconds is None:
            return NormalizedError(QUOTA_EXCEEDED, _message(lang, f"{QUOTA_EXCEEDED}_NO_DELAY"))
        return NormalizedError(QUOTA_EXCEEDED, _message(lang, QUOTA_EXCEEDED, seconds=seconds))

    if isinstance(raw, FileProcessingTimeout) or FILE_TIMEOUT_MESSAGE.lower() in message.lower():
        return NormalizedError(FILE_TIMEOUT, _message(lang, FILE_TIMEOUT))

    if isinstance(raw, FileProcessingFailed) or FILE_FAILED_MESSAGE.lower() in message.lower():
        return NormalizedError(FILE_FAILED, _message(lang, FILE_FAILED))

    if isinstance(raw, RunTimeout):
        return NormalizedError(RUN_TIMEOUT, _message(lang, RUN_TIMEOUT))

    logger.error("Unclassified analysis failure: %s", message or type(raw).__name__)
    return NormalizedError(INTERNAL, _message(lang, INTERNAL))
