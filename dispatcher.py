"""Contract with the push notification sender.

The transport itself lives outside this service. It receives the decrypted
device secret and reports back a DispatchResult. Delivery is best-effort
and nothing here retries.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4
from logging_config import logger


class DispatchErrorKind(str, Enum):
    INVALID_PAYLOAD = "invalid_payload"
    AUTH_ERROR = "auth_error"
    SECRET_INVALID = "secret_invalid"  # device should be deactivated
    PAYLOAD_TOO_LARGE = "payload_too_large"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"  # retryable by the caller's own policy
    UNKNOWN = "unknown"


ERROR_MESSAGES = {
    DispatchErrorKind.INVALID_PAYLOAD: "Bad request - Invalid notification payload",
    DispatchErrorKind.AUTH_ERROR: "Forbidden - Certificate or token issue",
    DispatchErrorKind.SECRET_INVALID: "Device token is no longer valid",
    DispatchErrorKind.PAYLOAD_TOO_LARGE: "Notification payload too large",
    DispatchErrorKind.RATE_LIMITED: "Too many requests - Rate limited",
    DispatchErrorKind.SERVER_ERROR: "Push server error - Try again later",
    DispatchErrorKind.UNKNOWN: "Failed to send notification",
}


def classify_transport_status(status_code: int) -> DispatchErrorKind:
    if status_code == 400:
        return DispatchErrorKind.INVALID_PAYLOAD
    if status_code == 403:
        return DispatchErrorKind.AUTH_ERROR
    if status_code in (404, 410):
        return DispatchErrorKind.SECRET_INVALID
    if status_code == 413:
        return DispatchErrorKind.PAYLOAD_TOO_LARGE
    if status_code == 429:
        return DispatchErrorKind.RATE_LIMITED
    if status_code >= 500:
        return DispatchErrorKind.SERVER_ERROR
    return DispatchErrorKind.UNKNOWN


@dataclass
class DispatchRequest:
    secret_token: str
    shortcut_id: str
    shortcut_name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    environment: str = "sandbox"

    def __repr__(self):
        # Keep the device secret out of logs and tracebacks
        return (f"DispatchRequest(shortcut_id={self.shortcut_id!r}, shortcut_name={self.shortcut_name!r}, "
                f"environment={self.environment!r})")


@dataclass
class DispatchResult:
    success: bool
    notification_id: Optional[str] = None
    external_id: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    error_kind: Optional[DispatchErrorKind] = None

    @classmethod
    def failure_from_status(cls, status_code: int, notification_id: Optional[str] = None) -> "DispatchResult":
        kind = classify_transport_status(status_code)
        return cls(
            success=False,
            notification_id=notification_id,
            error=ERROR_MESSAGES[kind],
            status_code=status_code,
            error_kind=kind,
        )


class Dispatcher:
    def send(self, request: DispatchRequest) -> DispatchResult:
        raise NotImplementedError


class DryRunDispatcher(Dispatcher):
    """Accepts every notification without sending it. For local development."""

    def send(self, request: DispatchRequest) -> DispatchResult:
        notification_id = str(uuid4())
        logger.info(f"Dry-run dispatch of '{request.shortcut_name}' ({request.environment}) as {notification_id}")
        return DispatchResult(success=True, notification_id=notification_id)
