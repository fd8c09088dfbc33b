"""Error taxonomy for the trigger gateway.

Every error that can reach a caller carries its HTTP status code so the
orchestrator and the FastAPI handlers can turn it into a response without
a second lookup table.
"""
from typing import Dict, Optional


class GatewayError(Exception):
    status_code = 500

    def __init__(self, message: str, headers: Optional[Dict[str, str]] = None, **details):
        super().__init__(message)
        self.message = message
        self.headers = headers or {}
        self.details = details

    def to_body(self) -> dict:
        body = {"error": self.message}
        body.update(self.details)
        return body


class ValidationError(GatewayError):
    status_code = 400

    def __init__(self, message: str = "Invalid request", **details):
        super().__init__(message, **details)


class Unauthorized(GatewayError):
    status_code = 401

    def __init__(self, message: str = "Authentication required", **details):
        super().__init__(message, headers={"WWW-Authenticate": "Bearer"}, **details)


class Forbidden(GatewayError):
    status_code = 403

    def __init__(self, message: str = "Access denied", **details):
        super().__init__(message, **details)


class NotFound(GatewayError):
    status_code = 404

    def __init__(self, message: str = "Not found", **details):
        super().__init__(message, **details)


class Gone(GatewayError):
    status_code = 410

    def __init__(self, message: str = "Resource is gone", **details):
        super().__init__(message, **details)


class PayloadTooLarge(GatewayError):
    status_code = 413

    def __init__(self, size: int, max_size: int):
        super().__init__("Payload too large", size=size, max_size=max_size)


class RateLimited(GatewayError):
    status_code = 429

    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[int] = None):
        headers = {}
        details = {}
        if retry_after is not None:
            headers["Retry-After"] = str(retry_after)
            details["retry_after"] = retry_after
        super().__init__(message, headers=headers, **details)
        self.retry_after = retry_after


class DispatchFailure(GatewayError):
    status_code = 500

    def __init__(self, message: str = "Failed to send notification", **details):
        super().__init__(message, **details)


class InternalError(GatewayError):
    status_code = 500

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)


class DecryptionError(Exception):
    """Ciphertext failed authentication or could not be parsed."""


class UnsupportedHashAlgorithm(Exception):
    """Stored password hash names an algorithm this service does not know."""
