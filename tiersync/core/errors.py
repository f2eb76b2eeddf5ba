"""
TierSync - Error Types
Business-rule errors raised by services and translated by the central
error responder in main.py.
"""
from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base error carrying a machine-readable code and an HTTP status."""

    status_code = 500

    def __init__(
        self,
        code: str,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.code,
            "message": self.message,
            **self.details,
        }


class ValidationError(BillingError):
    status_code = 400


class NotFoundError(BillingError):
    status_code = 404


class ConflictError(BillingError):
    status_code = 409


class ProviderError(Exception):
    """Raised when the payment provider API call fails."""

    def __init__(self, status_code: int, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message

    def __repr__(self):
        return f"<ProviderError(status={self.status_code}, code={self.code!r})>"
