from typing import Dict, Optional


class ApiError(Exception):
    """Base class for failures that are reported to the client as JSON."""

    status_code = 500

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        reason: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.reason = reason

    def to_payload(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"error": self.message, "success": False}
        if self.reason:
            payload["reason"] = self.reason
        return payload


class ConfigurationError(ApiError):
    status_code = 500


class ValidationError(ApiError):
    status_code = 400


class AuthenticationError(ApiError):
    status_code = 400


class NotFoundError(ApiError):
    status_code = 404


class ExternalServiceError(ApiError):
    status_code = 502
