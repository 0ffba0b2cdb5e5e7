from typing import Dict, Optional


class MarketplaceError(Exception):
    """Base error mapped to the ``{success: false, error: {...}}`` envelope."""

    status_code = 400
    code = "BAD_REQUEST"
    message = "The request could not be processed."

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, object]] = None,
    ):
        super().__init__(message or self.message)
        self.message = message or self.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, object]:
        error: Dict[str, object] = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return {"success": False, "error": error}


class ValidationError(MarketplaceError):
    status_code = 400
    code = "VALIDATION_ERROR"


class ConflictError(MarketplaceError):
    # State conflicts are reported as 400 to match the existing mobile client.
    status_code = 400
    code = "INVALID_STATUS"


class NotFoundError(MarketplaceError):
    status_code = 404
    code = "NOT_FOUND"
    message = "Resource not found."


class ForbiddenError(MarketplaceError):
    status_code = 403
    code = "FORBIDDEN"
    message = "You need additional permissions to perform this action."


class AuthenticationError(MarketplaceError):
    status_code = 401
    code = "UNAUTHORIZED"
    message = "Authentication required."


class UpstreamError(MarketplaceError):
    status_code = 502
    code = "UPSTREAM_ERROR"
    message = "The payment provider could not be reached."


class PaymentGatewayError(Exception):
    """Raised by the gateway client for transport, timeout and API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, payload=None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload
