"""Gateway error taxonomy.

Every error surfaced to a caller is a ``GatewayError`` and is rendered by the
exception handler in ``app.main`` as the OpenAI-style envelope::

    {"error": {"message": "...", "type": "...", "code": "..."}}
"""


class GatewayError(Exception):
    """Base class for caller-visible gateway errors."""

    status_code: int = 500
    error_type: str = "api_error"
    code: str = "internal_error"

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_envelope(self) -> dict:
        return {"error": {"message": self.message, "type": self.error_type, "code": self.code}}


class UnauthorizedError(GatewayError):
    """Missing, malformed or unknown caller credential."""

    status_code = 401
    error_type = "invalid_request_error"
    code = "invalid_api_key"


class MalformedRequestError(GatewayError):
    """Request body is missing required fields or has the wrong shape."""

    status_code = 400
    error_type = "invalid_request_error"
    code = "invalid_request"


class InsufficientBalanceError(GatewayError):
    """Balance gate failed and the account does not qualify for the free tier."""

    status_code = 402
    error_type = "insufficient_quota"
    code = "insufficient_balance"


class OversizeError(GatewayError):
    """Prompt cannot fit the backend's context even after trimming history."""

    status_code = 400
    error_type = "invalid_request_error"
    code = "context_length_exceeded"


class CapacityError(GatewayError):
    """Upstream kept rate-limiting or failing after all attempts."""

    status_code = 500
    error_type = "api_error"
    code = "upstream_capacity"


class AuthConfigError(GatewayError):
    """Upstream rejected the provider credential (demoted, not retried)."""

    status_code = 500
    error_type = "api_error"
    code = "upstream_auth"


class UpstreamRequestError(GatewayError):
    """Upstream rejected the request for a reason retrying cannot fix."""

    status_code = 500
    error_type = "api_error"
    code = "upstream_error"


class ModalityError(Exception):
    """Audio or image sub-call failed. Absorbed by the preprocessor, never surfaced."""

    def __init__(self, modality: str, message: str):
        super().__init__(f"{modality}: {message}")
        self.modality = modality
