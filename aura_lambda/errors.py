"""
errors.py — Error taxonomy shared by every handler.

Handlers raise these; lambda_function turns them into proxy responses
through their status_code/code/message. ProviderCallError never leaves the
orchestrator: it is converted to a ProviderError value at the call boundary.
"""


class AuraError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, *, status_code: int | None = None, details=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_body(self) -> dict:
        body = {"error": self.message, "code": self.code}
        if self.details is not None:
            body["details"] = self.details
        return body


class ConfigurationError(AuraError):
    """Missing credentials or no usable provider. Fatal, never retried."""

    status_code = 500
    code = "configuration_error"


class AuthenticationError(AuraError):
    status_code = 401
    code = "unauthorized"


class ValidationError(AuraError):
    status_code = 400
    code = "validation_error"


class PersistenceError(AuraError):
    status_code = 500
    code = "persistence_error"


class ProviderCallError(Exception):
    """Raised by provider adapters on non-2xx, transport failure or empty body."""

    def __init__(self, provider_id: str, message: str, status: int | None = None):
        super().__init__(f"{provider_id}: {message}")
        self.provider_id = provider_id
        self.message = message
        self.status = status


class UpstreamError(AuraError):
    """Every provider in the chain failed."""

    status_code = 502
    code = "provider_error"
