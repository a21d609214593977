from __future__ import annotations


class ConsultError(Exception):
    status_code = 500
    default_message = "Chat failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class RequestValidationFailed(ConsultError):
    status_code = 400
    default_message = "Invalid request body"


class AuthRequiredError(ConsultError):
    status_code = 401
    default_message = "Unauthorized"


class RateLimitError(ConsultError):
    status_code = 429
    default_message = "Rate limit exceeded"


class UpstreamUnavailableError(ConsultError):
    default_message = "Model service unavailable"


class UpstreamGenerationError(ConsultError):
    default_message = "Upstream model service error"

    def __init__(self, message: str | None = None, *, category: str = "unknown") -> None:
        super().__init__(message)
        self.category = category


class UpstreamTimeoutError(UpstreamGenerationError):
    default_message = "Model request timed out"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message, category="timeout")


class PersistenceError(ConsultError):
    default_message = "Could not persist consultation turn"


class AuthProviderError(ConsultError):
    status_code = 400
    default_message = "Authentication failed"

    def __init__(self, message: str | None = None, *, status_code: int | None = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code
