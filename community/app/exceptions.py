"""Custom exceptions for the community service."""


class CommunityException(Exception):
    """Base class for service exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str = "Internal server error"):
        self.message = message
        super().__init__(message)

    def to_response(self) -> dict:
        return {"error": self.error_code, "message": self.message}


class AuthenticationError(CommunityException):
    """Raised when API key authentication fails.

    Maps to HTTP 401 Unauthorized.
    """
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, detail: str = "Invalid or missing API key"):
        self.detail = detail
        super().__init__(detail)


class SessionNotFoundError(CommunityException):
    """Raised when a chat session does not exist. Maps to HTTP 404."""
    status_code = 404
    error_code = "session_not_found"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Chat session not found: {session_id}")


class SessionPermissionError(CommunityException):
    """Raised when a user accesses a chat session they do not own.

    Maps to HTTP 403 Forbidden. The response body never names the owner.
    """
    status_code = 403
    error_code = "forbidden"

    def __init__(self, session_id: str, user_id: str):
        self.session_id = session_id
        self.user_id = user_id
        super().__init__(
            f"User {user_id} does not have permission to access session {session_id}"
        )

    def to_response(self) -> dict:
        return {"error": self.error_code, "message": "Forbidden"}


class RateLimitExceededError(CommunityException):
    """Raised when a caller exceeds the chat rate limit.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    error_code = "rate_limit_exceeded"

    def __init__(self, wait_time_ms: int):
        self.wait_time_ms = wait_time_ms
        # Round up so clients never retry before the window has moved.
        self.retry_after = -(-wait_time_ms // 1000)
        super().__init__(
            f"Too many requests. Please wait {self.retry_after} seconds before trying again."
        )

    def to_response(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.message,
            "wait_time_ms": self.wait_time_ms,
            "retry_after": self.retry_after,
        }


class AlreadyPlayedError(CommunityException):
    """Raised when a user submits a second daily game score. Maps to HTTP 409."""
    status_code = 409
    error_code = "already_played"

    def __init__(self, game_date: str):
        self.game_date = game_date
        super().__init__("You have already played today")


class LLMServiceError(CommunityException):
    """Raised when the chat completion provider fails.

    ``message`` is safe to show to end users; the provider exception is kept
    in ``original_error`` for logging.
    """
    status_code = 502
    error_code = "llm_service_error"

    def __init__(
        self,
        message: str,
        original_error: BaseException | None = None,
        is_retryable: bool = True,
    ):
        self.original_error = original_error
        self.is_retryable = is_retryable
        super().__init__(message)


class ChatStreamError(CommunityException):
    """Raised by stream consumers when a chat stream ends in failure."""
    status_code = 502
    error_code = "stream_error"

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)


class StreamStateError(RuntimeError):
    """Raised when a chunk is fed to a stream that already terminated."""


class RetryAttemptError(ValueError):
    """Raised when a backoff delay is requested for an out-of-range attempt."""

    def __init__(self, attempt: int, max_retries: int):
        self.attempt = attempt
        self.max_retries = max_retries
        super().__init__(
            f"Maximum retry attempts ({max_retries}) exceeded (invalid attempt index {attempt})"
        )
