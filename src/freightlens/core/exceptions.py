"""Custom exception hierarchy."""


class AppError(Exception):
    """Base exception for application errors."""

    def __init__(self, message: str, original_error: Exception | None = None):
        super().__init__(message)
        self.original_error = original_error


class DatabaseError(AppError):
    """Raised when a database operation fails."""
    pass


class ValidationError(AppError):
    """Raised when input validation fails."""
    pass


class ToolInputError(ValidationError):
    """Raised when a tool receives malformed arguments."""
    pass


class AccessDeniedError(AppError):
    """Raised when a caller references a field outside its access level."""
    pass


class ConfigurationError(AppError):
    """Raised when configuration is invalid or missing."""
    pass


class APIClientError(AppError):
    """Raised when an external API call fails."""
    pass


class LLMProviderError(APIClientError):
    """Raised when the LLM provider call fails.

    ``category`` is one of: auth, rate_limit, quota, timeout, unavailable, unknown.
    """

    def __init__(
        self,
        message: str,
        category: str = "unknown",
        original_error: Exception | None = None,
    ):
        super().__init__(message, original_error)
        self.category = category
