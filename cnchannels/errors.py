"""Exception taxonomy shared by the Feishu and WeCom channel adapters."""

from __future__ import annotations


class ChannelError(Exception):
    """Base class for channel adapter errors."""


class ProviderApiError(ChannelError):
    """Raised when a provider API answers with a non-zero error code."""

    def __init__(self, message: str, code: int = -1, provider_message: str | None = None) -> None:
        self.code = code
        self.provider_message = provider_message or message
        super().__init__(message)


class AuthError(ProviderApiError):
    """Raised when the provider rejects app credentials or the token call fails."""


class DeliveryError(ProviderApiError):
    """Raised when an outbound send-message call fails."""


class RequestTimeoutError(ChannelError):
    """Raised when an outbound HTTP call exceeds its explicit timeout."""

    def __init__(self, timeout_ms: int) -> None:
        self.timeout_ms = timeout_ms
        super().__init__(f"Request timed out after {timeout_ms}ms")


class DecryptionError(ChannelError):
    """Raised when a webhook payload cannot be decrypted with a target's key."""


class CorpIdMismatchError(DecryptionError):
    """Raised when a decrypted WeCom payload carries a different corpId."""

    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"CorpID mismatch: expected {expected}, got {actual}")


class ValidationError(ChannelError):
    """Raised for malformed inbound webhook bodies."""

    status_code = 400

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class PayloadTooLargeError(ValidationError):
    """Raised when a webhook body exceeds the configured size cutoff."""

    status_code = 413


class ConfigurationError(ChannelError):
    """Raised when an account cannot start because configuration is missing."""
