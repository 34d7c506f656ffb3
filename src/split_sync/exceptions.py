"""Custom exceptions for split-sync."""

from datetime import datetime
from uuid import UUID


class SplitSyncError(Exception):
    """Base exception for all split-sync errors."""

    pass


class ConfigurationError(SplitSyncError):
    """Raised when configuration is invalid or missing."""

    pass


class UnknownProviderError(ConfigurationError):
    """Raised when no provider implementation is registered for a type."""

    def __init__(self, provider_type: str):
        self.provider_type = provider_type
        super().__init__(f"Unknown provider type: {provider_type}")


# ============================================================================
# Credential vault
# ============================================================================


class VaultError(SplitSyncError):
    """Base class for credential vault failures."""

    pass


class DecryptionError(VaultError):
    """Raised when a blob was tampered with, is malformed, or the key differs."""

    pass


class InvalidStateTokenError(VaultError):
    """Raised when an OAuth state token decrypts but carries no user id."""

    pass


# ============================================================================
# Provider errors
# ============================================================================


class ProviderError(SplitSyncError):
    """Base class for errors raised by split provider clients."""

    @property
    def is_retryable(self) -> bool:
        """Whether a later user-initiated retry may succeed unchanged."""
        return isinstance(self, (NetworkError, RateLimited, TokenExpired))

    @property
    def requires_reauth(self) -> bool:
        """Whether the user has to re-authenticate with the provider."""
        return isinstance(self, (AuthenticationFailed, TokenExpired))


class AuthenticationFailed(ProviderError):
    """Raised when the provider rejects the stored credentials."""

    def __init__(self, message: str = ""):
        super().__init__(f"Authentication failed: {message}")


class TokenExpired(ProviderError):
    """Raised when the access token has expired."""

    def __init__(self):
        super().__init__("Access token expired")


class RateLimited(ProviderError):
    """Raised when the provider throttles requests."""

    def __init__(self, retry_after: datetime | None = None):
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded. Retry after: {retry_after}")


class NotFound(ProviderError):
    """Raised when the provider has no such resource."""

    def __init__(self, message: str = ""):
        super().__init__(f"Resource not found: {message}")


class ProviderApiError(ProviderError):
    """Raised for any other unsuccessful provider response."""

    def __init__(self, message: str):
        super().__init__(f"API error: {message}")


class NetworkError(ProviderError):
    """Raised when the provider could not be reached."""

    def __init__(self, message: str):
        super().__init__(f"Network error: {message}")


class InvalidResponse(ProviderError):
    """Raised when a provider response cannot be parsed."""

    def __init__(self, message: str):
        super().__init__(f"Invalid response from provider: {message}")


class ProviderConfigurationError(ProviderError, ConfigurationError):
    """Raised when credentials or OAuth app settings are incomplete."""

    def __init__(self, message: str):
        super().__init__(f"Configuration error: {message}")


# ============================================================================
# Orchestration errors
# ============================================================================


class TransactionNotFoundError(SplitSyncError):
    """Raised when a transaction referenced by a trigger does not exist."""

    def __init__(self, transaction_id: UUID):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} not found")


class SplitNotFoundError(SplitSyncError):
    """Raised when a split referenced by a sync record no longer exists."""

    def __init__(self, split_id: UUID):
        self.split_id = split_id
        super().__init__(f"Split {split_id} not found")


class SyncRecordNotFoundError(SplitSyncError):
    """Raised when a sync record id does not exist."""

    def __init__(self, record_id: UUID):
        self.record_id = record_id
        super().__init__(f"Sync record {record_id} not found")


class RetryLimitExceededError(SplitSyncError):
    """Raised when a retry is requested for a record at the retry ceiling."""

    def __init__(self, record_id: UUID, retry_count: int):
        self.record_id = record_id
        self.retry_count = retry_count
        super().__init__(
            f"Maximum retry count exceeded for sync record {record_id} "
            f"({retry_count} attempts)"
        )


class ConnectionNotFoundError(SplitSyncError):
    """Raised when a provider connection does not exist for the caller."""

    def __init__(self, connection_id: UUID):
        self.connection_id = connection_id
        super().__init__(f"Provider connection {connection_id} not found")
