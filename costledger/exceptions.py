"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Two families:
- LedgerError: credit accounting failures (insufficient credits, missing account)
- IntegrationError: outbound provider failures, normalized across providers
"""

from uuid import UUID


class LedgerError(Exception):
    """Base exception for all credit ledger errors."""

    pass


class InsufficientCreditsError(LedgerError):
    """Raised when an account cannot cover a consume. User-facing: upgrade or wait."""

    def __init__(self, available: int, required: int) -> None:
        self.available = available
        self.required = required
        super().__init__(f"Insufficient credits. Available: {available}, Required: {required}")


class AccountNotFoundError(LedgerError):
    """Raised when a credit account doesn't exist."""

    def __init__(self, owner_id: UUID) -> None:
        self.owner_id = owner_id
        super().__init__(f"Credit account not found: {owner_id}")


class RefundMismatchError(LedgerError):
    """Raised when a keyed refund doesn't match the consume it references."""

    def __init__(self, transaction_id: UUID, reason: str) -> None:
        self.transaction_id = transaction_id
        self.reason = reason
        super().__init__(f"Refund for transaction {transaction_id} rejected: {reason}")


class WriteVerificationError(LedgerError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(LedgerError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class IntegrationError(Exception):
    """Base exception for all integration (provider) errors."""

    pass


class TerminalAuthError(IntegrationError):
    """
    Authentication failure that retrying cannot fix.

    The stored credential has been marked expired; the user must reconnect.
    """

    def __init__(
        self,
        credential_id: UUID,
        provider: str,
        reason: str = "refresh token rejected",
        requires_reconnect: bool = True,
    ) -> None:
        self.credential_id = credential_id
        self.provider = provider
        self.reason = reason
        self.requires_reconnect = requires_reconnect
        super().__init__(f"{provider} credential {credential_id} requires reconnect: {reason}")


class RetryableAuthError(IntegrationError):
    """Transient authentication failure. No stored state was mutated."""

    def __init__(self, credential_id: UUID, provider: str, reason: str) -> None:
        self.credential_id = credential_id
        self.provider = provider
        self.reason = reason
        super().__init__(f"{provider} token refresh failed, retry later: {reason}")


class IntegrationPermissionError(IntegrationError):
    """Consent scope too narrow for the requested resource."""

    def __init__(self, required_scope: str, scope_name: str, message: str = "") -> None:
        self.required_scope = required_scope
        self.scope_name = scope_name
        self.message = message
        super().__init__(f"Missing {scope_name} permission ({required_scope}): {message}")


class EndpointUnavailableError(IntegrationError):
    """Soft failure: the endpoint cannot serve this account. Callers degrade to empty data."""

    def __init__(self, path: str, message: str) -> None:
        self.path = path
        self.message = message
        super().__init__(f"Endpoint not available: {path}: {message}")


class RateLimitedError(IntegrationError):
    """Call budget exhausted locally or upstream."""

    def __init__(self, retry_after_seconds: int, provider: str | None = None) -> None:
        self.retry_after_seconds = retry_after_seconds
        self.provider = provider
        super().__init__(f"Rate limit exceeded. Retry after {retry_after_seconds}s")


class ProviderError(IntegrationError):
    """Opaque upstream failure, surfaced as-is."""

    def __init__(self, status: int, status_text: str) -> None:
        self.status = status
        self.status_text = status_text
        super().__init__(f"Provider API error: {status} {status_text}")


class DecryptionError(IntegrationError):
    """Stored ciphertext is malformed or was tampered with. Never retried."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Decryption failed: {message}")


class CredentialNotFoundError(IntegrationError):
    """Raised when an integration credential doesn't exist."""

    def __init__(self, credential_id: UUID) -> None:
        self.credential_id = credential_id
        super().__init__(f"Integration credential not found: {credential_id}")


class UnknownProviderError(IntegrationError):
    """Raised when no adapter is registered for a provider."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"No adapter registered for provider: {provider}")
