"""
Token Broker - Access-token lifecycle for integration credentials.

Guarantee: at most one outbound refresh per credential is in flight at any
instant within this process. Concurrent callers that find a token inside the
skew window await the in-flight refresh instead of starting their own.

Refresh outcomes:
- success: new token set merged, re-encrypted and persisted (status connected)
- terminal (invalid_grant and friends): credential marked expired, every
  caller gets TerminalAuthError
- anything else, including timeouts: RetryableAuthError, nothing persisted

Coordination is process-local. Replicas each coalesce their own refreshes;
cross-replica coalescing would need a lock in the backing store.
"""

import asyncio
import time
from collections.abc import Callable
from typing import Any
from uuid import UUID

import httpx
from structlog import get_logger

from costledger.exceptions import (
    IntegrationError,
    RetryableAuthError,
    TerminalAuthError,
)
from costledger.models.api import CredentialStatus
from costledger.models.domain import CredentialRecord, OAuthTokenSet
from costledger.observability.metrics import metrics
from costledger.observability.tracing import integration_span, set_span_error
from costledger.services.credential_store import CredentialStore
from costledger.services.encryption import EncryptionCodec
from costledger.services.providers import (
    ProviderAdapter,
    RefreshFailureKind,
    get_adapter,
    response_payload,
)

logger = get_logger(__name__)


class TokenBroker:
    """Returns valid access tokens, refreshing each credential exactly once per expiry."""

    def __init__(
        self,
        store: CredentialStore,
        codec: EncryptionCodec,
        adapters: dict[str, ProviderAdapter],
        http_client: httpx.AsyncClient,
        skew_seconds: int = 300,
        timeout_seconds: float = 15.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._codec = codec
        self._adapters = adapters
        self._http = http_client
        self._skew_seconds = skew_seconds
        self._timeout_seconds = timeout_seconds
        self._clock = clock
        self._inflight: dict[UUID, asyncio.Future[str]] = {}

    def is_refreshing(self, credential_id: UUID) -> bool:
        """True while a refresh for this credential is in flight."""
        return credential_id in self._inflight

    async def get_valid_access_token(self, credential: CredentialRecord | UUID) -> str:
        """
        Return an access token that is valid for at least the skew window.

        Raises:
            TerminalAuthError: Credential needs a new user authorization
            RetryableAuthError: Refresh failed transiently; nothing was persisted
            DecryptionError: Stored settings are corrupted or tampered
        """
        record = credential if isinstance(credential, CredentialRecord) else None
        if record is None:
            record = await self._store.get(credential)

        tokens = self._usable_tokens(record)
        if not tokens.is_expiring(self._clock(), self._skew_seconds):
            return tokens.access_token

        inflight = self._inflight.get(record.credential_id)
        if inflight is not None:
            return await self._await_inflight(record, inflight)

        return await self._lead_refresh(record)

    async def complete_authorization(
        self, credential: CredentialRecord | UUID, code: str, redirect_uri: str
    ) -> CredentialRecord:
        """
        Exchange an authorization code for a fresh token set.

        This is the only way an expired credential returns to connected.
        """
        record = credential if isinstance(credential, CredentialRecord) else None
        if record is None:
            record = await self._store.get(credential)

        adapter = get_adapter(self._adapters, record.provider)
        settings = self._codec.decrypt(record.settings)

        missing = adapter.missing_settings(settings)
        if missing:
            raise TerminalAuthError(
                record.credential_id,
                record.provider,
                reason=f"missing client settings: {', '.join(missing)}",
            )

        request = adapter.build_authorization_request(settings, code, redirect_uri)
        try:
            response = await asyncio.wait_for(
                self._http.post(request.url, data=request.data, headers=request.headers),
                timeout=self._timeout_seconds,
            )
        except (asyncio.TimeoutError, httpx.HTTPError) as exc:
            raise RetryableAuthError(
                record.credential_id,
                record.provider,
                f"token endpoint unreachable: {exc.__class__.__name__}",
            ) from exc

        payload = response_payload(response)
        if not response.is_success or not payload.get("access_token"):
            kind = adapter.classify_refresh_error(response.status_code, payload)
            reason = self._failure_reason(response, payload)
            logger.warning(
                "authorization_code_rejected",
                credential_id=str(record.credential_id),
                provider=record.provider,
                status_code=response.status_code,
                reason=reason,
            )
            if kind is RefreshFailureKind.TERMINAL:
                raise TerminalAuthError(record.credential_id, record.provider, reason=reason)
            raise RetryableAuthError(record.credential_id, record.provider, reason)

        tokens = OAuthTokenSet(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_at=adapter.parse_expiry(payload, self._clock()),
            expires_in=payload.get("expires_in"),
            scope=payload.get("scope"),
            token_type=payload.get("token_type") or "Bearer",
        )
        saved = await self._store.save_settings(
            record.credential_id,
            self._codec.encrypt(tokens.apply_to(settings)),
            CredentialStatus.CONNECTED,
        )
        logger.info(
            "integration_authorized",
            credential_id=str(record.credential_id),
            provider=record.provider,
            granted_scope=tokens.scope or "none",
            expires_at=tokens.expires_at,
        )
        return saved

    # ========================================================================
    # Coordination
    # ========================================================================

    async def _await_inflight(self, record: CredentialRecord, future: asyncio.Future[str]) -> str:
        """Wait on another caller's refresh; re-read once if it failed."""
        metrics.token_refresh_waiters_total.labels(provider=record.provider).inc()
        try:
            return await asyncio.shield(future)
        except IntegrationError as exc:
            # Another path may have recovered the credential in the meantime
            fresh = await self._store.get(record.credential_id)
            if fresh.status != CredentialStatus.EXPIRED:
                tokens = self._read_tokens(fresh, self._codec.decrypt(fresh.settings))
                if tokens is not None and not tokens.is_expiring(
                    self._clock(), self._skew_seconds
                ):
                    return tokens.access_token
            raise exc

    async def _lead_refresh(self, record: CredentialRecord) -> str:
        """Own the coordination point for this credential and run the refresh."""
        credential_id = record.credential_id
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._inflight[credential_id] = future

        try:
            token = await asyncio.wait_for(
                self._refresh(credential_id), timeout=self._timeout_seconds
            )
        except asyncio.TimeoutError:
            metrics.record_token_refresh(record.provider, "timeout")
            logger.warning(
                "token_refresh_timeout",
                credential_id=str(credential_id),
                provider=record.provider,
                timeout_seconds=self._timeout_seconds,
            )
            error = RetryableAuthError(credential_id, record.provider, "token refresh timed out")
            self._fail(future, error)
            raise error from None
        except IntegrationError as exc:
            self._fail(future, exc)
            raise
        except asyncio.CancelledError:
            self._fail(
                future,
                RetryableAuthError(credential_id, record.provider, "token refresh cancelled"),
            )
            raise
        except Exception as exc:
            logger.error(
                "token_refresh_failed",
                credential_id=str(credential_id),
                provider=record.provider,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            error = RetryableAuthError(credential_id, record.provider, str(exc))
            self._fail(future, error)
            raise error from exc
        else:
            future.set_result(token)
            return token
        finally:
            if self._inflight.get(credential_id) is future:
                del self._inflight[credential_id]

    @staticmethod
    def _fail(future: asyncio.Future[str], error: BaseException) -> None:
        if not future.done():
            future.set_exception(error)
            # Mark retrieved so an unawaited future doesn't log "never retrieved"
            future.exception()

    # ========================================================================
    # Refresh
    # ========================================================================

    async def _refresh(self, credential_id: UUID) -> str:
        """Re-read the credential, then call the token endpoint if still needed."""
        record = await self._store.get(credential_id)
        adapter = get_adapter(self._adapters, record.provider)
        settings = self._codec.decrypt(record.settings)
        tokens = self._usable_tokens(record, settings)

        # A previous refresh may have landed between the caller's read and now
        if not tokens.is_expiring(self._clock(), self._skew_seconds):
            return tokens.access_token

        if not tokens.refresh_token:
            await self._expire(record, "no refresh token stored")
        missing = adapter.missing_settings(settings)
        if missing:
            await self._expire(record, f"missing client settings: {', '.join(missing)}")

        request = adapter.build_refresh_request(settings, tokens.refresh_token, tokens.scope)
        with integration_span("token_refresh", record.provider, credential_id) as span:
            try:
                response = await self._http.post(
                    request.url, data=request.data, headers=request.headers
                )
            except httpx.HTTPError as exc:
                set_span_error(span, exc)
                metrics.record_token_refresh(record.provider, "retryable")
                logger.warning(
                    "token_endpoint_unreachable",
                    credential_id=str(credential_id),
                    provider=record.provider,
                    error_type=exc.__class__.__name__,
                )
                raise RetryableAuthError(
                    credential_id,
                    record.provider,
                    f"token endpoint unreachable: {exc.__class__.__name__}",
                ) from exc
            span.set_attribute("http.status_code", response.status_code)

        payload = response_payload(response)
        if response.is_success and payload.get("access_token"):
            refreshed = tokens.merged(payload, adapter.parse_expiry(payload, self._clock()))
            await self._store.save_settings(
                credential_id,
                self._codec.encrypt(refreshed.apply_to(settings)),
                CredentialStatus.CONNECTED,
            )
            metrics.record_token_refresh(record.provider, "success")
            logger.info(
                "token_refreshed",
                credential_id=str(credential_id),
                provider=record.provider,
                expires_at=refreshed.expires_at,
                refresh_token_rotated=refreshed.refresh_token != tokens.refresh_token,
            )
            return refreshed.access_token

        reason = self._failure_reason(response, payload)
        if adapter.classify_refresh_error(response.status_code, payload) is RefreshFailureKind.TERMINAL:
            await self._expire(record, reason)

        metrics.record_token_refresh(record.provider, "retryable")
        logger.warning(
            "token_refresh_rejected",
            credential_id=str(credential_id),
            provider=record.provider,
            status_code=response.status_code,
            reason=reason,
        )
        raise RetryableAuthError(credential_id, record.provider, reason)

    async def _expire(self, record: CredentialRecord, reason: str) -> None:
        """Mark the credential expired and raise TerminalAuthError."""
        await self._store.mark_expired(record.credential_id)
        metrics.record_token_refresh(record.provider, "terminal")
        logger.warning(
            "token_refresh_terminal",
            credential_id=str(record.credential_id),
            provider=record.provider,
            reason=reason,
        )
        raise TerminalAuthError(record.credential_id, record.provider, reason=reason)

    def _usable_tokens(
        self, record: CredentialRecord, settings: dict[str, Any] | None = None
    ) -> OAuthTokenSet:
        """Decrypted token set, or TerminalAuthError when the credential can't be used."""
        if record.status == CredentialStatus.EXPIRED:
            raise TerminalAuthError(
                record.credential_id, record.provider, reason="credential is expired"
            )
        if settings is None:
            settings = self._codec.decrypt(record.settings)
        tokens = self._read_tokens(record, settings)
        if tokens is None:
            raise TerminalAuthError(
                record.credential_id, record.provider, reason="no access token stored"
            )
        return tokens

    def _read_tokens(
        self, record: CredentialRecord, settings: dict[str, Any]
    ) -> OAuthTokenSet | None:
        """Token set from decrypted settings; an unreadable expiry counts as already expired."""
        try:
            return OAuthTokenSet.from_settings(settings)
        except ValueError as exc:
            logger.warning(
                "token_expiry_unreadable",
                credential_id=str(record.credential_id),
                provider=record.provider,
                error=str(exc),
            )
        oauth_data = settings.get("oauth_data") or {}
        tokens = {**(oauth_data.get("tokens") or {}), "expires_at": 0}
        return OAuthTokenSet.from_settings({"oauth_data": {"tokens": tokens}})

    @staticmethod
    def _failure_reason(response: httpx.Response, payload: dict[str, Any]) -> str:
        for key in ("error", "status", "error_description", "message"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
        return f"HTTP {response.status_code}"
