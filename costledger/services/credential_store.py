"""
Credential Store - Persistence port for integration credentials.

The store only ever sees the at-rest form of the settings blob (sensitive
fields encrypted). Encryption is the caller's job via EncryptionCodec.
"""

from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from costledger.db.models import IntegrationCredential
from costledger.exceptions import CredentialNotFoundError, WriteVerificationError
from costledger.models.api import CredentialStatus
from costledger.models.domain import CredentialRecord

logger = get_logger(__name__)


class CredentialStore(Protocol):
    """Persistence operations TokenBroker depends on."""

    async def get(self, credential_id: UUID) -> CredentialRecord: ...

    async def save_settings(
        self,
        credential_id: UUID,
        settings: dict[str, Any],
        status: CredentialStatus = CredentialStatus.CONNECTED,
    ) -> CredentialRecord: ...

    async def mark_expired(self, credential_id: UUID) -> None: ...

    async def create(
        self,
        owner_id: UUID,
        provider: str,
        settings: dict[str, Any],
        environment: str = "production",
        status: CredentialStatus = CredentialStatus.PENDING,
    ) -> CredentialRecord: ...


class SqlCredentialStore:
    """
    CredentialStore backed by the integration_credentials table.

    Each operation runs in its own short-lived session so a token refresh
    never holds a request's transaction open.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, credential_id: UUID) -> CredentialRecord:
        """
        Get credential by ID.

        Raises:
            CredentialNotFoundError: Credential doesn't exist
        """
        async with self._session_factory() as session:
            row = await session.get(IntegrationCredential, credential_id)
            if row is None:
                raise CredentialNotFoundError(credential_id)
            return self._to_domain(row)

    async def save_settings(
        self,
        credential_id: UUID,
        settings: dict[str, Any],
        status: CredentialStatus = CredentialStatus.CONNECTED,
    ) -> CredentialRecord:
        """Replace the settings blob and set status."""
        async with self._session_factory() as session:
            row = await self._lock(session, credential_id)
            row.encrypted_settings = settings
            row.status = status.value
            await session.flush()

            verified = await session.get(IntegrationCredential, credential_id)
            if verified is None or verified.status != status.value:
                raise WriteVerificationError(f"Credential {credential_id} not updated")

            await session.commit()
            logger.info(
                "integration_credential_saved",
                credential_id=str(credential_id),
                provider=row.provider,
                status=status.value,
            )
            return self._to_domain(row)

    async def mark_expired(self, credential_id: UUID) -> None:
        """Set status to expired. Settings are left untouched."""
        async with self._session_factory() as session:
            row = await self._lock(session, credential_id)
            row.status = CredentialStatus.EXPIRED.value
            await session.commit()
            logger.warning(
                "integration_credential_expired",
                credential_id=str(credential_id),
                provider=row.provider,
            )

    async def create(
        self,
        owner_id: UUID,
        provider: str,
        settings: dict[str, Any],
        environment: str = "production",
        status: CredentialStatus = CredentialStatus.PENDING,
    ) -> CredentialRecord:
        """Insert a new credential."""
        async with self._session_factory() as session:
            row = IntegrationCredential(
                owner_id=owner_id,
                provider=provider,
                environment=environment,
                encrypted_settings=settings,
                status=status.value,
            )
            session.add(row)
            await session.commit()
            logger.info(
                "integration_credential_created",
                credential_id=str(row.id),
                owner_id=str(owner_id),
                provider=provider,
            )
            return self._to_domain(row)

    async def _lock(self, session: AsyncSession, credential_id: UUID) -> IntegrationCredential:
        stmt = (
            select(IntegrationCredential)
            .where(IntegrationCredential.id == credential_id)
            .with_for_update()
        )
        row = (await session.execute(stmt)).scalar_one_or_none()
        if row is None:
            raise CredentialNotFoundError(credential_id)
        return row

    def _to_domain(self, row: IntegrationCredential) -> CredentialRecord:
        return CredentialRecord(
            credential_id=row.id,
            owner_id=row.owner_id,
            provider=row.provider,
            environment=row.environment,
            status=CredentialStatus(row.status),
            settings=dict(row.encrypted_settings or {}),
            updated_at=row.updated_at,
        )
