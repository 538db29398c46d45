#!/usr/bin/env python3
"""
Encrypt Existing Integration Credentials

Encrypts sensitive fields of integration credentials that were stored in
clear text before encryption was enabled. Safe to run repeatedly: fields that
are already encrypted are skipped.

Usage:
    # Encrypt everything that still has clear-text secrets
    ENCRYPTION_KEY=... DATABASE_URL=... python3 scripts/encrypt_existing_credentials.py

    # Report what would change without writing
    python3 scripts/encrypt_existing_credentials.py --dry-run
"""

import argparse
import asyncio
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from costledger.config import settings
from costledger.db.models import IntegrationCredential
from costledger.observability.logging import log_context, setup_logging
from costledger.services.encryption import EncryptionCodec

logger = structlog.get_logger()


async def encrypt_credentials(session: AsyncSession, codec: EncryptionCodec, dry_run: bool) -> tuple[int, int]:
    """
    Encrypt clear-text credentials in place.

    Returns:
        (encrypted, skipped) counts
    """
    result = await session.execute(
        select(IntegrationCredential).order_by(IntegrationCredential.created_at)
    )
    credentials = result.scalars().all()

    encrypted = 0
    skipped = 0
    for credential in credentials:
        current = credential.encrypted_settings or {}
        updated = codec.encrypt(current)

        if updated == current:
            skipped += 1
            continue

        logger.info(
            "credential_needs_encryption",
            credential_id=str(credential.id),
            provider=credential.provider,
            dry_run=dry_run,
        )
        if not dry_run:
            credential.encrypted_settings = updated
        encrypted += 1

    if dry_run:
        await session.rollback()
    else:
        await session.commit()

    return encrypted, skipped


async def main(dry_run: bool) -> int:
    """Run the migration once."""
    setup_logging()
    codec = EncryptionCodec.from_settings(settings.encryption_key)

    engine = create_async_engine(settings.database_url)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    try:
        async with session_factory() as session:
            with log_context(database=engine.url.database):
                encrypted, skipped = await encrypt_credentials(session, codec, dry_run)
    finally:
        await engine.dispose()

    logger.info(
        "credential_encryption_complete",
        encrypted=encrypted,
        skipped=skipped,
        dry_run=dry_run,
    )
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Encrypt clear-text integration credentials")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report credentials that would be encrypted without writing",
    )
    args = parser.parse_args()

    sys.exit(asyncio.run(main(args.dry_run)))
