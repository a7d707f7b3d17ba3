"""
Legacy token encryption job - one-off migration of plaintext secrets.

Older deployments stored tokens in plaintext. Until they are rewritten,
decrypt() hands them back unchanged; this job encrypts every secret
column that is not already in envelope form.

CONSTRAINTS:
- Requires ENCRYPTION_KEY (or SESSION_SECRET)
- Respects LEGACY_TOKEN_MIGRATION_DRY_RUN (default true: count only)
- Idempotent: envelopes are left alone, so reruns change nothing

Run once after deploying encryption:
    LEGACY_TOKEN_MIGRATION_DRY_RUN=false python -m ledgerbridge.workers.encrypt_legacy_tokens_job
"""

import os
import sys
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional

from dotenv import load_dotenv
from sqlalchemy.orm import Session

from ledgerbridge.credentials.encryption import encrypt, is_encrypted, validate_encryption_ready
from ledgerbridge.database.session import get_session_factory
from ledgerbridge.models.tenant_credential import ShippingCredential, TenantCredential

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Configurable via environment variables
LEGACY_TOKEN_MIGRATION_DRY_RUN = (
    os.getenv("LEGACY_TOKEN_MIGRATION_DRY_RUN", "true").lower() == "true"
)

TENANT_SECRET_COLUMNS = (
    "crm_access_token_encrypted",
    "crm_refresh_token_encrypted",
    "accounting_access_token_encrypted",
    "accounting_refresh_token_encrypted",
)

SHIPPING_SECRET_COLUMNS = (
    "api_key_encrypted",
    "api_secret_encrypted",
)


@dataclass
class EncryptionMigrationStats:
    """Statistics from a legacy token migration run."""

    started_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    records_scanned: int = 0
    values_encrypted: int = 0
    values_already_encrypted: int = 0
    dry_run: bool = LEGACY_TOKEN_MIGRATION_DRY_RUN
    completed_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
            "records_scanned": self.records_scanned,
            "values_encrypted": self.values_encrypted,
            "values_already_encrypted": self.values_already_encrypted,
            "dry_run": self.dry_run,
        }


def _get_database_session() -> Session:
    """Create database session for the migration job."""
    if not os.getenv("DATABASE_URL"):
        raise ValueError("DATABASE_URL environment variable is required")
    return get_session_factory()()


def _encrypt_columns(
    record,
    columns: Iterable[str],
    stats: EncryptionMigrationStats,
    dry_run: bool,
) -> None:
    for column in columns:
        value = getattr(record, column)
        if not value:
            continue
        if is_encrypted(value):
            stats.values_already_encrypted += 1
            continue
        stats.values_encrypted += 1
        if not dry_run:
            setattr(record, column, encrypt(value))


def run_migration(
    db_session: Session,
    dry_run: bool = LEGACY_TOKEN_MIGRATION_DRY_RUN,
) -> EncryptionMigrationStats:
    """
    Encrypt plaintext secrets in place.

    Args:
        db_session: Database session
        dry_run: If True, only count values that would be encrypted

    Returns:
        EncryptionMigrationStats with results
    """
    validate_encryption_ready()
    stats = EncryptionMigrationStats(dry_run=dry_run)

    try:
        for record in db_session.query(TenantCredential).all():
            stats.records_scanned += 1
            _encrypt_columns(record, TENANT_SECRET_COLUMNS, stats, dry_run)

        for record in db_session.query(ShippingCredential).all():
            stats.records_scanned += 1
            _encrypt_columns(record, SHIPPING_SECRET_COLUMNS, stats, dry_run)

        if dry_run:
            logger.info(
                "[DRY RUN] Would encrypt %d values",
                stats.values_encrypted,
            )
        else:
            db_session.commit()
    except Exception:
        db_session.rollback()
        logger.error("Legacy token migration failed", exc_info=True)
        raise

    stats.completed_at = datetime.now(timezone.utc)
    logger.info("Legacy token migration completed", extra=stats.to_dict())
    return stats


def main():
    """Entry point for the legacy token migration job."""
    load_dotenv()
    logger.info(
        "Legacy Token Encryption Job starting",
        extra={"dry_run": LEGACY_TOKEN_MIGRATION_DRY_RUN},
    )

    session = _get_database_session()
    try:
        stats = run_migration(session, dry_run=LEGACY_TOKEN_MIGRATION_DRY_RUN)
        logger.info("Legacy Token Encryption Job stats", extra=stats.to_dict())
    except Exception as exc:
        logger.error(
            "Legacy Token Encryption Job failed",
            extra={"error": str(exc)},
            exc_info=True,
        )
        sys.exit(1)
    finally:
        session.close()

    logger.info("Legacy Token Encryption Job finished")


if __name__ == "__main__":
    main()
