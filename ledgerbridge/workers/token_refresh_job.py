"""
Token refresh job - scheduled proactive refresh of expiring OAuth tokens.

Runs every few minutes so that request handlers rarely have to refresh
inline. Picks every tenant whose CRM or accounting token expires within
the sweep window (or has no known expiry) and refreshes it through the
same engine and locks the API uses, so a sweep never races a request.

CONSTRAINTS:
- Operates across all tenants
- A rejected refresh token marks that provider reauthorization_required
  and the sweep moves on
- Respects TOKEN_REFRESH_DRY_RUN (only counts candidates)

Run as a cron job:
    python -m ledgerbridge.workers.token_refresh_job
"""

import asyncio
import os
import sys
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy.orm import Session

from ledgerbridge.credentials.errors import CredentialError, RefreshRejectedError
from ledgerbridge.credentials.redaction import setup_credential_logging
from ledgerbridge.credentials.refresh import RefreshOutcome, TokenRefreshEngine
from ledgerbridge.credentials.store import CredentialStore
from ledgerbridge.database.session import get_session_factory
from ledgerbridge.models.tenant_credential import CredentialProvider

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Configurable via environment variables
TOKEN_REFRESH_DRY_RUN = os.getenv("TOKEN_REFRESH_DRY_RUN", "false").lower() == "true"
TOKEN_REFRESH_WINDOW_MINUTES = int(os.getenv("TOKEN_REFRESH_WINDOW_MINUTES", "30"))


@dataclass
class RefreshSweepStats:
    """Statistics from a refresh sweep."""

    started_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    candidates: int = 0
    refreshed: int = 0
    reused: int = 0
    skipped: int = 0
    rejected: int = 0
    failed: int = 0
    dry_run: bool = TOKEN_REFRESH_DRY_RUN
    errors: list = field(default_factory=list)
    completed_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        duration = None
        if self.completed_at:
            duration = (self.completed_at - self.started_at).total_seconds()

        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
            "candidates": self.candidates,
            "refreshed": self.refreshed,
            "reused": self.reused,
            "skipped": self.skipped,
            "rejected": self.rejected,
            "failed": self.failed,
            "dry_run": self.dry_run,
            "error_count": len(self.errors),
            "duration_seconds": duration,
        }


def _get_database_session() -> Session:
    """Create database session for the refresh job."""
    if not os.getenv("DATABASE_URL"):
        raise ValueError("DATABASE_URL environment variable is required")
    return get_session_factory()()


async def run_refresh_sweep(
    db_session: Session,
    engine: Optional[TokenRefreshEngine] = None,
    within_minutes: int = TOKEN_REFRESH_WINDOW_MINUTES,
    dry_run: bool = TOKEN_REFRESH_DRY_RUN,
) -> RefreshSweepStats:
    """
    Refresh every provider token expiring within the window.

    Args:
        db_session: Database session (not tenant-scoped)
        engine: Refresh engine (built on db_session by default)
        within_minutes: Sweep window
        dry_run: If True, only count candidates

    Returns:
        RefreshSweepStats with results
    """
    stats = RefreshSweepStats(dry_run=dry_run)
    engine = engine or TokenRefreshEngine(CredentialStore(db_session))
    threshold = datetime.now(timezone.utc) + timedelta(minutes=within_minutes)

    for provider in CredentialProvider:
        tenant_keys = engine.store.find_expiring(provider, threshold)
        stats.candidates += len(tenant_keys)

        if dry_run:
            logger.info(
                "[DRY RUN] Would refresh %d %s credentials",
                len(tenant_keys),
                provider.value,
            )
            continue

        for tenant_key in tenant_keys:
            try:
                result = await engine.ensure_fresh(tenant_key, provider, force=True)
            except RefreshRejectedError:
                stats.rejected += 1
            except CredentialError as exc:
                stats.failed += 1
                stats.errors.append(f"{provider.value}:{tenant_key}: {exc.code}")
            else:
                if result.outcome == RefreshOutcome.REFRESHED:
                    stats.refreshed += 1
                elif result.outcome == RefreshOutcome.REUSED:
                    stats.reused += 1
                else:
                    stats.skipped += 1

    stats.completed_at = datetime.now(timezone.utc)
    logger.info("Token refresh sweep completed", extra=stats.to_dict())
    return stats


def main():
    """Entry point for the token refresh job."""
    load_dotenv()
    setup_credential_logging()
    logger.info(
        "Token Refresh Job starting",
        extra={"dry_run": TOKEN_REFRESH_DRY_RUN, "window_minutes": TOKEN_REFRESH_WINDOW_MINUTES},
    )

    session = _get_database_session()
    try:
        stats = asyncio.run(run_refresh_sweep(session))
        logger.info("Token Refresh Job stats", extra=stats.to_dict())
    except Exception as exc:
        logger.error(
            "Token Refresh Job failed",
            extra={"error": str(exc)},
            exc_info=True,
        )
        sys.exit(1)
    finally:
        session.close()

    logger.info("Token Refresh Job finished")


if __name__ == "__main__":
    main()
