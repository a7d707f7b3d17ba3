"""
Worker tests: scheduled refresh sweep and legacy token encryption.
"""

import pytest

from ledgerbridge.config.settings import RefreshPolicy
from ledgerbridge.credentials.encryption import EncryptionKeyError, decrypt, is_encrypted
from ledgerbridge.credentials.errors import RefreshRejectedError, RefreshTransientError
from ledgerbridge.credentials.refresh import TokenRefreshEngine
from ledgerbridge.database.session import get_database_url
from ledgerbridge.models.tenant_credential import (
    ConnectionStatus,
    CredentialProvider,
    ShippingCredential,
    TenantCredential,
)
from ledgerbridge.tests.factories import make_grant, seed_tenant
from ledgerbridge.workers.encrypt_legacy_tokens_job import run_migration
from ledgerbridge.workers.token_refresh_job import run_refresh_sweep


# ============================================================================
# TEST SUITE: REFRESH SWEEP
# ============================================================================

class TestRefreshSweep:
    """Test run_refresh_sweep()."""

    def _engine(self, store, lock_registry, refreshed):
        async def refresh(provider, refresh_token):
            refreshed.append((provider, refresh_token))
            if refresh_token == "acct-refresh-dead":
                raise RefreshRejectedError(provider, reason="HTTP 400")
            if refresh_token == "acct-refresh-flaky":
                raise RefreshTransientError("timeout", provider=provider)
            return make_grant()

        return TokenRefreshEngine(
            store,
            refresh_callbacks={provider: refresh for provider in CredentialProvider},
            lock_registry=lock_registry,
            policies={provider: RefreshPolicy() for provider in CredentialProvider},
        )

    @pytest.mark.asyncio
    async def test_refreshes_expiring_tokens(self, db_session, store, lock_registry):
        seed_tenant(store, "soon", crm=True, accounting=True, expires_in_minutes=5)
        seed_tenant(store, "later", accounting=True, expires_in_minutes=600)
        refreshed = []

        stats = await run_refresh_sweep(
            db_session,
            engine=self._engine(store, lock_registry, refreshed),
            within_minutes=30,
            dry_run=False,
        )

        assert stats.candidates == 2
        assert stats.refreshed == 2
        assert stats.failed == 0
        assert sorted(token for _, token in refreshed) == ["acct-refresh-soon", "crm-refresh-soon"]
        assert store.get("later").accounting.access_token == "acct-access-later"
        assert store.get("soon").accounting.access_token == "new-access-token-not-real"

    @pytest.mark.asyncio
    async def test_rejected_and_failed_refreshes_are_counted(self, db_session, store, lock_registry):
        seed_tenant(store, "dead", accounting=True, expires_in_minutes=5)
        seed_tenant(store, "flaky", accounting=True, expires_in_minutes=5)
        seed_tenant(store, "ok", accounting=True, expires_in_minutes=5)
        refreshed = []

        stats = await run_refresh_sweep(
            db_session,
            engine=self._engine(store, lock_registry, refreshed),
            within_minutes=30,
            dry_run=False,
        )

        assert stats.candidates == 3
        assert stats.refreshed == 1
        assert stats.rejected == 1
        assert stats.failed == 1
        assert stats.errors == ["accounting:flaky: REFRESH_TEMPORARILY_FAILED"]
        assert store.get("dead").accounting.status == ConnectionStatus.REAUTHORIZATION_REQUIRED
        assert store.get("flaky").accounting.refresh_token == "acct-refresh-flaky"

        summary = stats.to_dict()
        assert summary["error_count"] == 1
        assert summary["duration_seconds"] is not None

    @pytest.mark.asyncio
    async def test_rejected_tenants_drop_out_of_later_sweeps(self, db_session, store, lock_registry):
        seed_tenant(store, "dead", accounting=True, expires_in_minutes=5)
        refreshed = []
        engine = self._engine(store, lock_registry, refreshed)

        await run_refresh_sweep(db_session, engine=engine, within_minutes=30, dry_run=False)
        stats = await run_refresh_sweep(db_session, engine=engine, within_minutes=30, dry_run=False)

        assert stats.candidates == 0
        assert len(refreshed) == 1

    @pytest.mark.asyncio
    async def test_dry_run_only_counts(self, db_session, store, lock_registry):
        seed_tenant(store, "soon", accounting=True, expires_in_minutes=5)
        refreshed = []

        stats = await run_refresh_sweep(
            db_session,
            engine=self._engine(store, lock_registry, refreshed),
            within_minutes=30,
            dry_run=True,
        )

        assert stats.candidates == 1
        assert stats.refreshed == 0
        assert refreshed == []

    @pytest.mark.asyncio
    async def test_unconfigured_provider_counts_as_failure(self, db_session, store, lock_registry, monkeypatch):
        monkeypatch.delenv("QB_CLIENT_ID", raising=False)
        monkeypatch.delenv("QB_CLIENT_SECRET", raising=False)
        seed_tenant(store, "soon", accounting=True, expires_in_minutes=5)
        engine = TokenRefreshEngine(store, lock_registry=lock_registry, policies={})

        stats = await run_refresh_sweep(db_session, engine=engine, within_minutes=30, dry_run=False)

        assert stats.failed == 1
        assert stats.errors == ["accounting:soon: PROVIDER_NOT_CONFIGURED"]


# ============================================================================
# TEST SUITE: LEGACY TOKEN ENCRYPTION
# ============================================================================

class TestLegacyTokenMigration:
    """Test run_migration()."""

    def _seed_plaintext(self, db_session):
        db_session.add(TenantCredential(
            tenant_key="legacy",
            crm_access_token_encrypted="plain-crm-access",
            accounting_refresh_token_encrypted="plain-acct-refresh",
        ))
        db_session.add(ShippingCredential(
            api_key_encrypted="plain-ship-key",
            api_secret_encrypted="plain-ship-secret",
        ))
        db_session.commit()

    def test_encrypts_plaintext_values(self, db_session, store):
        self._seed_plaintext(db_session)
        seed_tenant(store, "modern", crm=True)

        stats = run_migration(db_session, dry_run=False)

        assert stats.records_scanned == 3
        assert stats.values_encrypted == 4
        assert stats.values_already_encrypted == 2

        row = db_session.query(TenantCredential).filter(TenantCredential.tenant_key == "legacy").one()
        assert is_encrypted(row.crm_access_token_encrypted)
        assert store.get("legacy").crm.access_token == "plain-crm-access"
        assert store.get("legacy").accounting.refresh_token == "plain-acct-refresh"
        assert store.get_shipping_credentials().api_secret == "plain-ship-secret"

    def test_dry_run_changes_nothing(self, db_session):
        self._seed_plaintext(db_session)

        stats = run_migration(db_session, dry_run=True)

        assert stats.values_encrypted == 4
        row = db_session.query(TenantCredential).one()
        assert row.crm_access_token_encrypted == "plain-crm-access"

    def test_rerun_is_idempotent(self, db_session):
        self._seed_plaintext(db_session)

        run_migration(db_session, dry_run=False)
        row = db_session.query(TenantCredential).one()
        first = row.crm_access_token_encrypted

        stats = run_migration(db_session, dry_run=False)

        assert stats.values_encrypted == 0
        assert stats.values_already_encrypted == 4
        assert db_session.query(TenantCredential).one().crm_access_token_encrypted == first
        assert decrypt(first) == "plain-crm-access"

    def test_requires_encryption_key(self, db_session, monkeypatch):
        monkeypatch.delenv("ENCRYPTION_KEY", raising=False)
        monkeypatch.delenv("SESSION_SECRET", raising=False)

        with pytest.raises(EncryptionKeyError):
            run_migration(db_session, dry_run=False)


@pytest.mark.parametrize("url,expected", [
    ("postgres://u:p@db/app", "postgresql://u:p@db/app"),
    ("postgresql://u:p@db/app", "postgresql://u:p@db/app"),
    ("sqlite:///./x.db", "sqlite:///./x.db"),
])
def test_database_url_rewrite(monkeypatch, url, expected):
    monkeypatch.setenv("DATABASE_URL", url)
    assert get_database_url() == expected
