"""
OAuth token endpoint client tests.

Provider responses come from httpx.MockTransport; nothing leaves the process.
"""

import base64
import logging
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from ledgerbridge.config.settings import ProviderConfig
from ledgerbridge.credentials.errors import (
    AuthorizationExchangeError,
    ProviderNotConfiguredError,
    RefreshRejectedError,
    RefreshTransientError,
)
from ledgerbridge.credentials.providers import (
    AccountingOAuthClient,
    CrmOAuthClient,
    get_oauth_client,
    is_revocation_response,
)
from ledgerbridge.models.tenant_credential import CredentialProvider
from ledgerbridge.tests.factories import make_grant


def _config(provider):
    return ProviderConfig(
        provider=provider,
        client_id="client-id-not-real",
        client_secret="client-secret-not-real",
        redirect_uri="http://localhost:8000/callback",
    )


def _client(cls, handler):
    return cls(_config(cls.provider), timeout=5, transport=httpx.MockTransport(handler))


def _form(request):
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


# ============================================================================
# TEST SUITE: REVOCATION CLASSIFICATION
# ============================================================================

class TestIsRevocationResponse:

    @pytest.mark.parametrize("status_code,body", [
        (400, '{"error": "invalid_grant"}'),
        (401, '{"error": "invalid_token"}'),
        (400, "Refresh token has been REVOKED"),
        (400, '{"error_description": "Token expired"}'),
        (400, "Invalid refresh token"),
    ])
    def test_revoked(self, status_code, body):
        assert is_revocation_response(status_code, body)

    @pytest.mark.parametrize("status_code,body", [
        (500, '{"error": "invalid_grant"}'),
        (503, "service unavailable"),
        (400, '{"error": "invalid_request"}'),
        (429, "rate limited"),
        (400, ""),
    ])
    def test_not_revoked(self, status_code, body):
        assert not is_revocation_response(status_code, body)


# ============================================================================
# TEST SUITE: REFRESH GRANT
# ============================================================================

class TestRefresh:
    """Test refresh() against mocked token endpoints."""

    @pytest.mark.asyncio
    async def test_accounting_refresh_success(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={
                "access_token": "new-access-not-real",
                "refresh_token": "new-refresh-not-real",
                "expires_in": 3600,
                "x_refresh_token_expires_in": 8726400,
            })

        grant = await _client(AccountingOAuthClient, handler).refresh("old-refresh-not-real")

        assert grant.access_token == "new-access-not-real"
        assert grant.refresh_token == "new-refresh-not-real"
        assert grant.expires_in == 3600
        assert grant.expires_at is not None

        request = seen[0]
        assert str(request.url) == AccountingOAuthClient.token_url
        assert _form(request) == {"grant_type": "refresh_token", "refresh_token": "old-refresh-not-real"}
        expected = base64.b64encode(b"client-id-not-real:client-secret-not-real").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"

    @pytest.mark.asyncio
    async def test_crm_refresh_reads_api_domain(self):
        def handler(request):
            return httpx.Response(200, json={
                "access_token": "new-access-not-real",
                "refresh_token": "new-refresh-not-real",
                "expires_in": 3599,
                "api_domain": "https://acme.pipedrive.com",
            })

        grant = await _client(CrmOAuthClient, handler).refresh("old-refresh-not-real")

        assert grant.api_domain == "https://acme.pipedrive.com"
        assert grant.expires_in == 3599

    @pytest.mark.asyncio
    async def test_invalid_grant_is_rejected(self):
        def handler(request):
            return httpx.Response(400, json={"error": "invalid_grant"})

        with pytest.raises(RefreshRejectedError) as exc_info:
            await _client(AccountingOAuthClient, handler).refresh("dead-refresh-not-real")

        assert exc_info.value.reason == "HTTP 400"

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        def handler(request):
            return httpx.Response(502, text="bad gateway")

        with pytest.raises(RefreshTransientError):
            await _client(AccountingOAuthClient, handler).refresh("old-refresh-not-real")

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(RefreshTransientError):
            await _client(CrmOAuthClient, handler).refresh("old-refresh-not-real")

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(RefreshTransientError):
            await _client(CrmOAuthClient, handler).refresh("old-refresh-not-real")

    @pytest.mark.asyncio
    async def test_unreadable_body_is_transient(self):
        def handler(request):
            return httpx.Response(200, text="<html>oops</html>")

        with pytest.raises(RefreshTransientError):
            await _client(AccountingOAuthClient, handler).refresh("old-refresh-not-real")

    @pytest.mark.asyncio
    async def test_missing_access_token_is_transient(self):
        def handler(request):
            return httpx.Response(200, json={"token_type": "bearer"})

        with pytest.raises(RefreshTransientError):
            await _client(AccountingOAuthClient, handler).refresh("old-refresh-not-real")

    @pytest.mark.asyncio
    async def test_error_body_is_redacted_in_logs(self, caplog):
        def handler(request):
            return httpx.Response(400, text="invalid_grant for refresh_token=AB11secretsecretsecretsecret")

        with caplog.at_level(logging.WARNING):
            with pytest.raises(RefreshRejectedError):
                await _client(AccountingOAuthClient, handler).refresh("old-refresh-not-real")

        bodies = [getattr(r, "body", "") for r in caplog.records]
        assert any("[REDACTED]" in body for body in bodies)
        assert not any("AB11secret" in body for body in bodies)


# ============================================================================
# TEST SUITE: AUTHORIZATION CODE GRANT
# ============================================================================

class TestExchangeCode:
    """Test exchange_code()."""

    @pytest.mark.asyncio
    async def test_accounting_exchange_carries_realm(self):
        seen = []

        def handler(request):
            seen.append(_form(request))
            return httpx.Response(200, json={
                "access_token": "access-not-real",
                "refresh_token": "refresh-not-real",
                "expires_in": 3600,
            })

        grant = await _client(AccountingOAuthClient, handler).exchange_code("auth-code", realm_id="9130350000000000")

        assert grant.realm_id == "9130350000000000"
        assert seen[0] == {
            "grant_type": "authorization_code",
            "code": "auth-code",
            "redirect_uri": "http://localhost:8000/callback",
        }

    @pytest.mark.asyncio
    async def test_failed_exchange_raises_authorization_error(self):
        def handler(request):
            return httpx.Response(400, json={"error": "invalid_grant"})

        with pytest.raises(AuthorizationExchangeError) as exc_info:
            await _client(CrmOAuthClient, handler).exchange_code("used-code")

        assert exc_info.value.code == "AUTHORIZATION_FAILED"

    @pytest.mark.asyncio
    async def test_empty_code_raises_without_request(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={})

        with pytest.raises(AuthorizationExchangeError):
            await _client(CrmOAuthClient, handler).exchange_code("")

        assert seen == []


class TestAuthorizationUrl:

    def test_accounting_url_has_scope_and_state(self):
        client = AccountingOAuthClient(_config(CredentialProvider.ACCOUNTING))

        url = urlparse(client.build_authorization_url("state-123"))
        params = {k: v[0] for k, v in parse_qs(url.query).items()}

        assert url.netloc == "appcenter.intuit.com"
        assert params["client_id"] == "client-id-not-real"
        assert params["scope"] == "com.intuit.quickbooks.accounting"
        assert params["state"] == "state-123"
        assert params["response_type"] == "code"
        assert "client-secret-not-real" not in url.geturl()

    def test_crm_url_has_no_scope(self):
        client = CrmOAuthClient(_config(CredentialProvider.CRM))

        url = urlparse(client.build_authorization_url("abc"))

        assert url.netloc == "oauth.pipedrive.com"
        assert "scope" not in parse_qs(url.query)


class TestGetOAuthClient:

    def test_missing_configuration_raises(self, monkeypatch):
        monkeypatch.delenv("QB_CLIENT_ID", raising=False)
        monkeypatch.delenv("QB_CLIENT_SECRET", raising=False)

        with pytest.raises(ProviderNotConfiguredError) as exc_info:
            get_oauth_client(CredentialProvider.ACCOUNTING)

        assert exc_info.value.status_code == 503

    def test_builds_from_environment(self, monkeypatch):
        monkeypatch.setenv("PIPEDRIVE_CLIENT_ID", "pd-id")
        monkeypatch.setenv("PIPEDRIVE_CLIENT_SECRET", "pd-secret")
        monkeypatch.setenv("APP_URL", "https://bridge.example.com/")

        client = get_oauth_client(CredentialProvider.CRM)

        assert isinstance(client, CrmOAuthClient)
        assert client.config.redirect_uri == "https://bridge.example.com/auth/crm/callback"
        assert "pd-secret" not in repr(client.config)


def test_token_grant_repr_hides_tokens():
    grant = make_grant()

    assert "new-access-token-not-real" not in repr(grant)
    assert "new-refresh-token-not-real" not in repr(grant)
