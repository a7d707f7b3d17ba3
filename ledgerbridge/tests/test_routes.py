"""
HTTP route tests.

The app runs against the in-memory database; provider token endpoints
are replaced by fake OAuth clients.
"""

import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from ledgerbridge.api.dependencies.request_db import get_connection_service
from ledgerbridge.api.routes.auth import decode_state, encode_state
from ledgerbridge.credentials.refresh import TokenRefreshEngine
from ledgerbridge.integrations.crm.webhooks import compute_webhook_signature, verify_webhook_signature
from ledgerbridge.main import create_app
from ledgerbridge.models.tenant_credential import CredentialProvider
from ledgerbridge.services.connection_service import ConnectionService
from ledgerbridge.tests.factories import FakeOAuthClient, crm_user_handler, seed_tenant

WEBHOOK_SECRET = "pipedrive-client-secret-not-real"


@pytest.fixture
def oauth_clients():
    return {
        CredentialProvider.CRM: FakeOAuthClient(CredentialProvider.CRM, api_domain="https://acme.pipedrive.com"),
        CredentialProvider.ACCOUNTING: FakeOAuthClient(CredentialProvider.ACCOUNTING),
    }


@pytest.fixture
def client(db_session, store, lock_registry, oauth_clients, monkeypatch):
    monkeypatch.setenv("PIPEDRIVE_CLIENT_SECRET", WEBHOOK_SECRET)
    engine = TokenRefreshEngine(store, lock_registry=lock_registry, policies={})

    def override_connection_service():
        return ConnectionService(
            db_session,
            engine=engine,
            oauth_clients=oauth_clients,
            transport=httpx.MockTransport(crm_user_handler),
        )

    app = create_app(create_tables=False)
    app.dependency_overrides[get_connection_service] = override_connection_service
    with TestClient(app) as test_client:
        yield test_client


# ============================================================================
# TEST SUITE: CONNECTION STATUS AND DISCONNECT
# ============================================================================

class TestConnectionStatusRoute:

    def test_connected(self, client, store):
        seed_tenant(store, "acme", crm_api_domain="acme.pipedrive.com", crm=True, accounting=True)

        response = client.get("/api/connection-status", params={"identifier": "https://acme.pipedrive.com"})

        assert response.status_code == 200
        body = response.json()
        assert body["tenant_key"] == "acme"
        assert body["connected"] is True
        assert set(body["providers"]) == {"crm", "accounting"}
        assert "acct-access-acme" not in response.text

    def test_not_connected_error_shape(self, client):
        response = client.get("/api/connection-status", params={"identifier": "nobody"})

        assert response.status_code == 404
        error = response.json()["error"]
        assert error["code"] == "NOT_CONNECTED"
        assert "Authorize" in error["message"]
        assert response.headers["X-Correlation-ID"]

    def test_identifier_required(self, client):
        assert client.get("/api/connection-status").status_code == 422


class TestDisconnectRoute:

    def test_matching_domain_disconnects(self, client, store):
        seed_tenant(store, "acme", crm_api_domain="acme.pipedrive.com", crm=True, accounting=True)

        response = client.post(
            "/api/disconnect/accounting",
            params={"identifier": "acme"},
            headers={"X-CRM-Api-Domain": "https://acme.pipedrive.com"},
        )

        assert response.status_code == 200
        assert response.json() == {"status": "disconnected", "provider": "accounting", "tenant_key": "acme"}
        credentials = store.get("acme")
        assert credentials.accounting.access_token is None
        assert credentials.crm.access_token == "crm-access-acme"

    def test_domain_mismatch_forbidden(self, client, store):
        seed_tenant(store, "acme", crm_api_domain="acme.pipedrive.com", crm=True, accounting=True)

        response = client.post(
            "/api/disconnect/accounting",
            params={"identifier": "acme"},
            headers={"X-CRM-Api-Domain": "globex.pipedrive.com"},
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "PERMISSION_DENIED"
        assert store.get("acme").accounting.access_token == "acct-access-acme"

    def test_missing_domain_header_forbidden(self, client, store):
        seed_tenant(store, "acme", crm_api_domain="acme.pipedrive.com", crm=True, accounting=True)

        response = client.post("/api/disconnect/crm", params={"identifier": "acme"})

        assert response.status_code == 403

    def test_unknown_provider(self, client):
        response = client.post(
            "/api/disconnect/shipping",
            params={"identifier": "acme"},
            headers={"X-CRM-Api-Domain": "acme.pipedrive.com"},
        )

        assert response.status_code == 422


# ============================================================================
# TEST SUITE: OAUTH ROUTES
# ============================================================================

class TestOAuthState:

    def test_roundtrip(self):
        assert decode_state(encode_state("acme.pipedrive.com", extension=True)) == ("acme.pipedrive.com", True)

    def test_bare_identifier_state(self):
        assert decode_state("acme") == ("acme", False)

    def test_empty_state(self):
        assert decode_state(None) == (None, False)


class TestAuthorizationRoutes:

    def test_accounting_redirect_carries_identifier(self, client):
        response = client.get(
            "/auth/accounting",
            params={"identifier": "acme", "extension": "true"},
            follow_redirects=False,
        )

        assert response.status_code in (302, 307)
        state = parse_qs(urlparse(response.headers["location"]).query)["state"][0]
        assert decode_state(state) == ("acme", True)

    def test_crm_redirect(self, client):
        response = client.get("/auth/crm", follow_redirects=False)

        assert response.status_code in (302, 307)
        assert response.headers["location"].startswith("https://provider.test/authorize")

    def test_crm_callback_creates_tenant(self, client, store):
        response = client.get("/auth/crm/callback", params={"code": "code-1"})

        assert response.status_code == 200
        assert response.json()["tenant_key"] == "acme"
        assert store.get("acme").alternate_numeric_id == "12345"

    def test_accounting_callback_stores_tokens(self, client, store, oauth_clients):
        seed_tenant(store, "acme", crm_api_domain="acme.pipedrive.com", crm=True)

        response = client.get(
            "/auth/accounting/callback",
            params={"code": "code-9", "state": encode_state("acme.pipedrive.com"), "realmId": "9130350000000000"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "connected"
        assert body["realm_id"] == "9130350000000000"
        assert oauth_clients[CredentialProvider.ACCOUNTING].codes == [("code-9", "9130350000000000")]
        assert store.get("acme").has_provider(CredentialProvider.ACCOUNTING)

    def test_accounting_callback_without_realm(self, client):
        response = client.get(
            "/auth/accounting/callback",
            params={"code": "code-9", "state": encode_state("acme")},
        )

        assert response.status_code == 502
        assert response.json()["error"]["code"] == "AUTHORIZATION_FAILED"

    def test_provider_error_is_reported(self, client, store):
        response = client.get("/auth/accounting/callback", params={"error": "access_denied"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"
        assert store.list_keys() == []


# ============================================================================
# TEST SUITE: DEAUTHORIZATION WEBHOOK
# ============================================================================

class TestWebhookSignature:

    def test_valid_signature(self):
        payload = b'{"user_id": 1}'
        signature = compute_webhook_signature(payload, WEBHOOK_SECRET)

        assert verify_webhook_signature(payload, signature, WEBHOOK_SECRET)
        assert verify_webhook_signature(payload, signature.upper(), WEBHOOK_SECRET)

    def test_invalid_or_missing_signature(self):
        payload = b'{"user_id": 1}'

        assert not verify_webhook_signature(payload, "0" * 64, WEBHOOK_SECRET)
        assert not verify_webhook_signature(payload, None, WEBHOOK_SECRET)

    def test_missing_secret(self, monkeypatch):
        monkeypatch.delenv("PIPEDRIVE_CLIENT_SECRET", raising=False)
        payload = b'{"user_id": 1}'

        assert not verify_webhook_signature(payload, compute_webhook_signature(payload, "x"))


class TestDeauthorizationWebhook:

    def _post(self, client, payload, signature=None):
        body = json.dumps(payload).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if signature is not False:
            headers["X-Pipedrive-Signature"] = signature or compute_webhook_signature(body, WEBHOOK_SECRET)
        return client.post("/webhooks/crm/deauthorize", content=body, headers=headers)

    def test_valid_webhook_deletes_tenant(self, client, store):
        seed_tenant(store, "acme", alternate_numeric_id="12345", crm=True, accounting=True)

        response = self._post(client, {"user_id": 12345, "company_id": 999})

        assert response.status_code == 200
        assert response.json() == {"status": "processed", "deleted": True}
        assert store.list_keys() == []

    def test_api_domain_payload(self, client, store):
        seed_tenant(store, "acme", crm_api_domain="acme.pipedrive.com", crm=True)

        response = self._post(client, {"api_domain": "https://acme.pipedrive.com"})

        assert response.json()["deleted"] is True

    def test_unknown_tenant(self, client, store):
        seed_tenant(store, "acme", crm=True)

        response = self._post(client, {"user_id": 999})

        assert response.json() == {"status": "processed", "deleted": False}
        assert store.list_keys() == ["acme"]

    def test_invalid_signature_rejected(self, client, store):
        seed_tenant(store, "acme", alternate_numeric_id="12345", crm=True)

        response = self._post(client, {"user_id": 12345}, signature="f" * 64)

        assert response.status_code == 401
        assert store.list_keys() == ["acme"]

    def test_missing_signature_rejected(self, client, store):
        seed_tenant(store, "acme", alternate_numeric_id="12345", crm=True)

        response = self._post(client, {"user_id": 12345}, signature=False)

        assert response.status_code == 401
        assert store.list_keys() == ["acme"]

    def test_payload_without_identifier(self, client):
        response = self._post(client, {"company_id": 999})

        assert response.status_code == 400


# ============================================================================
# TEST SUITE: SHIPPING CREDENTIALS
# ============================================================================

class TestShippingRoutes:
    """Shipping credentials are managed by connected tenants and never echoed."""

    HEADERS = {"X-CRM-Api-Domain": "https://acme.pipedrive.com"}

    def test_save_and_status(self, client, store):
        seed_tenant(store, "acme", crm_api_domain="acme.pipedrive.com", crm=True)

        response = client.put(
            "/api/shipping/credentials",
            json={"api_key": "ship-key-not-real", "api_secret": "ship-secret-not-real", "auto_create_orders": True},
            headers=self.HEADERS,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["connected"] is True
        assert body["auto_create_orders"] is True
        assert "ship-key-not-real" not in response.text
        assert store.get_shipping_credentials().api_secret == "ship-secret-not-real"

        status = client.get("/api/shipping/connection", headers=self.HEADERS).json()
        assert status["connected"] is True

    def test_delete(self, client, store):
        seed_tenant(store, "acme", crm_api_domain="acme.pipedrive.com", crm=True)
        store.set_shipping_credentials("ship-key-not-real", "ship-secret-not-real")

        response = client.delete("/api/shipping/credentials", headers=self.HEADERS)

        assert response.status_code == 200
        assert response.json()["connected"] is False
        assert store.get_shipping_credentials() is None

    @pytest.mark.parametrize("headers", [{}, {"X-CRM-Api-Domain": "globex.pipedrive.com"}, {"X-CRM-Api-Domain": "acme"}])
    def test_unknown_caller_forbidden(self, client, store, headers):
        seed_tenant(store, "acmecorp", crm_api_domain="acmecorp.pipedrive.com", crm=True)

        response = client.put(
            "/api/shipping/credentials",
            json={"api_key": "ship-key-not-real", "api_secret": "ship-secret-not-real"},
            headers=headers,
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "PERMISSION_DENIED"
        assert store.get_shipping_credentials() is None

    def test_blank_key_rejected(self, client, store):
        seed_tenant(store, "acme", crm_api_domain="acme.pipedrive.com", crm=True)

        response = client.put(
            "/api/shipping/credentials",
            json={"api_key": "", "api_secret": "ship-secret-not-real"},
            headers=self.HEADERS,
        )

        assert response.status_code == 422


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
