"""
QuickBooks Online REST client.

Every request goes through ApiCallWrapper. The company (realm) id comes
from the credential snapshot, and the base URL from QB_ENVIRONMENT.
Query results are unwrapped from QueryResponse so callers get plain
lists of entity dicts.
"""

import logging
from typing import Optional

import httpx

from ledgerbridge.config.settings import get_accounting_api_base_url, get_http_timeout
from ledgerbridge.credentials.client import ApiCallWrapper
from ledgerbridge.credentials.errors import CredentialNotFoundError
from ledgerbridge.credentials.store import ProviderCredentials
from ledgerbridge.models.tenant_credential import CredentialProvider
from ledgerbridge.platform.errors import UpstreamApiError

logger = logging.getLogger(__name__)

MINOR_VERSION = "65"


class AccountingApiError(UpstreamApiError):
    """QuickBooks answered with a non-auth error. fault is the Fault object from the body, if any."""

    error_code = "ACCOUNTING_API_ERROR"

    def __init__(self, message: str, provider_status: Optional[int] = None, fault: Optional[dict] = None):
        super().__init__(message, provider_status=provider_status)
        self.fault = fault or {}


def escape_query_value(value: str) -> str:
    """Escape a string literal for a QuickBooks query."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


class AccountingApiClient:
    """QuickBooks client bound to one tenant."""

    def __init__(
        self,
        api: ApiCallWrapper,
        tenant_key: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api = api
        self.tenant_key = tenant_key
        self.base_url = (base_url or get_accounting_api_base_url()).rstrip("/")
        self.timeout = timeout if timeout is not None else get_http_timeout()
        self._transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
    ) -> dict:
        async def send(credentials: ProviderCredentials) -> httpx.Response:
            if not credentials.realm_id:
                raise CredentialNotFoundError(self.tenant_key, CredentialProvider.ACCOUNTING)
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                return await client.request(
                    method,
                    f"{self.base_url}/v3/company/{credentials.realm_id}/{path}",
                    params={"minorversion": MINOR_VERSION, **(params or {})},
                    json=json,
                    headers={
                        "Authorization": f"Bearer {credentials.access_token}",
                        "Accept": "application/json",
                    },
                )

        response = await self.api.call(self.tenant_key, CredentialProvider.ACCOUNTING, send)
        if response.status_code >= 400:
            fault = {}
            if "json" in response.headers.get("content-type", ""):
                fault = response.json().get("Fault", {})
            logger.warning(
                "Accounting request failed",
                extra={"tenant_key": self.tenant_key, "path": path, "status_code": response.status_code}
            )
            raise AccountingApiError(
                f"Accounting request {path} failed with HTTP {response.status_code}",
                provider_status=response.status_code,
                fault=fault,
            )
        return response.json()

    async def query(self, entity: str, statement: str) -> list[dict]:
        """Run a query and return the matching entities of type entity."""
        payload = await self._request("GET", "query", params={"query": statement})
        return payload.get("QueryResponse", {}).get(entity, [])

    async def find_customer_by_display_name(self, display_name: str) -> Optional[dict]:
        customers = await self.query(
            "Customer",
            f"SELECT * FROM Customer WHERE DisplayName = '{escape_query_value(display_name)}'",
        )
        return customers[0] if customers else None

    async def create_customer(self, customer: dict) -> dict:
        payload = await self._request("POST", "customer", json=customer)
        return payload.get("Customer", {})

    async def update_customer(self, customer_id: str, sync_token: str, changes: dict) -> dict:
        """Sparse update: only the fields in changes are touched."""
        body = {"Id": customer_id, "SyncToken": sync_token, "sparse": True, **changes}
        payload = await self._request("POST", "customer", json=body)
        return payload.get("Customer", {})

