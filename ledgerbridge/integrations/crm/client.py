"""
Pipedrive REST client.

Every request goes through ApiCallWrapper, so tokens are refreshed before
they expire and once more after a 401. Responses are reduced to small
dataclasses; callers never see Pipedrive's envelope ({"success", "data"}).
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from ledgerbridge.config.settings import get_http_timeout
from ledgerbridge.credentials.client import ApiCallWrapper
from ledgerbridge.credentials.identifiers import CRM_DOMAIN_SUFFIX
from ledgerbridge.credentials.store import ProviderCredentials
from ledgerbridge.models.tenant_credential import CredentialProvider
from ledgerbridge.platform.errors import UpstreamApiError

logger = logging.getLogger(__name__)

API_VERSION_PATH = "/api/v1"


class CrmApiError(UpstreamApiError):
    """Pipedrive answered with a non-auth error."""

    error_code = "CRM_API_ERROR"


@dataclass(frozen=True)
class CrmPerson:
    id: int
    name: str
    emails: list[str] = field(default_factory=list)
    phones: list[str] = field(default_factory=list)
    organization_name: Optional[str] = None

    @property
    def primary_email(self) -> Optional[str]:
        return self.emails[0] if self.emails else None

    @property
    def primary_phone(self) -> Optional[str]:
        return self.phones[0] if self.phones else None


@dataclass(frozen=True)
class CrmUser:
    id: int
    company_id: Optional[int] = None
    company_domain: Optional[str] = None
    name: Optional[str] = None


def _contact_values(entries: Any) -> list[str]:
    """Pipedrive returns email/phone as [{"value": ..., "primary": bool}, ...]."""
    if not entries:
        return []
    if isinstance(entries, str):
        return [entries]
    primary = [e.get("value") for e in entries if isinstance(e, dict) and e.get("primary") and e.get("value")]
    others = [e.get("value") for e in entries if isinstance(e, dict) and not e.get("primary") and e.get("value")]
    return primary + others


def crm_base_url(credentials: ProviderCredentials) -> str:
    domain = credentials.api_domain or f"{credentials.tenant_key}{CRM_DOMAIN_SUFFIX}"
    if not domain.startswith(("http://", "https://")):
        domain = f"https://{domain}"
    return f"{domain.rstrip('/')}{API_VERSION_PATH}"


class CrmApiClient:
    """Pipedrive client bound to one tenant."""

    def __init__(
        self,
        api: ApiCallWrapper,
        tenant_key: str,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api = api
        self.tenant_key = tenant_key
        self.timeout = timeout if timeout is not None else get_http_timeout()
        self._transport = transport

    async def _get(self, path: str) -> dict:
        async def send(credentials: ProviderCredentials) -> httpx.Response:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                return await client.get(
                    f"{crm_base_url(credentials)}{path}",
                    headers={
                        "Authorization": f"Bearer {credentials.access_token}",
                        "Accept": "application/json",
                    },
                )

        response = await self.api.call(self.tenant_key, CredentialProvider.CRM, send)
        if response.status_code >= 400:
            logger.warning(
                "CRM request failed",
                extra={"tenant_key": self.tenant_key, "path": path, "status_code": response.status_code}
            )
            raise CrmApiError(f"CRM request {path} failed with HTTP {response.status_code}", response.status_code)
        payload = response.json()
        return payload.get("data") or {}

    async def get_person(self, person_id: int) -> CrmPerson:
        data = await self._get(f"/persons/{person_id}")
        if not data:
            raise CrmApiError(f"Person {person_id} not found", 404)
        org = data.get("org_id")
        return CrmPerson(
            id=data["id"],
            name=(data.get("name") or "").strip(),
            emails=_contact_values(data.get("email")),
            phones=_contact_values(data.get("phone")),
            organization_name=org.get("name") if isinstance(org, dict) else None,
        )

    async def get_current_user(self) -> CrmUser:
        data = await self._get("/users/me")
        return CrmUser(
            id=data["id"],
            company_id=data.get("company_id"),
            company_domain=data.get("company_domain"),
            name=data.get("name"),
        )
