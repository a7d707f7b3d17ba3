"""Request and response models for the connection and sync endpoints."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class ProviderStatusResponse(BaseModel):
    provider: str
    connected: bool
    reconnect_required: bool
    token_state: Optional[str] = None


class ConnectionStatusResponse(BaseModel):
    tenant_key: str
    connected: bool
    providers: dict[str, ProviderStatusResponse]


class AuthorizationCompletedResponse(BaseModel):
    status: str = "connected"
    provider: str
    tenant_key: str
    realm_id: Optional[str] = None
    extension: bool = False


class DisconnectResponse(BaseModel):
    status: str = "disconnected"
    provider: str
    tenant_key: str


class SyncContactRequest(BaseModel):
    identifier: str = Field(..., min_length=1)
    person_id: int = Field(..., gt=0)


class SyncContactResponse(BaseModel):
    tenant_key: str
    person_id: int
    customer_id: Optional[str] = None
    display_name: str
    action: str


class ShippingCredentialsRequest(BaseModel):
    api_key: str = Field(..., min_length=1)
    api_secret: str = Field(..., min_length=1)
    auto_create_orders: bool = False


class ShippingConnectionResponse(BaseModel):
    connected: bool
    auto_create_orders: bool = False
    connected_at: Optional[datetime] = None
