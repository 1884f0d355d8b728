"""Pydantic schemas for persisted device state."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from onvifcam.utils import utc_now


class DeviceIdentitySchema(BaseModel):
    """Identity as learned from discovery or manual entry."""

    urn: str = Field(..., description="Endpoint reference address (identity key)")
    ip: str
    port: int = Field(80, ge=1, le=65535)
    device_service_address: str = ""
    vendor_name: str = ""
    hardware_model: str = ""
    location: str = ""
    discovered_profiles: list[str] = Field(default_factory=list)
    scopes: list[str] = Field(default_factory=list)
    discovery_method: str = "multicast"


class CredentialsSchema(BaseModel):
    username: str
    password: str = Field("", description="Fernet-encrypted when a key is configured")


class AuthSnapshot(BaseModel):
    """Negotiated scheme and last digest challenge."""

    scheme: str = "none"
    realm: Optional[str] = None
    server_nonce: Optional[str] = None
    qop: Optional[str] = None
    opaque: Optional[str] = None
    algorithm: Optional[str] = None
    nonce_count: int = 0


class ServiceEndpointsSchema(BaseModel):
    media_service_address: Optional[str] = None
    event_service_address: Optional[str] = None
    supports_ws_subscription: bool = False
    supports_pull_point: bool = False
    streaming_transport_flags: dict[str, bool] = Field(default_factory=dict)
    device_info: dict[str, str] = Field(default_factory=dict)
    event_topics: list[str] = Field(default_factory=list)
    vendor_resubscribe_required: bool = False


class ReferenceParameter(BaseModel):
    text: str = ""
    attributes: dict[str, str] = Field(default_factory=dict)


class SubscriptionSnapshot(BaseModel):
    """Subscription live at the time of saving."""

    reference_address: str
    subscription_id: Optional[str] = None
    reference_parameters: dict[str, ReferenceParameter] = Field(default_factory=dict)
    expiry: Optional[datetime] = None
    mode: str = "push"


class DeviceRecord(BaseModel):
    """Everything needed to bring a device back after a restart."""

    identity: DeviceIdentitySchema
    credentials: CredentialsSchema
    label: Optional[str] = None
    auth: AuthSnapshot = Field(default_factory=AuthSnapshot)
    endpoints: Optional[ServiceEndpointsSchema] = None
    subscription: Optional[SubscriptionSnapshot] = None
    saved_at: datetime = Field(default_factory=utc_now)
