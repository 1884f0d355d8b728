"""Pydantic schemas."""

from onvifcam.schemas.device import (
    AuthSnapshot,
    CredentialsSchema,
    DeviceIdentitySchema,
    DeviceRecord,
    ReferenceParameter,
    ServiceEndpointsSchema,
    SubscriptionSnapshot,
)

__all__ = [
    "AuthSnapshot",
    "CredentialsSchema",
    "DeviceIdentitySchema",
    "DeviceRecord",
    "ReferenceParameter",
    "ServiceEndpointsSchema",
    "SubscriptionSnapshot",
]
