"""JSON file persistence of device state.

One document per device, named after a hash of its URN, in the configured
state directory.
"""

import hashlib
import logging
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from onvifcam.schemas import (
    AuthSnapshot,
    CredentialsSchema,
    DeviceIdentitySchema,
    DeviceRecord,
    ReferenceParameter,
    ServiceEndpointsSchema,
    SubscriptionSnapshot,
)
from onvifcam.services.auth import AuthPhase, AuthScheme, DigestChallenge
from onvifcam.services.device import (
    Credentials,
    DeliveryMode,
    DeviceContext,
    DeviceIdentity,
    DiscoveryMethod,
    ServiceEndpoints,
)
from onvifcam.services.encryption import decrypt_password, encrypt_password
from onvifcam.services.events import SubscriptionRecord

logger = logging.getLogger(__name__)


def record_from_device(
    device: DeviceContext,
    subscription: Optional[SubscriptionRecord] = None,
    key: Optional[str] = None,
) -> DeviceRecord:
    ident = device.identity
    auth = device.auth
    challenge = auth.challenge
    record = DeviceRecord(
        identity=DeviceIdentitySchema(
            urn=ident.urn,
            ip=ident.ip,
            port=ident.port,
            device_service_address=ident.device_service_address,
            vendor_name=ident.vendor_name,
            hardware_model=ident.hardware_model,
            location=ident.location,
            discovered_profiles=sorted(ident.discovered_profiles),
            scopes=list(ident.scopes),
            discovery_method=ident.discovery_method.value,
        ),
        credentials=CredentialsSchema(
            username=device.credentials.username,
            password=encrypt_password(device.credentials.password, key),
        ),
        label=device.label,
        auth=AuthSnapshot(
            scheme=auth.scheme.value,
            realm=challenge.realm if challenge else None,
            server_nonce=challenge.nonce if challenge else None,
            qop=challenge.qop if challenge else None,
            opaque=challenge.opaque if challenge else None,
            algorithm=challenge.algorithm if challenge else None,
            nonce_count=auth.nonce_count,
        ),
    )
    if device.endpoints:
        ep = device.endpoints
        record.endpoints = ServiceEndpointsSchema(
            media_service_address=ep.media_service_address,
            event_service_address=ep.event_service_address,
            supports_ws_subscription=ep.supports_ws_subscription,
            supports_pull_point=ep.supports_pull_point,
            streaming_transport_flags=dict(ep.streaming_transport_flags),
            device_info=dict(ep.device_info),
            event_topics=list(ep.event_topics),
            vendor_resubscribe_required=ep.vendor_resubscribe_required,
        )
    if subscription:
        record.subscription = SubscriptionSnapshot(
            reference_address=subscription.reference_address,
            subscription_id=subscription.subscription_id,
            reference_parameters={
                name: ReferenceParameter(text=text, attributes=attrs)
                for name, (text, attrs) in subscription.reference_parameters.items()
            },
            expiry=subscription.expiry,
            mode=subscription.mode.value,
        )
    return record


def device_from_record(record: DeviceRecord, key: Optional[str] = None) -> DeviceContext:
    """Rebuild a device context; the auth state resumes from the saved challenge."""
    data = record.identity
    identity = DeviceIdentity(
        urn=data.urn,
        ip=data.ip,
        port=data.port,
        device_service_address=data.device_service_address,
        vendor_name=data.vendor_name,
        hardware_model=data.hardware_model,
        location=data.location,
        discovered_profiles=set(data.discovered_profiles),
        scopes=list(data.scopes),
        discovery_method=DiscoveryMethod(data.discovery_method),
    )
    credentials = Credentials(
        username=record.credentials.username,
        password=decrypt_password(record.credentials.password, key),
    )
    device = DeviceContext(identity, credentials, label=record.label)

    snapshot = record.auth
    device.auth.scheme = AuthScheme(snapshot.scheme)
    if device.auth.scheme != AuthScheme.NONE:
        device.auth.phase = AuthPhase.CHALLENGED
    if snapshot.realm and snapshot.server_nonce:
        device.auth.challenge = DigestChallenge(
            realm=snapshot.realm,
            nonce=snapshot.server_nonce,
            qop=snapshot.qop,
            opaque=snapshot.opaque,
            algorithm=snapshot.algorithm,
        )
        device.auth.prior_nonce = snapshot.server_nonce
        device.auth.nonce_count = snapshot.nonce_count

    if record.endpoints:
        device.endpoints = ServiceEndpoints(**record.endpoints.model_dump())
    return device


def stale_subscription(record: DeviceRecord) -> Optional[SubscriptionRecord]:
    """Subscription left behind by a previous run, to be unsubscribed."""
    snap = record.subscription
    if snap is None:
        return None
    return SubscriptionRecord(
        reference_address=snap.reference_address,
        subscription_id=snap.subscription_id,
        reference_parameters={
            name: (param.text, dict(param.attributes))
            for name, param in snap.reference_parameters.items()
        },
        expiry=snap.expiry,
        mode=DeliveryMode(snap.mode),
    )


class DeviceStore:
    """Reads and writes DeviceRecord documents.

    Example usage:
        store = DeviceStore(Path("/var/lib/onvifcam"))
        store.save(record_from_device(device))
        for record in store.load_all():
            device = device_from_record(record)
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _path(self, urn: str) -> Path:
        digest = hashlib.sha1(urn.encode("utf-8")).hexdigest()[:16]
        return self.directory / f"device-{digest}.json"

    def save(self, record: DeviceRecord) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(record.identity.urn)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(record.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(path)
        logger.debug(f"Saved device state for {record.identity.urn} to {path}")
        return path

    def load(self, urn: str) -> Optional[DeviceRecord]:
        path = self._path(urn)
        if not path.exists():
            return None
        return self._read(path)

    def load_all(self) -> list[DeviceRecord]:
        if not self.directory.is_dir():
            return []
        records = []
        for path in sorted(self.directory.glob("device-*.json")):
            record = self._read(path)
            if record:
                records.append(record)
        return records

    def delete(self, urn: str) -> bool:
        path = self._path(urn)
        if path.exists():
            path.unlink()
            logger.debug(f"Deleted device state for {urn}")
            return True
        return False

    @staticmethod
    def _read(path: Path) -> Optional[DeviceRecord]:
        try:
            return DeviceRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable device state {path.name}: {e}")
            return None
