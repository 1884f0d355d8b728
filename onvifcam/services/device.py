"""Per-device context shared by discovery, dispatch and eventing.

A DeviceContext is the single record each component receives for a device.
It is owned by the DeviceManager and passed by reference; components never
look up device state through globals.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional
from urllib.parse import urlparse

from onvifcam.services.auth import AuthState

logger = logging.getLogger(__name__)


class DiscoveryMethod(str, Enum):
    """How a device became known."""

    MULTICAST = "multicast"
    UNICAST = "unicast-direct"
    MANUAL = "manual"


class DeviceStatus(str, Enum):
    """Coarse status strings handed to the hosting platform."""

    INITIALIZING = "Initializing"
    RESPONDING = "Responding"
    NOT_RESPONDING = "Not responding"
    SUBSCRIBED = "Subscribed"
    UNSUBSCRIBED = "Unsubscribed"
    AUTH_FAILED = "Authentication failed"


class DeliveryMode(str, Enum):
    """Event delivery style for a subscription."""

    PUSH = "push"
    PULL = "pull"


@dataclass
class Credentials:
    username: str
    password: str


@dataclass
class DeviceIdentity:
    """Identity learned from discovery or manual entry.

    Updated in place on rediscovery so references held elsewhere stay valid.
    """

    urn: str
    ip: str
    port: int = 80
    device_service_address: str = ""
    vendor_name: str = ""
    hardware_model: str = ""
    location: str = ""
    discovered_profiles: set[str] = field(default_factory=set)
    scopes: list[str] = field(default_factory=list)
    discovery_method: DiscoveryMethod = DiscoveryMethod.MULTICAST

    @classmethod
    def manual(cls, ip: str, port: int = 80, path: str = "/onvif/device_service") -> "DeviceIdentity":
        """Identity for a device entered by hand (never auto-rediscovered)."""
        host = f"{ip}:{port}" if port != 80 else ip
        return cls(
            urn=f"manual:{ip}:{port}",
            ip=ip,
            port=port,
            device_service_address=f"http://{host}{path}",
            discovery_method=DiscoveryMethod.MANUAL,
        )

    @property
    def auto_discovered(self) -> bool:
        return self.discovery_method != DiscoveryMethod.MANUAL

    def update_from(self, other: "DeviceIdentity") -> None:
        """Refresh addressing and scope data from a newer sighting.

        The urn and discovery method stay as first learned.
        """
        self.ip = other.ip
        self.port = other.port
        if other.device_service_address:
            self.device_service_address = other.device_service_address
        self.vendor_name = other.vendor_name or self.vendor_name
        self.hardware_model = other.hardware_model or self.hardware_model
        self.location = other.location or self.location
        if other.discovered_profiles:
            self.discovered_profiles = set(other.discovered_profiles)
        if other.scopes:
            self.scopes = list(other.scopes)


@dataclass
class ServiceEndpoints:
    """Service addresses and capability flags from the capability query."""

    media_service_address: Optional[str] = None
    event_service_address: Optional[str] = None
    supports_ws_subscription: bool = False
    supports_pull_point: bool = False
    streaming_transport_flags: dict[str, bool] = field(default_factory=dict)
    device_info: dict[str, str] = field(default_factory=dict)
    event_topics: list[str] = field(default_factory=list)
    vendor_resubscribe_required: bool = False

    @property
    def has_events(self) -> bool:
        return bool(self.event_service_address) and (
            self.supports_ws_subscription or self.supports_pull_point
        )


def same_origin(first: Optional[str], second: Optional[str]) -> bool:
    """True when both URLs point at the same host."""
    if not first or not second:
        return False
    return urlparse(first).hostname == urlparse(second).hostname


class DeviceContext:
    """Explicit per-device state owned by the DeviceManager."""

    def __init__(
        self,
        identity: DeviceIdentity,
        credentials: Credentials,
        label: Optional[str] = None,
    ):
        self.identity = identity
        self.credentials = credentials
        self.label = label or identity.vendor_name or identity.ip
        self.auth = AuthState()
        self.endpoints: Optional[ServiceEndpoints] = None
        self.online: Optional[bool] = None
        self.status = DeviceStatus.INITIALIZING
        self.delivery_mode = DeliveryMode.PUSH

        # Set by the manager; called on online/offline transitions
        self.on_liveness: Optional[Callable[["DeviceContext", bool], None]] = None
        self.on_status: Optional[Callable[["DeviceContext", DeviceStatus], None]] = None

    @property
    def key(self) -> str:
        return self.identity.urn

    def __repr__(self) -> str:
        return f"DeviceContext({self.key!r}, {self.identity.ip})"

    def set_status(self, status: DeviceStatus) -> None:
        if status == self.status:
            return
        self.status = status
        if self.on_status:
            self.on_status(self, status)

    def mark_online(self) -> None:
        if self.online is True:
            return
        if self.online is False:
            logger.info(f"Device '{self.label}' is responding again")
        self.online = True
        self.set_status(DeviceStatus.RESPONDING)
        if self.on_liveness:
            self.on_liveness(self, True)

    def mark_offline(self, reason: str = "") -> None:
        if self.online is False:
            return
        logger.warning(f"Device '{self.label}' is not responding: {reason}")
        self.online = False
        self.set_status(DeviceStatus.NOT_RESPONDING)
        if self.on_liveness:
            self.on_liveness(self, False)

    def info_lines(self) -> list[str]:
        """Human-readable description for display."""
        ident = self.identity
        lines = [f"IP addr: {ident.ip}"]
        if ident.vendor_name:
            lines.append(f"Name: {ident.vendor_name}")
        if ident.hardware_model:
            lines.append(f"Hardware: {ident.hardware_model}")
        if ident.location:
            lines.append(f"Location: {ident.location}")
        for profile in sorted(ident.discovered_profiles):
            lines.append(f"Profile: {profile}")
        if self.endpoints and self.endpoints.device_info:
            info = self.endpoints.device_info
            if info.get("manufacturer"):
                lines.append(f"Manufacturer: {info['manufacturer']}")
            if info.get("firmware"):
                lines.append(f"Firmware: {info['firmware']}")
        lines.append(ident.urn)
        return lines
