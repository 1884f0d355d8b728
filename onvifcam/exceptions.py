"""Error kinds raised by the ONVIF engine."""

from typing import Optional


class ONVIFError(Exception):
    """Base class for all engine errors."""


class TransportError(ONVIFError):
    """Connection refused, timeout or no route to the device."""

    def __init__(self, message: str, unreachable: bool = False):
        super().__init__(message)
        self.unreachable = unreachable


class ProtocolFault(ONVIFError):
    """SOAP fault or malformed XML returned by a device."""

    def __init__(self, fault: str, status_code: Optional[int] = None):
        self.fault = fault
        self.status_code = status_code
        if status_code is not None:
            super().__init__(f"HTTP {status_code}: {fault}")
        else:
            super().__init__(fault)


class AuthError(ONVIFError):
    """Unsupported scheme or algorithm, missing or rejected credentials."""


class SubscriptionExpiredError(ONVIFError):
    """Renewal window computed from the device's times is not schedulable."""


class DiscoveryParseError(ONVIFError):
    """A discovery response lacks required fields."""
