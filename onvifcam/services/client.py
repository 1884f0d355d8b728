"""ONVIF capability client.

Provides async methods for:
- Querying device information
- Discovering media and event service addresses and capability flags
- Listing the event topics a device advertises
"""

import logging
from typing import Any, Optional

from onvifcam.config import Settings, get_settings
from onvifcam.exceptions import AuthError, ONVIFError
from onvifcam.services import soap
from onvifcam.services.device import (
    DeliveryMode,
    DeviceContext,
    DeviceStatus,
    ServiceEndpoints,
)
from onvifcam.services.dispatcher import RequestDispatcher

logger = logging.getLogger(__name__)

STREAMING_FLAGS = ("RTPMulticast", "RTP_TCP", "RTP_RTSP_TCP")


def _flag(value: Any) -> bool:
    text = soap.text_of(value)
    return bool(text) and text.lower() in ("true", "1")


def collect_topics(node: Any, prefix: str = "") -> list[str]:
    """Walk a TopicSet tree and return every path flagged as a topic."""
    topics = []
    if not isinstance(node, dict):
        return topics
    for key, child in node.items():
        if key.startswith(("@", "#")) or key == "MessageDescription":
            continue
        path = f"{prefix}/{key}" if prefix else key
        for item in soap.as_list(child):
            if isinstance(item, dict):
                if str(item.get("@topic", "")).lower() == "true" and path not in topics:
                    topics.append(path)
                topics.extend(t for t in collect_topics(item, path) if t not in topics)
    return topics


class ONVIFClient:
    """Capability queries against a single device.

    Example usage:
        client = ONVIFClient(dispatcher)
        endpoints = await client.initialize(device)
        if endpoints and endpoints.has_events:
            print(endpoints.event_service_address)
    """

    def __init__(self, dispatcher: RequestDispatcher, settings: Optional[Settings] = None):
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()

    async def get_device_information(self, device: DeviceContext) -> dict[str, str]:
        """Get device information (manufacturer, model, firmware, serial).

        Returns:
            Dictionary with device information, empty on failure
        """
        try:
            response = await self.dispatcher.send(
                device,
                "GetDeviceInformation",
                device.identity.device_service_address,
                soap.get_device_information(),
            )
        except ONVIFError as e:
            logger.debug(f"Failed to get device info from {device.label}: {e}")
            return {}

        info = soap.find(response.body, "GetDeviceInformationResponse") or {}
        return {
            "manufacturer": soap.text_of(info.get("Manufacturer")) or "",
            "model": soap.text_of(info.get("Model")) or "",
            "firmware": soap.text_of(info.get("FirmwareVersion")) or "",
            "serial": soap.text_of(info.get("SerialNumber")) or "",
            "hardware_id": soap.text_of(info.get("HardwareId")) or "",
        }

    async def get_capabilities(self, device: DeviceContext) -> ServiceEndpoints:
        """Query GetCapabilities and map it to service endpoints.

        Raises:
            ONVIFError: If the query fails
        """
        response = await self.dispatcher.send(
            device,
            "GetCapabilities",
            device.identity.device_service_address,
            soap.get_capabilities("All"),
        )
        caps = soap.find(response.body, "GetCapabilitiesResponse", "Capabilities") or {}

        endpoints = ServiceEndpoints()
        media = soap.find(caps, "Media")
        if media is not None:
            endpoints.media_service_address = soap.text_of(soap.find(media, "XAddr"))
            streaming = soap.find(media, "StreamingCapabilities") or {}
            endpoints.streaming_transport_flags = {
                name: _flag(soap.find(streaming, name)) for name in STREAMING_FLAGS
            }

        events = soap.find(caps, "Events")
        if events is not None:
            endpoints.event_service_address = soap.text_of(soap.find(events, "XAddr"))
            endpoints.supports_ws_subscription = _flag(
                soap.find(events, "WSSubscriptionPolicySupport")
            )
            endpoints.supports_pull_point = _flag(soap.find(events, "WSPullPointSupport"))
        return endpoints

    async def get_event_service_address(self, device: DeviceContext) -> Optional[str]:
        """Find the events service in GetServices (fallback for sparse capabilities)."""
        try:
            response = await self.dispatcher.send(
                device,
                "GetServices",
                device.identity.device_service_address,
                soap.get_services(False),
            )
        except ONVIFError as e:
            logger.debug(f"GetServices failed for {device.label}: {e}")
            return None

        services = soap.find(response.body, "GetServicesResponse", "Service")
        for service in soap.as_list(services):
            namespace = soap.text_of(soap.find(service, "Namespace")) or ""
            logger.debug(f"Searching services list: {namespace}")
            if "/events/" in namespace:
                return soap.text_of(soap.find(service, "XAddr"))
        return None

    async def get_event_properties(self, device: DeviceContext, event_address: str) -> list[str]:
        """Topic paths advertised by the event service."""
        try:
            response = await self.dispatcher.send(
                device,
                "GetEventProperties",
                event_address,
                soap.get_event_properties(),
            )
        except ONVIFError as e:
            logger.debug(f"GetEventProperties failed for {device.label}: {e}")
            return []
        topic_set = soap.find(response.body, "GetEventPropertiesResponse", "TopicSet")
        return collect_topics(topic_set)

    def requires_resubscribe(self, device: DeviceContext) -> bool:
        """Vendors whose event service rejects Renew."""
        vendor_ids = self.settings.resubscribe_vendor_ids
        ident = device.identity
        names = {ident.vendor_name.lower(), ident.hardware_model.lower()}
        return bool(names & vendor_ids)

    def choose_delivery_mode(self, endpoints: ServiceEndpoints) -> DeliveryMode:
        if endpoints.supports_pull_point and (
            self.settings.prefer_pull_point or not endpoints.supports_ws_subscription
        ):
            return DeliveryMode.PULL
        return DeliveryMode.PUSH

    async def initialize(self, device: DeviceContext) -> Optional[ServiceEndpoints]:
        """Run the capability queries and store the result on the device.

        Returns:
            ServiceEndpoints, or None if the device could not be queried
        """
        device.set_status(DeviceStatus.INITIALIZING)
        try:
            endpoints = await self.get_capabilities(device)
        except AuthError as e:
            logger.error(f"Authentication failed for {device.label}: {e}")
            device.set_status(DeviceStatus.AUTH_FAILED)
            return None
        except ONVIFError as e:
            logger.error(f"Capability query failed for {device.label}: {e}")
            return None

        if not endpoints.event_service_address:
            endpoints.event_service_address = await self.get_event_service_address(device)
            if endpoints.event_service_address and not (
                endpoints.supports_ws_subscription or endpoints.supports_pull_point
            ):
                # GetServices does not report policy flags; assume base notification
                endpoints.supports_ws_subscription = True

        endpoints.device_info = await self.get_device_information(device)
        if endpoints.event_service_address:
            endpoints.event_topics = await self.get_event_properties(
                device, endpoints.event_service_address
            )
        endpoints.vendor_resubscribe_required = self.requires_resubscribe(device)

        device.endpoints = endpoints
        device.delivery_mode = self.choose_delivery_mode(endpoints)
        logger.info(
            f"Initialized {device.label}: events={endpoints.event_service_address}, "
            f"mode={device.delivery_mode.value}, "
            f"resubscribe={endpoints.vendor_resubscribe_required}"
        )
        return endpoints
