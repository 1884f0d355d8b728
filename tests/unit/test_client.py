"""Tests for the capability client."""

from types import SimpleNamespace

import pytest

from helpers import soap_response
from onvifcam.config import Settings
from onvifcam.exceptions import AuthError, ProtocolFault, TransportError
from onvifcam.services.client import ONVIFClient, collect_topics
from onvifcam.services.device import (
    DeliveryMode,
    DeviceContext,
    DeviceStatus,
    ServiceEndpoints,
)

CAPABILITIES = (
    "<tds:GetCapabilitiesResponse><tds:Capabilities>"
    "<tt:Device><tt:XAddr>http://192.168.1.64/onvif/device_service</tt:XAddr></tt:Device>"
    "<tt:Events>"
    "<tt:XAddr>http://192.168.1.64/onvif/Events</tt:XAddr>"
    "<tt:WSSubscriptionPolicySupport>true</tt:WSSubscriptionPolicySupport>"
    "<tt:WSPullPointSupport>true</tt:WSPullPointSupport>"
    "<tt:WSPausableSubscriptionManagerInterfaceSupport>false"
    "</tt:WSPausableSubscriptionManagerInterfaceSupport>"
    "</tt:Events>"
    "<tt:Media>"
    "<tt:XAddr>http://192.168.1.64/onvif/Media</tt:XAddr>"
    "<tt:StreamingCapabilities>"
    "<tt:RTPMulticast>false</tt:RTPMulticast>"
    "<tt:RTP_TCP>true</tt:RTP_TCP>"
    "<tt:RTP_RTSP_TCP>true</tt:RTP_RTSP_TCP>"
    "</tt:StreamingCapabilities>"
    "</tt:Media>"
    "</tds:Capabilities></tds:GetCapabilitiesResponse>"
)

SPARSE_CAPABILITIES = (
    "<tds:GetCapabilitiesResponse><tds:Capabilities>"
    "<tt:Media><tt:XAddr>http://192.168.1.64/onvif/Media</tt:XAddr></tt:Media>"
    "</tds:Capabilities></tds:GetCapabilitiesResponse>"
)

SERVICES = (
    "<tds:GetServicesResponse>"
    "<tds:Service><tds:Namespace>http://www.onvif.org/ver10/device/wsdl</tds:Namespace>"
    "<tds:XAddr>http://192.168.1.64/onvif/device_service</tds:XAddr></tds:Service>"
    "<tds:Service><tds:Namespace>http://www.onvif.org/ver10/events/wsdl</tds:Namespace>"
    "<tds:XAddr>http://192.168.1.64/onvif/event_service</tds:XAddr></tds:Service>"
    "</tds:GetServicesResponse>"
)

DEVICE_INFORMATION = (
    "<tds:GetDeviceInformationResponse>"
    "<tds:Manufacturer>Acme</tds:Manufacturer>"
    "<tds:Model>Cam-100</tds:Model>"
    "<tds:FirmwareVersion>V5.5.0</tds:FirmwareVersion>"
    "<tds:SerialNumber>SN123</tds:SerialNumber>"
    "<tds:HardwareId>HW1</tds:HardwareId>"
    "</tds:GetDeviceInformationResponse>"
)

EVENT_PROPERTIES = (
    "<tev:GetEventPropertiesResponse>"
    "<wsnt:FixedTopicSet>true</wsnt:FixedTopicSet>"
    "<wstop:TopicSet>"
    '<tns1:RuleEngine wstop:topic="true">'
    '<CellMotionDetector wstop:topic="true">'
    '<Motion wstop:topic="true"><tt:MessageDescription IsProperty="true"/></Motion>'
    "</CellMotionDetector>"
    '<TamperDetector wstop:topic="true"><Tamper wstop:topic="true"/></TamperDetector>'
    "</tns1:RuleEngine>"
    "<tns1:Device><Trigger><Relay wstop:topic=\"true\"/></Trigger></tns1:Device>"
    "</wstop:TopicSet>"
    "</tev:GetEventPropertiesResponse>"
)


class ScriptedDispatcher:
    """Answers each operation from a fixed table."""

    def __init__(self, answers: dict):
        self.answers = answers
        self.calls: list[SimpleNamespace] = []

    async def send(self, device, operation, service_uri, body, timeout=None, header=""):
        self.calls.append(SimpleNamespace(operation=operation, uri=service_uri, body=body))
        answer = self.answers.get(operation)
        if answer is None:
            raise ProtocolFault("ter:ActionNotSupported", 500)
        if isinstance(answer, Exception):
            raise answer
        return soap_response(answer)


class TestCollectTopics:
    """Tests for TopicSet flattening."""

    def test_paths_flagged_as_topics(self) -> None:
        topic_set = soap_response(EVENT_PROPERTIES).body["GetEventPropertiesResponse"]["TopicSet"]
        assert collect_topics(topic_set) == [
            "RuleEngine",
            "RuleEngine/CellMotionDetector",
            "RuleEngine/CellMotionDetector/Motion",
            "RuleEngine/TamperDetector",
            "RuleEngine/TamperDetector/Tamper",
            "Device/Trigger/Relay",
        ]

    def test_empty(self) -> None:
        assert collect_topics(None) == []


class TestONVIFClient:
    """Tests for ONVIFClient queries."""

    @pytest.mark.asyncio
    async def test_capabilities(self, device: DeviceContext, settings: Settings) -> None:
        client = ONVIFClient(ScriptedDispatcher({"GetCapabilities": CAPABILITIES}), settings)

        endpoints = await client.get_capabilities(device)

        assert endpoints.media_service_address == "http://192.168.1.64/onvif/Media"
        assert endpoints.event_service_address == "http://192.168.1.64/onvif/Events"
        assert endpoints.supports_ws_subscription is True
        assert endpoints.supports_pull_point is True
        assert endpoints.streaming_transport_flags == {
            "RTPMulticast": False,
            "RTP_TCP": True,
            "RTP_RTSP_TCP": True,
        }
        assert endpoints.has_events

    @pytest.mark.asyncio
    async def test_capabilities_error_propagates(
        self, device: DeviceContext, settings: Settings
    ) -> None:
        client = ONVIFClient(ScriptedDispatcher({}), settings)
        with pytest.raises(ProtocolFault):
            await client.get_capabilities(device)

    @pytest.mark.asyncio
    async def test_device_information(self, device: DeviceContext, settings: Settings) -> None:
        client = ONVIFClient(
            ScriptedDispatcher({"GetDeviceInformation": DEVICE_INFORMATION}), settings
        )
        assert await client.get_device_information(device) == {
            "manufacturer": "Acme",
            "model": "Cam-100",
            "firmware": "V5.5.0",
            "serial": "SN123",
            "hardware_id": "HW1",
        }

    @pytest.mark.asyncio
    async def test_device_information_failure_is_empty(
        self, device: DeviceContext, settings: Settings
    ) -> None:
        client = ONVIFClient(ScriptedDispatcher({}), settings)
        assert await client.get_device_information(device) == {}

    @pytest.mark.asyncio
    async def test_initialize(self, device: DeviceContext, settings: Settings) -> None:
        dispatcher = ScriptedDispatcher(
            {
                "GetCapabilities": CAPABILITIES,
                "GetDeviceInformation": DEVICE_INFORMATION,
                "GetEventProperties": EVENT_PROPERTIES,
            }
        )
        client = ONVIFClient(dispatcher, settings)

        endpoints = await client.initialize(device)

        assert device.endpoints is endpoints
        assert endpoints.device_info["manufacturer"] == "Acme"
        assert "RuleEngine/CellMotionDetector/Motion" in endpoints.event_topics
        assert endpoints.vendor_resubscribe_required is False
        assert device.delivery_mode == DeliveryMode.PUSH
        assert dispatcher.calls[-1].uri == "http://192.168.1.64/onvif/Events"

    @pytest.mark.asyncio
    async def test_initialize_uses_get_services_fallback(
        self, device: DeviceContext, settings: Settings
    ) -> None:
        client = ONVIFClient(
            ScriptedDispatcher(
                {"GetCapabilities": SPARSE_CAPABILITIES, "GetServices": SERVICES}
            ),
            settings,
        )

        endpoints = await client.initialize(device)

        assert endpoints.event_service_address == "http://192.168.1.64/onvif/event_service"
        assert endpoints.supports_ws_subscription is True
        assert endpoints.event_topics == []
        assert endpoints.device_info == {}

    @pytest.mark.asyncio
    async def test_initialize_auth_failure(self, device: DeviceContext, settings: Settings) -> None:
        client = ONVIFClient(
            ScriptedDispatcher({"GetCapabilities": AuthError("rejected")}), settings
        )

        assert await client.initialize(device) is None
        assert device.status == DeviceStatus.AUTH_FAILED
        assert device.endpoints is None

    @pytest.mark.asyncio
    async def test_initialize_unreachable(self, device: DeviceContext, settings: Settings) -> None:
        client = ONVIFClient(
            ScriptedDispatcher({"GetCapabilities": TransportError("refused", unreachable=True)}),
            settings,
        )
        assert await client.initialize(device) is None

    def test_vendor_resubscribe_flag(self, device: DeviceContext, settings: Settings) -> None:
        client = ONVIFClient(ScriptedDispatcher({}), settings)
        assert client.requires_resubscribe(device) is False

        device.identity.vendor_name = "IPC-BO"
        assert client.requires_resubscribe(device) is True

    @pytest.mark.parametrize(
        "ws,pull,prefer,expected",
        [
            (True, True, False, DeliveryMode.PUSH),
            (True, True, True, DeliveryMode.PULL),
            (False, True, False, DeliveryMode.PULL),
            (True, False, True, DeliveryMode.PUSH),
        ],
    )
    def test_delivery_mode(
        self, settings: Settings, ws: bool, pull: bool, prefer: bool, expected: DeliveryMode
    ) -> None:
        settings.prefer_pull_point = prefer
        client = ONVIFClient(ScriptedDispatcher({}), settings)
        endpoints = ServiceEndpoints(
            event_service_address="http://cam/events",
            supports_ws_subscription=ws,
            supports_pull_point=pull,
        )
        assert client.choose_delivery_mode(endpoints) == expected
