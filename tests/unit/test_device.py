"""Tests for device identity and context state."""

from unittest.mock import MagicMock

import pytest

from onvifcam.services.device import (
    DeviceContext,
    DeviceIdentity,
    DeviceStatus,
    DiscoveryMethod,
    ServiceEndpoints,
    same_origin,
)
from onvifcam.utils import parse_xsd_datetime, to_utc_isoformat, wss_created


class TestDeviceIdentity:
    """Tests for DeviceIdentity."""

    def test_update_keeps_urn_and_method(self, identity: DeviceIdentity) -> None:
        other = DeviceIdentity(
            urn="urn:uuid:other",
            ip="192.168.1.99",
            port=8000,
            device_service_address="http://192.168.1.99:8000/onvif/device_service",
            discovery_method=DiscoveryMethod.UNICAST,
        )

        identity.update_from(other)

        assert identity.urn == "urn:uuid:2419d68a-2dd2-21b2-a205-ec71dbc2ac6f"
        assert identity.discovery_method == DiscoveryMethod.MULTICAST
        assert identity.ip == "192.168.1.99"
        assert identity.port == 8000
        assert identity.vendor_name == "Acme"

    def test_status_values(self) -> None:
        assert DeviceStatus.NOT_RESPONDING.value == "Not responding"
        assert DeviceStatus.AUTH_FAILED.value == "Authentication failed"


class TestDeviceContext:
    """Tests for liveness transitions."""

    def test_liveness_callbacks_fire_on_transitions_only(self, device: DeviceContext) -> None:
        liveness = MagicMock()
        device.on_liveness = liveness

        device.mark_online()
        device.mark_online()
        device.mark_offline("refused")
        device.mark_offline("refused")
        device.mark_online()

        assert [c.args[1] for c in liveness.call_args_list] == [True, False, True]
        assert device.status == DeviceStatus.RESPONDING

    def test_info_lines(self, device: DeviceContext) -> None:
        device.identity.discovered_profiles = {"T", "S"}
        device.endpoints = ServiceEndpoints(device_info={"manufacturer": "Acme", "firmware": "1.0"})

        lines = device.info_lines()

        assert lines[0] == "IP addr: 192.168.1.64"
        assert "Profile: S" in lines
        assert "Firmware: 1.0" in lines
        assert lines[-1] == device.key

    def test_has_events_requires_a_delivery_method(self) -> None:
        assert not ServiceEndpoints(event_service_address="http://cam/events").has_events
        assert ServiceEndpoints(
            event_service_address="http://cam/events", supports_pull_point=True
        ).has_events

    @pytest.mark.parametrize(
        "first,second,expected",
        [
            ("http://10.0.0.1/onvif/a", "http://10.0.0.1:8080/onvif/b", True),
            ("http://10.0.0.1/onvif/a", "http://10.0.0.2/onvif/a", False),
            (None, "http://10.0.0.2/onvif/a", False),
        ],
    )
    def test_same_origin(self, first, second, expected: bool) -> None:
        assert same_origin(first, second) is expected


class TestTimezone:
    """Tests for xsd:dateTime handling."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("2026-10-19T12:00:00Z", "2026-10-19T12:00:00Z"),
            ("2026-10-19T14:00:00+02:00", "2026-10-19T12:00:00Z"),
            ("2026-10-19T12:00:00.1234567Z", "2026-10-19T12:00:00.123456Z"),
            ("2026-10-19T12:00:00.5Z", "2026-10-19T12:00:00.500000Z"),
            ("2026-10-19T12:00:00", "2026-10-19T12:00:00Z"),
        ],
    )
    def test_parse(self, value: str, expected: str) -> None:
        assert to_utc_isoformat(parse_xsd_datetime(value)) == expected

    @pytest.mark.parametrize("value", [None, "", "yesterday"])
    def test_unparseable(self, value) -> None:
        assert parse_xsd_datetime(value) is None

    def test_wss_created_format(self) -> None:
        stamp = parse_xsd_datetime("2026-10-19T12:00:00.123456Z")
        assert wss_created(stamp) == "2026-10-19T12:00:00.123Z"
