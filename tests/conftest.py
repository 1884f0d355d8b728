"""Pytest configuration and fixtures."""

from typing import Callable

import httpx
import pytest

from onvifcam.config import Settings
from onvifcam.services.device import Credentials, DeviceContext, DeviceIdentity, DiscoveryMethod


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment with no retry delay."""
    return Settings(
        _env_file=None,
        retry_delay=0.0,
        event_listen_host="127.0.0.1",
        static_ip_list="",
        state_directory=None,
        encryption_key=None,
    )


@pytest.fixture
def identity() -> DeviceIdentity:
    """Identity of a multicast-discovered camera."""
    return DeviceIdentity(
        urn="urn:uuid:2419d68a-2dd2-21b2-a205-ec71dbc2ac6f",
        ip="192.168.1.64",
        port=80,
        device_service_address="http://192.168.1.64/onvif/device_service",
        vendor_name="Acme",
        hardware_model="Cam-100",
        discovery_method=DiscoveryMethod.MULTICAST,
    )


@pytest.fixture
def device(identity: DeviceIdentity) -> DeviceContext:
    """Auto-discovered device with admin/pw credentials."""
    return DeviceContext(identity, Credentials("admin", "pw"), label="Front Door")


@pytest.fixture
async def mock_http():
    """Factory for httpx clients backed by a request handler."""
    clients: list[httpx.AsyncClient] = []

    def factory(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        return client

    yield factory
    for client in clients:
        await client.aclose()
