"""WS-Discovery of ONVIF devices and rediscovery of devices that went away.

Multicast Probe messages go to 239.255.255.250:3702 from one ephemeral UDP
socket; ProbeMatch answers are parsed into DeviceIdentity records. Hosts
that do not answer multicast (other subnets, static IPs) are probed directly
over HTTP. Each run deduplicates by endpoint URN.
"""

import asyncio
import inspect
import logging
import random
import re
import socket
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Iterable, Optional, Union
from urllib.parse import urlparse

import httpx

from onvifcam.config import Settings, get_settings
from onvifcam.exceptions import DiscoveryParseError, ProtocolFault
from onvifcam.services import soap
from onvifcam.services.device import DeviceContext, DeviceIdentity, DiscoveryMethod

logger = logging.getLogger(__name__)

PROBE_TYPES = ("dn:NetworkVideoTransmitter", "tds:Device", "tdc:Door")
VALID_TYPES = ("NetworkVideoTransmitter", "Device", "NetworkVideoStorage", "Door")

_IPV4_XADDR = re.compile(r"^http://[\d.:]+/")
_IPV6_XADDR = re.compile(r"^http://\[[0-9A-Fa-f:]+\](:\d+)?/")
_HOST_XADDR = re.compile(r"^http://[\w.\-:]+/")

_SCOPE_FIELDS = {"/name/": "vendor_name", "/location/": "location", "/hardware/": "hardware_model"}


def select_xaddr(xaddrs: str) -> Optional[str]:
    """First usable http device service address (IPv4, then IPv6, then host)."""
    candidates = xaddrs.split()
    for pattern in (_IPV4_XADDR, _IPV6_XADDR, _HOST_XADDR):
        for addr in candidates:
            if pattern.match(addr):
                return addr
    return None


def parse_probe_match(
    data: Union[str, bytes],
    sender_ip: Optional[str] = None,
    method: DiscoveryMethod = DiscoveryMethod.MULTICAST,
) -> DeviceIdentity:
    """Parse a ProbeMatch response into a DeviceIdentity.

    Raises:
        DiscoveryParseError: If the response lacks a required element or is
            not from a supported device type
    """
    try:
        tree = soap.parse_xml(data)
    except ProtocolFault as e:
        raise DiscoveryParseError(f"Invalid XML in discovery response: {e}") from e

    if soap.find(tree, "Envelope") is None:
        raise DiscoveryParseError("Discovery response missing Envelope")
    fault = soap.parse_fault(tree)
    if fault:
        raise DiscoveryParseError(f"SOAP fault: {fault}")

    match = soap.find(tree, "Envelope", "Body", "ProbeMatches", "ProbeMatch")
    if match is None:
        raise DiscoveryParseError("Unexpected discovery response, no ProbeMatch")

    types = soap.text_of(soap.find(match, "Types"))
    if not types:
        raise DiscoveryParseError("Discovery response missing Types")
    if not any(valid in t for t in types.split() for valid in VALID_TYPES):
        raise DiscoveryParseError(f"Unsupported device type: {types}")

    xaddrs = soap.text_of(soap.find(match, "XAddrs"))
    if not xaddrs:
        raise DiscoveryParseError("Discovery response missing XAddrs")
    address = select_xaddr(xaddrs)
    if not address:
        raise DiscoveryParseError(f"No usable device service address in: {xaddrs}")

    urn = soap.text_of(soap.find(match, "EndpointReference", "Address"))
    if not urn:
        raise DiscoveryParseError("Discovery response missing EndpointReference Address")

    parsed = urlparse(address)
    identity = DeviceIdentity(
        urn=urn,
        ip=sender_ip or parsed.hostname or "",
        port=parsed.port or 80,
        device_service_address=address,
        discovery_method=method,
    )

    scopes = soap.text_of(soap.find(match, "Scopes"))
    if not scopes:
        logger.debug(f"No Scopes in discovery response from {identity.ip}")
    for item in (scopes or "").split():
        identity.scopes.append(item)
        for marker, attr in _SCOPE_FIELDS.items():
            if marker in item:
                setattr(identity, attr, item.split(marker, 1)[1])
                break
        else:
            if "/Profile/" in item:
                identity.discovered_profiles.add(item.split("/Profile/", 1)[1])
    return identity


class _ProbeProtocol(asyncio.DatagramProtocol):
    """Collects datagrams into a queue."""

    def __init__(self):
        self.responses: asyncio.Queue = asyncio.Queue()

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        self.responses.put_nowait((data, addr))

    def error_received(self, exc: Exception) -> None:
        logger.debug(f"Discovery socket error: {exc}")


class DiscoveryEngine:
    """Finds ONVIF devices on the LAN.

    Example usage:
        engine = DiscoveryEngine()
        async for identity in engine.stream(timeout=5, hosts=["10.0.0.7"]):
            print(identity.urn, identity.device_service_address)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.settings.request_timeout)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _send_probes(self, transport: asyncio.DatagramTransport) -> None:
        target = (self.settings.multicast_group, self.settings.multicast_port)
        attempts = max(1, self.settings.probe_send_attempts)
        for attempt in range(1, attempts + 1):
            try:
                for index, probe_type in enumerate(PROBE_TYPES):
                    if index:
                        await asyncio.sleep(0.1)
                    transport.sendto(soap.probe(probe_type).encode("utf-8"), target)
                return
            except OSError as e:
                logger.warning(f"Discovery send attempt {attempt} failed: {e}")
                if attempt < attempts:
                    await asyncio.sleep(1)

    async def _multicast(self, found: asyncio.Queue, deadline: float) -> None:
        """Probe by multicast and queue every valid ProbeMatch until the deadline."""
        loop = asyncio.get_running_loop()
        transport, protocol = await loop.create_datagram_endpoint(
            _ProbeProtocol, local_addr=("0.0.0.0", 0), family=socket.AF_INET
        )
        try:
            sock = transport.get_extra_info("socket")
            if sock is not None:
                sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 2)
            await self._send_probes(transport)

            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    data, addr = await asyncio.wait_for(protocol.responses.get(), remaining)
                except asyncio.TimeoutError:
                    break
                logger.debug(f"Discovery response from: {addr[0]}")
                try:
                    identity = parse_probe_match(data, addr[0], DiscoveryMethod.MULTICAST)
                except DiscoveryParseError as e:
                    logger.debug(f"Discarded discovery response from {addr[0]}: {e}")
                    continue
                await found.put(identity)
        finally:
            transport.close()

    async def probe_unicast(self, host: str, port: Optional[int] = None) -> Optional[DeviceIdentity]:
        """Probe one host directly at its device service.

        A ProbeMatch yields a full identity. Any other HTTP answer yields a
        best-effort ONVIF identity. No answer yields a generic RTSP-only
        identity when synthesize_unreachable is enabled, otherwise None.
        """
        netloc = f"{host}:{port}" if port and port != 80 else host
        url = f"http://{netloc}/onvif/device_service"
        client = await self._get_client()
        try:
            response = await client.post(
                url,
                content=soap.probe(PROBE_TYPES[0]).encode("utf-8"),
                headers={"Content-Type": "application/soap+xml; charset=utf-8"},
                timeout=self.settings.discovery_timeout,
            )
        except httpx.HTTPError as e:
            logger.debug(f"Direct probe of {host} got no answer: {e}")
            if not self.settings.synthesize_unreachable:
                return None
            return DeviceIdentity(
                urn=f"rtsp:{host}",
                ip=host,
                port=554,
                vendor_name="Generic RTSP",
                discovery_method=DiscoveryMethod.UNICAST,
            )

        try:
            identity = parse_probe_match(response.text, host, DiscoveryMethod.UNICAST)
        except DiscoveryParseError as e:
            logger.debug(f"Direct probe of {host} returned HTTP {response.status_code}: {e}")
            return DeviceIdentity(
                urn=f"unicast:{host}:{port or 80}",
                ip=host,
                port=port or 80,
                device_service_address=url,
                vendor_name="ONVIF Device",
                discovery_method=DiscoveryMethod.UNICAST,
            )
        identity.port = port or identity.port
        return identity

    async def _unicast(self, found: asyncio.Queue, host: str) -> None:
        host, _, port = host.partition(":")
        identity = await self.probe_unicast(host, int(port) if port else None)
        if identity is not None:
            await found.put(identity)

    async def stream(
        self,
        timeout: Optional[float] = None,
        hosts: Optional[Iterable[str]] = None,
        multicast: bool = True,
    ) -> AsyncIterator[DeviceIdentity]:
        """Yield each device found within ``timeout`` seconds, once per URN.

        Args:
            timeout: Listen window in seconds
            hosts: Extra hosts ("ip" or "ip:port") to probe directly; the
                configured static IPs are always included
            multicast: Send multicast probes as well
        """
        loop = asyncio.get_running_loop()
        timeout = timeout if timeout is not None else self.settings.discovery_timeout
        deadline = loop.time() + timeout
        found: asyncio.Queue = asyncio.Queue()
        seen: set[str] = set()

        targets = list(dict.fromkeys([*self.settings.static_ips, *(hosts or [])]))
        producers = [asyncio.create_task(self._unicast(found, host)) for host in targets]
        if multicast:
            producers.append(asyncio.create_task(self._multicast(found, deadline)))

        try:
            while True:
                if all(task.done() for task in producers) and found.empty():
                    break
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                getter = asyncio.ensure_future(found.get())
                done, _ = await asyncio.wait(
                    [getter, *[t for t in producers if not t.done()]],
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if getter not in done:
                    getter.cancel()
                    continue
                identity = getter.result()
                if identity.urn in seen:
                    logger.debug(f"Duplicate discovery response for {identity.urn}")
                    continue
                seen.add(identity.urn)
                yield identity
        finally:
            for task in producers:
                if not task.done():
                    task.cancel()
            for task in producers:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.warning(f"Discovery probe failed: {e}")

    async def discover(
        self,
        timeout: Optional[float] = None,
        on_found: Optional[Callable[[DeviceIdentity], None]] = None,
        hosts: Optional[Iterable[str]] = None,
    ) -> list[DeviceIdentity]:
        """Run one discovery pass, calling ``on_found`` once per device."""
        identities = []
        async for identity in self.stream(timeout, hosts):
            identities.append(identity)
            if on_found:
                on_found(identity)
        logger.info(f"Discovery found {len(identities)} device(s)")
        return identities


RediscoveryCallback = Callable[[DeviceContext], Optional[Awaitable[None]]]


@dataclass
class RediscoveryWaitEntry:
    """A device waiting to be seen again."""

    device_key: str
    device: DeviceContext
    callback: RediscoveryCallback
    backoff_seconds: float


class RediscoveryScheduler:
    """Repeats discovery with exponential backoff until lost devices return.

    One background task serves every waiting device and exits when the
    list is empty.
    """

    def __init__(
        self,
        engine: DiscoveryEngine,
        settings: Optional[Settings] = None,
        jitter: Callable[[], float] = random.random,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.engine = engine
        self.settings = settings or get_settings()
        self._jitter = jitter
        self._sleep = sleep
        self._entries: dict[str, RediscoveryWaitEntry] = {}
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> list[str]:
        return list(self._entries)

    def entry(self, device_key: str) -> Optional[RediscoveryWaitEntry]:
        return self._entries.get(device_key)

    def schedule(self, device: DeviceContext, callback: RediscoveryCallback) -> None:
        """Wait for ``device`` to reappear, then call ``callback(device)``."""
        key = device.key
        existing = self._entries.get(key)
        if existing:
            existing.device = device
            existing.callback = callback
            return
        self._entries[key] = RediscoveryWaitEntry(
            device_key=key,
            device=device,
            callback=callback,
            backoff_seconds=self.settings.rediscovery_base_delay,
        )
        logger.warning(
            f"Scheduling rediscovery of '{device.label}' in "
            f"{self.settings.rediscovery_base_delay:.0f} seconds"
        )
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    def cancel(self, device_key: str) -> None:
        if self._entries.pop(device_key, None) is None:
            return
        logger.debug(f"Cancelled rediscovery of {device_key}")
        if (
            not self._entries
            and self._task
            and not self._task.done()
            and self._task is not asyncio.current_task()
        ):
            self._task.cancel()

    def next_delay(self, entry: RediscoveryWaitEntry) -> float:
        """Jittered delay for an entry, never above the cap."""
        delay = entry.backoff_seconds * (1 + self._jitter())
        return min(delay, self.settings.rediscovery_max_delay)

    async def _run(self) -> None:
        while self._entries:
            delay = min(self.next_delay(e) for e in self._entries.values())
            await self._sleep(delay)
            if not self._entries:
                break
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Rediscovery pass failed: {e}")
        logger.debug("Rediscovery list empty, scheduler idle")

    async def run_once(self) -> list[str]:
        """One discovery pass; returns the keys of devices found again."""
        logger.debug(f"Running rediscovery for: {', '.join(self._entries)}")
        waiting = list(self._entries.values())
        recovered = []
        async for identity in self.engine.stream(self.settings.rediscovery_probe_timeout):
            entry = self._entries.pop(identity.urn, None)
            if entry is None:
                continue
            device = entry.device
            device.identity.update_from(identity)
            logger.info(f"Known device <{identity.urn} ({device.label})> rediscovered at {identity.ip}")
            recovered.append(entry.device_key)
            try:
                result = entry.callback(device)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Rediscovery callback failed for {device.label}: {e}")

        for entry in waiting:
            if self._entries.get(entry.device_key) is not entry:
                continue
            entry.backoff_seconds = min(
                entry.backoff_seconds * 2, self.settings.rediscovery_max_delay
            )
        return recovered

    async def stop(self) -> None:
        self._entries.clear()
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
