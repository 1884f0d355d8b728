"""ONVIF event subscription lifecycle.

One EventSubscription per device owns the subscription record, the renewal
timer, and either a push listener (WS-BaseNotification) or a PullPoint
polling task. Parsed notifications are classified once into an EventKind and
handed to the caller as (topic, item name, item value) tuples.
"""

import asyncio
import inspect
import logging
import random
import socket
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from onvifcam.config import Settings, get_settings
from onvifcam.exceptions import ONVIFError, ProtocolFault, SubscriptionExpiredError
from onvifcam.services import soap
from onvifcam.services.device import DeliveryMode, DeviceContext, DeviceStatus, same_origin
from onvifcam.services.dispatcher import RequestDispatcher
from onvifcam.services.semaphore import Semaphore
from onvifcam.utils import parse_xsd_datetime, utc_now

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, str, str], Optional[Awaitable[None]]]


class EventKind(str, Enum):
    """Event families routed to the hosting platform."""

    MOTION = "motion"
    TAMPER = "tamper"
    LINE_CROSS = "line_cross"
    VISITOR = "visitor"


@dataclass(frozen=True)
class EventRule:
    kind: EventKind
    topic: str
    item: Optional[str] = None


EVENT_RULES = (
    EventRule(EventKind.MOTION, "RuleEngine/CellMotionDetector/Motion", "IsMotion"),
    EventRule(EventKind.MOTION, "VideoSource/MotionAlarm", "State"),
    EventRule(EventKind.TAMPER, "RuleEngine/TamperDetector/Tamper", "IsTamper"),
    EventRule(EventKind.TAMPER, "VideoSource/GlobalSceneChange", "State"),
    EventRule(EventKind.LINE_CROSS, "RuleEngine/LineDetector/Crossed", "ObjectId"),
    EventRule(EventKind.VISITOR, "RuleEngine/MyRuleDetector/Visitor", "State"),
)

OBJECT_TYPES = ("Person", "Vehicle", "Animal")


def normalize_topic(topic: str) -> str:
    """Drop namespace prefixes from every topic segment."""
    return "/".join(part.rpartition(":")[2] for part in topic.strip().split("/"))


def classify_topic(topic: str) -> Optional[EventRule]:
    """Resolve a topic path to its event rule, None for unsupported topics."""
    if not topic:
        return None
    normalized = normalize_topic(topic)
    for rule in EVENT_RULES:
        if rule.topic in normalized:
            return rule

    lowered = normalized.lower()
    if "visitor" in lowered or "doorbell" in lowered:
        return EventRule(EventKind.VISITOR, normalized)
    if "tamper" in lowered:
        return EventRule(EventKind.TAMPER, normalized)
    if "linecross" in lowered or "linedetector" in lowered:
        return EventRule(EventKind.LINE_CROSS, normalized)
    if "motion" in lowered:
        return EventRule(EventKind.MOTION, normalized)
    return None


@dataclass
class EventNotification:
    """One parsed NotificationMessage."""

    topic: str
    rule: Optional[EventRule]
    data: list[tuple[str, str]] = field(default_factory=list)
    source: list[tuple[str, str]] = field(default_factory=list)
    utc_time: Optional[datetime] = None
    property_operation: Optional[str] = None

    @property
    def kind(self) -> Optional[EventKind]:
        return self.rule.kind if self.rule else None

    @property
    def value(self) -> Optional[str]:
        """Value of the rule's data item, or the first data item."""
        if self.rule and self.rule.item:
            for name, value in self.data:
                if name == self.rule.item:
                    return value
        return self.data[0][1] if self.data else None

    @property
    def active(self) -> bool:
        value = (self.value or "").lower()
        if self.kind == EventKind.LINE_CROSS:
            # Line crossings carry an object id rather than a boolean
            return value not in ("", "false", "0")
        return value in ("true", "1")

    @property
    def object_type(self) -> Optional[str]:
        for _, value in self.data:
            for object_type in OBJECT_TYPES:
                if object_type in value:
                    return object_type
        return None

    def tuples(self) -> list[tuple[str, str, str]]:
        return [(self.topic, name, value) for name, value in self.data]


def _simple_items(node: Any) -> list[tuple[str, str]]:
    items = []
    for item in soap.as_list(soap.find(node, "SimpleItem")):
        attrs = soap.attributes_of(item)
        if "Name" in attrs:
            items.append((attrs["Name"], attrs.get("Value", "")))
    return items


def _parse_message(message: dict) -> Optional[EventNotification]:
    topic = soap.text_of(message.get("Topic"))
    if not topic:
        logger.error("Missing topic in event message")
        return None
    inner = soap.find(message, "Message", "Message") or soap.find(message, "Message") or {}
    attrs = soap.attributes_of(inner)
    return EventNotification(
        topic=topic,
        rule=classify_topic(topic),
        data=_simple_items(soap.find(inner, "Data")),
        source=_simple_items(soap.find(inner, "Source")),
        utc_time=parse_xsd_datetime(attrs.get("UtcTime")),
        property_operation=attrs.get("PropertyOperation"),
    )


def find_messages(node: Any) -> list[dict]:
    """Locate NotificationMessage-like entries anywhere below ``node``."""
    if isinstance(node, list):
        return [m for item in node for m in find_messages(item)]
    if not isinstance(node, dict):
        return []
    if "Topic" in node:
        return [node]
    if "NotificationMessage" in node:
        return [m for m in soap.as_list(node["NotificationMessage"]) if isinstance(m, dict)]
    return [
        m
        for key, child in node.items()
        if not key.startswith(("@", "#"))
        for m in find_messages(child)
    ]


def parse_notifications(payload: Union[str, bytes]) -> list[EventNotification]:
    """Parse a pushed Notify request body.

    Raises:
        ProtocolFault: If no XML or no event data can be found
    """
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="replace")
    start = payload.find("<?xml")
    if start < 0:
        raise ProtocolFault("XML header not found in event message")
    tree = soap.parse_xml(payload[start:])

    messages = soap.find(tree, "Envelope", "Body", "Notify", "NotificationMessage")
    if messages is not None:
        entries = [m for m in soap.as_list(messages) if isinstance(m, dict)]
    else:
        body = soap.find(tree, "Envelope", "Body")
        if body is None:
            raise ProtocolFault("No valid event data found in XML")
        logger.warning("Non-standard event format detected, using permissive parsing")
        entries = find_messages(body)

    notifications = []
    for entry in entries:
        notification = _parse_message(entry)
        if notification:
            notifications.append(notification)
    return notifications


def compute_renewal(
    termination: Optional[str],
    current: Optional[str],
    jitter: float,
    floor: float = 10.0,
) -> tuple[float, float]:
    """Seconds of remaining lifetime and the renewal delay.

    The lifetime is measured against the device's own CurrentTime so clock
    skew between host and device does not matter.

    Raises:
        SubscriptionExpiredError: If the delay would fall below ``floor``
    """
    expires = parse_xsd_datetime(termination)
    if expires is None:
        raise SubscriptionExpiredError("Missing termination time in subscription response")
    now = parse_xsd_datetime(current) or utc_now()
    lifetime = (expires - now).total_seconds()
    delay = lifetime - jitter
    if delay < floor:
        raise SubscriptionExpiredError(
            f"Subscription lifetime of {lifetime:.0f}s leaves no renewal window"
        )
    return lifetime, delay


@dataclass
class DebounceTracker:
    """Track event cooldowns per device/kind to drop repeated active events."""

    cooldown_seconds: float = 5.0
    clock: Callable[[], float] = time.monotonic
    _last_notified: dict[tuple[str, EventKind], float] = field(default_factory=dict)

    def should_notify(self, device_key: str, kind: EventKind) -> bool:
        """Check if enough time has passed since last notification."""
        last = self._last_notified.get((device_key, kind))
        if last is None:
            return True
        return self.clock() - last >= self.cooldown_seconds

    def mark_notified(self, device_key: str, kind: EventKind) -> None:
        self._last_notified[(device_key, kind)] = self.clock()

    def forget(self, device_key: str) -> None:
        for key in [k for k in self._last_notified if k[0] == device_key]:
            del self._last_notified[key]


def local_address_for(remote_ip: str) -> str:
    """Local interface address that routes to ``remote_ip``."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect((remote_ip, 80))
            return s.getsockname()[0]
    except OSError:
        return "127.0.0.1"


class EventListener:
    """Minimal HTTP endpoint receiving pushed notifications at POST /event."""

    def __init__(
        self,
        handler: Callable[[bytes], Awaitable[None]],
        advertise_host: str,
        bind_host: str = "0.0.0.0",
        read_timeout: float = 10.0,
        max_body: int = 1024 * 1024,
    ):
        self.handler = handler
        self.advertise_host = advertise_host
        self.bind_host = bind_host
        self.read_timeout = read_timeout
        self.max_body = max_body
        self.port: Optional[int] = None
        self._server: Optional[asyncio.AbstractServer] = None

    @property
    def uri(self) -> str:
        return f"http://{self.advertise_host}:{self.port}/event"

    @property
    def is_running(self) -> bool:
        return self._server is not None

    async def start(self) -> str:
        self._server = await asyncio.start_server(self._handle_client, self.bind_host, 0)
        self.port = self._server.sockets[0].getsockname()[1]
        logger.info(f"Event server listening on {self.bind_host}:{self.port}")
        return self.uri

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        logger.debug(f"Event server on port {self.port} closed")

    async def _read_request(self, reader: asyncio.StreamReader) -> Optional[bytes]:
        start_line = (await reader.readline()).decode("latin-1").strip()
        if not start_line.startswith("POST /event HTTP/1"):
            logger.error(f"Received unexpected start line: {start_line!r}")
            return None

        content_length = 0
        while True:
            line = (await reader.readline()).decode("latin-1")
            if line in ("\r\n", "\n", ""):
                break
            name, sep, value = line.partition(":")
            if not sep:
                logger.error("Received message has malformed headers")
                return None
            if name.strip().lower() == "content-length":
                try:
                    content_length = int(value.strip())
                except ValueError:
                    logger.error(f"Bad Content-Length: {value.strip()!r}")
                    return None

        if content_length <= 0:
            return None
        if content_length > self.max_body:
            logger.error(f"Event message too large: {content_length} bytes")
            return None
        return await reader.readexactly(content_length)

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            body = await asyncio.wait_for(self._read_request(reader), self.read_timeout)
            if body is None:
                writer.write(b"HTTP/1.1 400 Bad Request\r\nContent-Length: 0\r\nConnection: close\r\n\r\n")
                await writer.drain()
                return
            writer.write(b"HTTP/1.1 200 OK\r\nContent-Length: 0\r\nConnection: close\r\n\r\n")
            await writer.drain()
            await self.handler(body)
        except (asyncio.TimeoutError, asyncio.IncompleteReadError, ConnectionError) as e:
            logger.error(f"Event message receive failed: {type(e).__name__}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass


class SubscriptionState(str, Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    SUBSCRIBED = "subscribed"
    RENEWING = "renewing"
    RESUBSCRIBING = "resubscribing"


@dataclass
class SubscriptionRecord:
    """The live subscription of one device."""

    reference_address: str
    subscription_id: Optional[str] = None
    subscription_id_attributes: dict[str, str] = field(default_factory=dict)
    reference_parameters: dict[str, tuple[str, dict[str, str]]] = field(default_factory=dict)
    expiry: Optional[datetime] = None
    renewal_handle: Optional[asyncio.Task] = None
    vendor_resubscribe_required: bool = False
    cross_origin: bool = False
    mode: DeliveryMode = DeliveryMode.PUSH

    @property
    def resubscribe_required(self) -> bool:
        return self.vendor_resubscribe_required or self.cross_origin

    def cancel_renewal(self) -> None:
        handle = self.renewal_handle
        self.renewal_handle = None
        if handle and not handle.done() and handle is not asyncio.current_task():
            handle.cancel()

    def addressing(self, operation: str) -> str:
        return soap.addressing_header(
            self.reference_address, operation, self.reference_parameters
        )


def _reference_parameters(reference: Any) -> dict[str, tuple[str, dict[str, str]]]:
    params = soap.find(reference, "ReferenceParameters")
    result: dict[str, tuple[str, dict[str, str]]] = {}
    if not isinstance(params, dict):
        return result
    for name, value in params.items():
        if name.startswith(("@", "#")):
            continue
        node = soap.as_list(value)[0] if soap.as_list(value) else None
        attrs = {
            k: v for k, v in soap.attributes_of(node).items() if k != "IsReferenceParameter"
        }
        result[name] = (soap.text_of(node) or "", attrs)
    return result


class EventSubscription:
    """Subscription lifecycle for one device.

    Example usage:
        subscription = EventSubscription(device, dispatcher, on_event)
        if await subscription.subscribe():
            ...
        await subscription.teardown()
    """

    def __init__(
        self,
        device: DeviceContext,
        dispatcher: RequestDispatcher,
        on_event: EventCallback,
        settings: Optional[Settings] = None,
        debounce: Optional[DebounceTracker] = None,
        event_gate: Optional[Semaphore] = None,
        jitter: Callable[[int, int], float] = random.randint,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.device = device
        self.dispatcher = dispatcher
        self.on_event = on_event
        self.settings = settings or get_settings()
        self.debounce = debounce or DebounceTracker(self.settings.event_min_interval)
        self.event_gate = event_gate
        self._jitter = jitter
        self._sleep = sleep

        self.state = SubscriptionState.UNSUBSCRIBED
        self.record: Optional[SubscriptionRecord] = None
        self.listener: Optional[EventListener] = None
        self.pull_failures = 0
        self._pull_task: Optional[asyncio.Task] = None
        # Serializes subscribe, renew and teardown for this device
        self._lock = Semaphore(1)

    @property
    def is_subscribed(self) -> bool:
        return self.state == SubscriptionState.SUBSCRIBED and self.record is not None

    def supported_topics(self) -> list[str]:
        """Advertised topics that map to a supported event kind."""
        endpoints = self.device.endpoints
        if not endpoints:
            return []
        return [
            f"tns1:{topic}"
            for topic in endpoints.event_topics
            if topic.startswith(("RuleEngine/", "VideoSource/")) and classify_topic(topic)
        ]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def subscribe(self) -> bool:
        """Create the subscription, superseding any previous one."""
        async with self._lock.hold():
            return await self._subscribe(SubscriptionState.SUBSCRIBING)

    async def refresh(self) -> bool:
        """Renew, or resubscribe when the device cannot renew."""
        async with self._lock.hold():
            record = self.record
            if record is None:
                return await self._subscribe(SubscriptionState.SUBSCRIBING)
            if record.resubscribe_required:
                logger.debug(f"Resubscribing {self.device.label} instead of renewing")
                return await self._subscribe(SubscriptionState.RESUBSCRIBING)
            return await self._renew(record)

    async def teardown(self) -> None:
        """Unsubscribe best-effort and release listener and timers."""
        async with self._lock.hold():
            record = self.record
            self.record = None
            self._stop_pull()
            if record:
                record.cancel_renewal()
                await self._unsubscribe(record)
            await self._close_listener()
            self.debounce.forget(self.device.key)
            self.state = SubscriptionState.UNSUBSCRIBED
            logger.info(f"Event subscription shut down for {self.device.label}")

    async def discard(self, stale: SubscriptionRecord) -> None:
        """Unsubscribe a record left over from a previous run."""
        async with self._lock.hold():
            logger.info(f"Removing stale subscription of {self.device.label}")
            await self._unsubscribe(stale)

    async def _subscribe(self, state: SubscriptionState) -> bool:
        device = self.device
        endpoints = device.endpoints
        if not endpoints or not endpoints.has_events:
            logger.error(f"No event service known for {device.label}; cannot subscribe")
            return False

        self.state = state
        previous = self.record
        if previous:
            # Supersede: never keep two live records for a device
            self.record = None
            previous.cancel_renewal()
            await self._unsubscribe(previous)

        mode = device.delivery_mode
        logger.info(f"Subscribing to events for {device.label} ({mode.value})")
        try:
            payload = await self._create(mode, self.supported_topics())
            record = self._record_from(payload, mode)
        except ONVIFError as e:
            logger.error(f"Subscription failed for {device.label}: {e}")
            return await self._fail()

        try:
            lifetime, delay = compute_renewal(
                soap.text_of(soap.find(payload, "TerminationTime")),
                soap.text_of(soap.find(payload, "CurrentTime")),
                self._jitter(self.settings.renew_jitter_min, self.settings.renew_jitter_max),
                self.settings.renew_floor,
            )
        except ONVIFError as e:
            logger.error(f"Subscription failed for {device.label}: {e}")
            # The device holds the subscription even though it is unusable
            await self._unsubscribe(record)
            return await self._fail()

        self.record = record
        self._schedule_renewal(delay)
        self.state = SubscriptionState.SUBSCRIBED
        device.set_status(DeviceStatus.SUBSCRIBED)
        logger.info(
            f"Subscribed to events for {device.label}: duration {lifetime / 60:.1f} minutes, "
            f"ref address {record.reference_address}"
        )
        if mode == DeliveryMode.PULL:
            self._start_pull()
        return True

    async def _create(self, mode: DeliveryMode, topics: list[str]) -> dict:
        endpoints = self.device.endpoints
        termination = soap.seconds_to_duration(self.settings.subscribe_duration)
        listen_uri = None
        if mode == DeliveryMode.PUSH:
            listen_uri = await self._ensure_listener()
            operation, response_name = "Subscribe", "SubscribeResponse"
        else:
            operation = "CreatePullPointSubscription"
            response_name = "CreatePullPointSubscriptionResponse"

        def body(filter_topics: list[str]) -> str:
            if listen_uri:
                return soap.subscribe(listen_uri, termination, filter_topics)
            return soap.create_pull_point_subscription(termination, filter_topics)

        try:
            response = await self.dispatcher.send(
                self.device, operation, endpoints.event_service_address, body(topics)
            )
        except ProtocolFault as e:
            if not topics:
                raise
            logger.warning(f"{self.device.label} rejected topic filter ({e}); subscribing unfiltered")
            response = await self.dispatcher.send(
                self.device, operation, endpoints.event_service_address, body([])
            )

        payload = soap.find(response.body, response_name)
        if not isinstance(payload, dict):
            raise ProtocolFault(f"Missing {response_name} in reply")
        return payload

    def _record_from(self, payload: dict, mode: DeliveryMode) -> SubscriptionRecord:
        reference = soap.find(payload, "SubscriptionReference")
        address = soap.text_of(soap.find(reference, "Address"))
        if not address:
            raise ProtocolFault("Subscription response missing reference address")
        params = _reference_parameters(reference)
        subscription_id, id_attributes = params.get("SubscriptionId", (None, {}))
        if subscription_id:
            logger.debug(f"Found subscription id [{subscription_id}], attr: {id_attributes or 'none'}")

        endpoints = self.device.endpoints
        return SubscriptionRecord(
            reference_address=address,
            subscription_id=subscription_id,
            subscription_id_attributes=dict(id_attributes),
            reference_parameters=params,
            expiry=parse_xsd_datetime(soap.text_of(soap.find(payload, "TerminationTime"))),
            vendor_resubscribe_required=endpoints.vendor_resubscribe_required,
            cross_origin=not same_origin(address, endpoints.event_service_address),
            mode=mode,
        )

    async def _renew(self, record: SubscriptionRecord) -> bool:
        device = self.device
        self.state = SubscriptionState.RENEWING
        try:
            response = await self.dispatcher.send(
                device,
                "Renew",
                record.reference_address,
                soap.renew(soap.seconds_to_duration(self.settings.subscribe_duration)),
                header=record.addressing("Renew"),
            )
            payload = soap.find(response.body, "RenewResponse") or {}
            lifetime, delay = compute_renewal(
                soap.text_of(soap.find(payload, "TerminationTime")),
                soap.text_of(soap.find(payload, "CurrentTime")),
                self._jitter(self.settings.renew_jitter_min, self.settings.renew_jitter_max),
                self.settings.renew_floor,
            )
        except ONVIFError as e:
            logger.warning(f"Subscription renewal failed for {device.label}: {e}")
            if device.online is False:
                # Rediscovery will rebuild the subscription
                self.record = None
                record.cancel_renewal()
                return await self._fail()
            return await self._subscribe(SubscriptionState.RESUBSCRIBING)

        record.expiry = parse_xsd_datetime(soap.text_of(soap.find(payload, "TerminationTime")))
        self._schedule_renewal(delay)
        self.state = SubscriptionState.SUBSCRIBED
        logger.info(f"Renewed subscription for {device.label}: duration {lifetime / 60:.1f} minutes")
        return True

    async def _unsubscribe(self, record: SubscriptionRecord) -> None:
        try:
            await self.dispatcher.send(
                self.device,
                "Unsubscribe",
                record.reference_address,
                soap.unsubscribe(),
                header=record.addressing("Unsubscribe"),
            )
            logger.debug(f"Unsubscribed {self.device.label} from {record.reference_address}")
        except ONVIFError as e:
            logger.warning(f"Unsubscribe failed for {self.device.label}: {e}")

    def _schedule_renewal(self, delay: float) -> None:
        record = self.record
        record.cancel_renewal()
        logger.debug(f"Scheduling subscription renewal for {self.device.label} in {delay:.0f}s")
        record.renewal_handle = asyncio.create_task(self._renew_after(delay))

    async def _renew_after(self, delay: float) -> None:
        await self._sleep(delay)
        await self.refresh()

    async def _release(self) -> None:
        self._stop_pull()
        await self._close_listener()

    async def _fail(self) -> bool:
        await self._release()
        self.state = SubscriptionState.UNSUBSCRIBED
        self.device.set_status(DeviceStatus.UNSUBSCRIBED)
        return False

    # ------------------------------------------------------------------
    # Push delivery
    # ------------------------------------------------------------------

    async def _ensure_listener(self) -> str:
        if self.listener and self.listener.is_running:
            return self.listener.uri
        host = self.settings.event_listen_host or local_address_for(self.device.identity.ip)
        self.listener = EventListener(self._on_push, advertise_host=host)
        return await self.listener.start()

    async def _close_listener(self) -> None:
        if self.listener:
            await self.listener.stop()
            self.listener = None

    async def _on_push(self, body: bytes) -> None:
        try:
            notifications = parse_notifications(body)
        except ProtocolFault as e:
            logger.error(f"Bad event message from {self.device.label}: {e}")
            return
        logger.debug(f"Received {len(notifications)} event message(s) for {self.device.label}")
        await self.deliver(notifications)

    # ------------------------------------------------------------------
    # Pull delivery
    # ------------------------------------------------------------------

    def _start_pull(self) -> None:
        self._stop_pull()
        self.pull_failures = 0
        self._pull_task = asyncio.create_task(self._pull_loop())

    def _stop_pull(self) -> None:
        task = self._pull_task
        self._pull_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def pull_once(self) -> bool:
        """One PullMessages round; False when the pull failed."""
        record = self.record
        if record is None:
            return False
        try:
            response = await self.dispatcher.send(
                self.device,
                "PullMessages",
                record.reference_address,
                soap.pull_messages(
                    soap.seconds_to_duration(self.settings.pull_timeout),
                    self.settings.pull_message_limit,
                ),
                timeout=self.settings.pull_timeout + self.settings.request_timeout,
                header=record.addressing("PullMessages"),
            )
        except ONVIFError as e:
            logger.warning(f"PullMessages failed for {self.device.label}: {e}")
            return False

        payload = soap.find(response.body, "PullMessagesResponse")
        if not isinstance(payload, dict):
            logger.warning(f"Empty PullMessages response from {self.device.label}")
            return False
        notifications = [
            n
            for n in (_parse_message(m) for m in find_messages(payload))
            if n is not None
        ]
        await self.deliver(notifications)
        return True

    async def _pull_loop(self) -> None:
        threshold = self.settings.pull_failure_threshold
        while self.record is not None:
            await self._sleep(self.settings.pull_interval)
            if await self.pull_once():
                self.pull_failures = 0
                continue
            self.pull_failures += 1
            if self.pull_failures >= threshold:
                logger.error(
                    f"{self.pull_failures} failed pulls for {self.device.label}; "
                    "re-establishing subscription"
                )
                await self._restart()
                return

    async def _restart(self) -> None:
        async with self._lock.hold():
            previous = self.record
            self.record = None
            if previous:
                previous.cancel_renewal()
                await self._unsubscribe(previous)
            await self._subscribe(SubscriptionState.RESUBSCRIBING)

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    async def deliver(self, notifications: list[EventNotification]) -> None:
        for notification in notifications:
            if self.event_gate is not None:
                async with self.event_gate.hold():
                    await self._route(notification)
            else:
                await self._route(notification)

    async def _route(self, notification: EventNotification) -> None:
        label = self.device.label
        kind = notification.kind
        if kind is None:
            logger.warning(f"Received message for {label} ignored (topic={notification.topic})")
            return
        if notification.active:
            if not self.debounce.should_notify(self.device.key, kind):
                logger.info(f"{kind.value} event for {label} ignored due to min interval")
                return
            self.debounce.mark_notified(self.device.key, kind)
        logger.info(f"{kind.value} notification for {label}: value={notification.value}")

        for topic, name, value in notification.tuples():
            try:
                result = self.on_event(topic, name, value)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Event callback failed for {label}: {e}")
