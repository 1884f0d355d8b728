"""Device lifecycle manager.

Owns every DeviceContext and wires discovery, capability queries, event
subscriptions, rediscovery and persistence together. This is the entry
point a hosting platform talks to.
"""

import logging
from typing import AsyncIterator, Callable, Optional

from onvifcam.config import Settings, get_settings
from onvifcam.services.client import ONVIFClient
from onvifcam.services.device import (
    Credentials,
    DeviceContext,
    DeviceIdentity,
    DeviceStatus,
    ServiceEndpoints,
)
from onvifcam.services.discovery import DiscoveryEngine, RediscoveryScheduler
from onvifcam.services.dispatcher import RequestDispatcher
from onvifcam.services.events import (
    DebounceTracker,
    EventCallback,
    EventSubscription,
    SubscriptionRecord,
)
from onvifcam.services.semaphore import Semaphore
from onvifcam.services.store import (
    DeviceStore,
    device_from_record,
    record_from_device,
    stale_subscription,
)

logger = logging.getLogger(__name__)


class DeviceManager:
    """Manages ONVIF devices and their event subscriptions.

    Example usage:
        manager = DeviceManager(on_liveness=print)
        async for identity in manager.discover_devices(timeout=5):
            device = await manager.add_device(identity)
            await manager.subscribe_events(device, on_event)
        ...
        await manager.stop()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        dispatcher: Optional[RequestDispatcher] = None,
        engine: Optional[DiscoveryEngine] = None,
        scheduler: Optional[RediscoveryScheduler] = None,
        store: Optional[DeviceStore] = None,
        on_event: Optional[EventCallback] = None,
        on_liveness: Optional[Callable[[DeviceContext, bool], None]] = None,
        on_status: Optional[Callable[[DeviceContext, DeviceStatus], None]] = None,
    ):
        """Initialize the manager.

        Args:
            settings: Engine settings, defaults to get_settings()
            dispatcher: Shared request dispatcher
            engine: Discovery engine
            scheduler: Rediscovery scheduler
            store: Device state store; built from state_directory when unset
            on_event: Event callback used for devices restored at start()
            on_liveness: Called with (device, online) on liveness transitions
            on_status: Called with (device, status) on status changes
        """
        self.settings = settings or get_settings()
        self.dispatcher = dispatcher or RequestDispatcher(settings=self.settings)
        self.client = ONVIFClient(self.dispatcher, self.settings)
        self.engine = engine or DiscoveryEngine(self.settings)
        self.scheduler = scheduler or RediscoveryScheduler(self.engine, self.settings)
        if store is None and self.settings.state_directory:
            store = DeviceStore(self.settings.state_directory)
        self.store = store
        self.on_event = on_event
        self.on_liveness = on_liveness
        self.on_status = on_status

        self.create_gate = Semaphore(self.settings.device_create_permits)
        self.event_gate = Semaphore(self.settings.event_permits)
        self.debounce = DebounceTracker(cooldown_seconds=self.settings.event_min_interval)

        self._devices: dict[str, DeviceContext] = {}
        self._subscriptions: dict[str, EventSubscription] = {}
        self._handlers: dict[str, EventCallback] = {}
        self._stale: dict[str, SubscriptionRecord] = {}

    @property
    def devices(self) -> list[DeviceContext]:
        return list(self._devices.values())

    def get(self, key: str) -> Optional[DeviceContext]:
        return self._devices.get(key)

    def subscription(self, device: DeviceContext) -> Optional[EventSubscription]:
        return self._subscriptions.get(device.key)

    # ------------------------------------------------------------------
    # Inbound interface
    # ------------------------------------------------------------------

    async def discover_devices(self, timeout: Optional[float] = None) -> AsyncIterator[DeviceIdentity]:
        """Yield devices found on the network; known devices are refreshed in place."""
        async for identity in self.engine.stream(timeout):
            known = self._devices.get(identity.urn)
            if known:
                known.identity.update_from(identity)
            yield identity

    async def add_device(
        self,
        identity: DeviceIdentity,
        credentials: Optional[Credentials] = None,
        label: Optional[str] = None,
    ) -> DeviceContext:
        """Register a device; adding a known URN returns the existing context."""
        async with self.create_gate.hold():
            existing = self._devices.get(identity.urn)
            if existing:
                existing.identity.update_from(identity)
                if credentials:
                    existing.credentials = credentials
                return existing

            credentials = credentials or Credentials(
                self.settings.default_username, self.settings.default_password
            )
            device = DeviceContext(identity, credentials, label)
            self._attach(device)
            logger.info(f"Device added: {device.label} ({device.key})")
            self._save(device)
            return device

    async def initialize_device(self, device: DeviceContext) -> Optional[ServiceEndpoints]:
        endpoints = await self.client.initialize(device)
        if endpoints is not None:
            self._save(device)
        return endpoints

    async def subscribe_events(self, device: DeviceContext, on_event: EventCallback) -> bool:
        """Subscribe to the device's events, initializing it first if needed."""
        self._handlers[device.key] = on_event
        if device.endpoints is None and await self.initialize_device(device) is None:
            return False
        if not device.endpoints.has_events:
            logger.warning(f"{device.label} has no usable event service")
            return False

        subscription = self._subscriptions.get(device.key)
        if subscription is None:
            subscription = EventSubscription(
                device,
                self.dispatcher,
                on_event,
                settings=self.settings,
                debounce=self.debounce,
                event_gate=self.event_gate,
            )
            self._subscriptions[device.key] = subscription
        else:
            subscription.on_event = on_event

        stale = self._stale.pop(device.key, None)
        if stale:
            await subscription.discard(stale)

        subscribed = await subscription.subscribe()
        self._save(device)
        return subscribed

    async def refresh(self, device: DeviceContext) -> bool:
        """Re-query capabilities and re-establish the subscription."""
        if await self.initialize_device(device) is None:
            return False
        subscription = self._subscriptions.get(device.key)
        if subscription is not None:
            subscribed = await subscription.subscribe()
            self._save(device)
            return subscribed
        handler = self._handlers.get(device.key)
        if handler is not None:
            return await self.subscribe_events(device, handler)
        return True

    async def teardown(self, device: DeviceContext) -> None:
        """Remove a device: cancel rediscovery, unsubscribe, forget state."""
        self.scheduler.cancel(device.key)
        subscription = self._subscriptions.pop(device.key, None)
        if subscription:
            await subscription.teardown()
        self._handlers.pop(device.key, None)
        self._stale.pop(device.key, None)
        self._devices.pop(device.key, None)
        if self.store:
            self.store.delete(device.key)
        logger.info(f"Device removed: {device.label}")

    def restore(self) -> list[DeviceContext]:
        """Rebuild device contexts from the state directory."""
        if not self.store:
            return []
        restored = []
        for record in self.store.load_all():
            if record.identity.urn in self._devices:
                continue
            device = device_from_record(record, self.settings.encryption_key)
            self._attach(device)
            stale = stale_subscription(record)
            if stale:
                self._stale[device.key] = stale
            restored.append(device)
        if restored:
            logger.info(f"Restored {len(restored)} device(s) from saved state")
        return restored

    async def start(self) -> list[DeviceContext]:
        """Restore saved devices and resubscribe them when an event callback is set."""
        logger.info("Starting ONVIF device manager...")
        restored = self.restore()
        if self.on_event is not None:
            for device in restored:
                await self.subscribe_events(device, self.on_event)
        return restored

    async def stop(self) -> None:
        """Tear down every subscription and release shared resources."""
        logger.info("Stopping ONVIF device manager...")
        await self.scheduler.stop()
        for key, subscription in list(self._subscriptions.items()):
            await subscription.teardown()
            device = self._devices.get(key)
            if device:
                self._save(device)
        self._subscriptions.clear()
        await self.dispatcher.close()
        await self.engine.close()
        logger.info("ONVIF device manager stopped")

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def _attach(self, device: DeviceContext) -> None:
        device.on_liveness = self._handle_liveness
        device.on_status = self._handle_status
        self._devices[device.key] = device

    def _handle_liveness(self, device: DeviceContext, online: bool) -> None:
        if self.on_liveness:
            self.on_liveness(device, online)
        if online:
            self.scheduler.cancel(device.key)
            return
        if device.identity.auto_discovered:
            self.scheduler.schedule(device, self._rediscovered)
        else:
            logger.info(f"Manual device {device.label} is offline; not rediscovering")

    def _handle_status(self, device: DeviceContext, status: DeviceStatus) -> None:
        logger.debug(f"Status of {device.label}: {status.value}")
        if self.on_status:
            self.on_status(device, status)

    async def _rediscovered(self, device: DeviceContext) -> None:
        if device.key not in self._devices:
            return
        logger.info(f"Re-initializing {device.label} at {device.identity.ip}")
        if await self.refresh(device):
            return
        # Still offline means no liveness transition will reschedule it
        if device.online is False and device.key in self._devices:
            self.scheduler.schedule(device, self._rediscovered)

    def _save(self, device: DeviceContext) -> None:
        if not self.store:
            return
        subscription = self._subscriptions.get(device.key)
        try:
            record = record_from_device(
                device,
                subscription.record if subscription else None,
                self.settings.encryption_key,
            )
            self.store.save(record)
        except OSError as e:
            logger.error(f"Failed to save state for {device.label}: {e}")
