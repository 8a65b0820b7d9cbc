"""
roomrelay -- Relay service.

The outward-facing orchestrator.  Owns the store connection and composes
:class:`WatermarkSubscription` and :class:`FaultMonitor`.

State machine
-------------
    UNINITIALIZED --initialize()--> CONNECTING --ok--> READY
    CONNECTING    --connect fault-----------------> FAULTED
    READY         --monitor teardown--------------> FAULTED
    READY/FAULTED --shutdown()--> SHUTTING_DOWN --> TERMINATED
    FAULTED       --initialize()--> CONNECTING   (explicit reconnect only)

Events (observers are called synchronously, in registration order)::

    on_ready(room_code)     listening on the room
    on_message(payload)     one accepted entry
    on_fault(fault)         subscription torn down or connect failed;
                            ``fault`` is None when the live query simply
                            completed

Nothing raised inside the relay propagates to the embedder: failures turn
into log lines, a state transition and an ``on_fault`` notification.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from roomrelay.config.settings import RelaySettings
from roomrelay.events.entry import Entry, utc_now
from roomrelay.events.room_code import RoomCodeGenerator, normalize_room_code
from roomrelay.observability.metrics import RelayMetrics
from roomrelay.relay.monitor import FaultMonitor, MonitorOutcome
from roomrelay.relay.subscription import WatermarkSubscription
from roomrelay.store.base import ConnectFault, DocumentStore

logger = logging.getLogger(__name__)


class RelayState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    READY = "ready"
    FAULTED = "faulted"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


class EventHook:
    """Ordered list of observers for one relay event.

    An observer that raises is logged and skipped; the remaining observers
    still run.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._observers: list[Callable[..., Any]] = []

    def subscribe(self, observer: Callable[..., Any]) -> Callable[..., Any]:
        """Register *observer*.  Returns it, so this works as a decorator."""
        self._observers.append(observer)
        return observer

    def unsubscribe(self, observer: Callable[..., Any]) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def emit(self, *args: Any) -> None:
        for observer in list(self._observers):
            try:
                observer(*args)
            except Exception as exc:
                logger.error(
                    "Observer %r for %s raised: %s",
                    observer,
                    self.name,
                    exc,
                    exc_info=True,
                )

    def __len__(self) -> int:
        return len(self._observers)


class RelayService:
    """Room relay reader.

    Args:
        store: The :class:`DocumentStore` to relay through.  Owned by the
            service from :meth:`initialize` to :meth:`shutdown`.
        collection: Collection holding relay entries.
        room_code: Fixed room code; generated on first use when ``None``.
        room_codes: Generator used when no room code is fixed.
        verbose: Trace connection, batches and teardown at INFO.
        tick_interval: Seconds between fault-monitor ticks in :meth:`run`.
        metrics: Optional :class:`RelayMetrics`.
        clock: Source of "now" for the initial watermark.

    Usage::

        service = RelayService(store, room_code="ABCD")
        service.on_message.subscribe(print)
        await service.run(shutdown_event)
    """

    def __init__(
        self,
        store: DocumentStore,
        collection: str = "Messages",
        room_code: Optional[str] = None,
        room_codes: Optional[RoomCodeGenerator] = None,
        verbose: bool = False,
        tick_interval: float = 0.1,
        metrics: Optional[RelayMetrics] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store: DocumentStore = store
        self._collection: str = collection
        self._room_code: Optional[str] = (
            normalize_room_code(room_code) if room_code else None
        )
        self._room_codes: RoomCodeGenerator = room_codes or RoomCodeGenerator()
        self._verbose: bool = verbose
        self._tick_interval: float = tick_interval
        self._metrics: Optional[RelayMetrics] = metrics
        self._clock: Callable[[], datetime] = clock

        self._state: RelayState = RelayState.UNINITIALIZED
        self._subscription: Optional[WatermarkSubscription] = None
        self._monitor: FaultMonitor = FaultMonitor(verbose=verbose, metrics=metrics)
        self._last_fault: Optional[Exception] = None
        self._shutdown_event: asyncio.Event = asyncio.Event()

        self.on_ready: EventHook = EventHook("on_ready")
        self.on_message: EventHook = EventHook("on_message")
        self.on_fault: EventHook = EventHook("on_fault")

    @classmethod
    def from_settings(
        cls,
        store: DocumentStore,
        settings: RelaySettings,
        metrics: Optional[RelayMetrics] = None,
    ) -> RelayService:
        return cls(
            store,
            collection=settings.collection_name,
            room_code=settings.room_code,
            room_codes=RoomCodeGenerator(
                settings.room_code_alphabet, settings.room_code_length
            ),
            verbose=settings.verbose_logging,
            tick_interval=settings.tick_interval_seconds,
            metrics=metrics,
        )

    # -- properties ----------------------------------------------------------

    @property
    def room_code(self) -> str:
        """Current room code, generated on first access when unset."""
        if not self._room_code:
            self._room_code = self._room_codes.generate()
        return self._room_code

    @room_code.setter
    def room_code(self, value: str) -> None:
        self._room_code = normalize_room_code(value) if value else None

    @property
    def state(self) -> RelayState:
        return self._state

    @property
    def subscription(self) -> Optional[WatermarkSubscription]:
        return self._subscription

    @property
    def monitor(self) -> FaultMonitor:
        return self._monitor

    @property
    def last_fault(self) -> Optional[Exception]:
        return self._last_fault

    # -- lifecycle -----------------------------------------------------------

    async def initialize(self) -> bool:
        """Connect (replacing any prior connection) and start listening.

        Returns:
            True when the relay reached READY.
        """
        self._set_state(RelayState.CONNECTING)
        self._last_fault = None

        try:
            await self._teardown_store()
            # Live transport only -- never serve reads from a local snapshot
            self._store.persistence_enabled = False
            await self._store.connect()
        except Exception as exc:
            self._connect_failed(exc)
            return False

        room_code = self.room_code
        if self._verbose:
            logger.info("Ready code: [%s]", room_code)

        self._subscription = WatermarkSubscription(
            store=self._store,
            collection=self._collection,
            room_code=room_code,
            on_entry=self._deliver,
            metrics=self._metrics,
            verbose=self._verbose,
        )
        try:
            # Only read new messages (starting from now)
            await self._subscription.start(self._clock())
        except Exception as exc:
            self._subscription = None
            self._connect_failed(exc)
            return False

        self._set_state(RelayState.READY)
        logger.info(
            "Relay ready: room=%s collection=%s", room_code, self._collection
        )
        self.on_ready.emit(room_code)
        return True

    async def tick(self) -> MonitorOutcome:
        """One scheduler tick: poll the live query for termination."""
        if self._state is not RelayState.READY or self._subscription is None:
            return MonitorOutcome.IDLE

        outcome = await self._monitor.check(self._subscription)
        if outcome in (MonitorOutcome.COMPLETED, MonitorOutcome.FAULTED):
            self._last_fault = self._monitor.last_fault
            self._set_state(RelayState.FAULTED)
            logger.warning(
                "Relay for room %s stopped (%s); not reconnecting",
                self.room_code,
                outcome.value,
            )
            self.on_fault.emit(self._last_fault)
        return outcome

    async def run(self, shutdown_event: Optional[asyncio.Event] = None) -> None:
        """Initialise, then tick until *shutdown_event* is set, then shut down.

        A faulted relay keeps running (idle) until shutdown; it does not
        reconnect on its own.
        """
        event = shutdown_event if shutdown_event is not None else self._shutdown_event
        try:
            if self._state in (RelayState.UNINITIALIZED, RelayState.TERMINATED):
                await self.initialize()
            while not event.is_set():
                await self.tick()
                try:
                    await asyncio.wait_for(event.wait(), timeout=self._tick_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.shutdown()

    def request_shutdown(self) -> None:
        """Ask :meth:`run` (without an explicit event) to stop."""
        self._shutdown_event.set()

    async def shutdown(self) -> None:
        """Unsubscribe, then disconnect.  Safe to call more than once."""
        if self._state in (RelayState.TERMINATED, RelayState.SHUTTING_DOWN):
            return
        self._set_state(RelayState.SHUTTING_DOWN)

        if self._subscription is not None:
            try:
                await self._subscription.stop()
            except Exception as exc:
                logger.error("Error stopping subscription: %s", exc)
        try:
            await self._store.disconnect()
        except Exception as exc:
            logger.error("Error disconnecting store: %s", exc)

        self._set_state(RelayState.TERMINATED)
        logger.info("Relay for room %s shut down", self._room_code)

    # -- internals -----------------------------------------------------------

    async def _teardown_store(self) -> None:
        """Fully release any prior connection so no stale listener survives."""
        if self._subscription is not None:
            await self._subscription.stop()
            self._subscription = None
        if self._store.is_connected:
            await self._store.terminate()
            await self._store.clear_persistence()

    def _deliver(self, entry: Entry) -> None:
        self.on_message.emit(entry.payload)

    def _connect_failed(self, exc: Exception) -> None:
        fault = ConnectFault(type(self._store).__name__, exc)
        self._last_fault = fault
        logger.error("%s", fault, exc_info=exc)
        if self._metrics is not None:
            self._metrics.faults.labels(kind="connect").inc()
        self._set_state(RelayState.FAULTED)
        self.on_fault.emit(fault)

    def _set_state(self, state: RelayState) -> None:
        if state is not self._state:
            logger.debug("Relay state %s -> %s", self._state.value, state.value)
        self._state = state
        if self._metrics is not None:
            self._metrics.observe_state(state.value)
