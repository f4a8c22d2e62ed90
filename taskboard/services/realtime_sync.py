"""Real-time synchronization layer - debounced change notifications.

Each subscription listens to one table (optionally one change kind and a
``column=eq.value`` row filter). Raw changes arriving within the debounce
window collapse into a single ChangeEvent carrying the latest row images and
the number of changes folded into it. Events are pushed into an asyncio.Queue
that subscribers drain with ``await subscription.get()`` or ``async for``.

There is no replay: a subscriber that missed events (e.g. while disconnected)
re-fetches the full list after reconnecting.
"""

import asyncio
import itertools
from typing import Any, Callable, Optional, Union

from taskboard.models.events import ChangeEvent, ChangeKind, ConnectionState
from taskboard.services.repositories import ChangeFeed
from taskboard.utils.errors import StoreError
from taskboard.utils.logging import get_structured_logger

logger = get_structured_logger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 0.3

Predicate = Callable[[ChangeEvent], bool]

# Wakes iterators when a subscription is closed
_CLOSED = object()


class Subscription:
    """One debounced change stream."""

    def __init__(
        self,
        feed: ChangeFeed,
        name: str,
        table: str,
        kind: ChangeKind = ChangeKind.ALL,
        row_filter: Optional[str] = None,
        predicate: Optional[Predicate] = None,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        on_state_change: Optional[Callable[["Subscription"], None]] = None,
    ):
        self.feed = feed
        self.name = name
        self.table = table
        self.kind = kind
        self.row_filter = row_filter
        self.predicate = predicate
        self.debounce_seconds = debounce_seconds
        self.state = ConnectionState.DISCONNECTED
        self.error: Optional[str] = None
        self.closed = False
        self.delivered = 0

        self._on_state_change = on_state_change
        self._queue: asyncio.Queue = asyncio.Queue()
        self._pending: Optional[ChangeEvent] = None
        self._timer: Optional[asyncio.Task] = None
        self._handle: Any = None
        self._lock = asyncio.Lock()

    # Feed callbacks

    def _handle_change(self, kind: ChangeKind, new: dict, old: dict, commit_timestamp: Optional[str]) -> None:
        if self.closed:
            return

        coalesced = self._pending.coalesced + 1 if self._pending else 1
        event = ChangeEvent(
            table=self.table,
            kind=kind,
            new=new,
            old=old,
            commit_timestamp=commit_timestamp,
            coalesced=coalesced,
        )
        if self.predicate is not None and not self.predicate(event):
            return
        self._pending = event

        # Reset timer for this subscription
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().create_task(self._flush_after_delay())

    def _handle_status(self, state: ConnectionState, error: Optional[str]) -> None:
        if state == self.state and error == self.error:
            return
        self.state = state
        self.error = error
        if state == ConnectionState.ERROR:
            logger.warning("Subscription error", subscription=self.name, table=self.table, error=error)
        else:
            logger.info("Subscription state changed", subscription=self.name, table=self.table, state=state.value)
        if self._on_state_change is not None:
            self._on_state_change(self)

    async def _flush_after_delay(self) -> None:
        await asyncio.sleep(self.debounce_seconds)
        self._flush()

    def _flush(self) -> None:
        event = self._pending
        self._pending = None
        self._timer = None
        if event is None:
            return
        self.delivered += 1
        self._queue.put_nowait(event)
        logger.debug(
            "Change event delivered",
            subscription=self.name,
            table=self.table,
            kind=event.kind.value,
            coalesced=event.coalesced,
        )

    # Connection management

    async def _open(self) -> None:
        try:
            self._handle = await self.feed.open(
                self.name,
                self.table,
                self.kind,
                self.row_filter,
                self._handle_change,
                self._handle_status,
            )
        except StoreError as e:
            self._handle_status(ConnectionState.ERROR, str(e))
            raise

    async def _teardown(self) -> None:
        if self._handle is None:
            return
        handle, self._handle = self._handle, None
        try:
            await self.feed.close(handle)
        except StoreError as e:
            logger.warning("Failed to close subscription channel", subscription=self.name, error=str(e))

    async def connect(self) -> None:
        async with self._lock:
            if self._handle is None and not self.closed:
                await self._open()

    async def reconnect(self) -> None:
        """Tear down and re-open the channel. Safe to call repeatedly."""
        async with self._lock:
            if self.closed:
                return
            await self._teardown()
            await self._open()
        logger.info("Subscription reconnected", subscription=self.name, state=self.state.value)

    async def unsubscribe(self) -> None:
        async with self._lock:
            if self.closed:
                return
            self.closed = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._pending = None
            await self._teardown()
            self.state = ConnectionState.DISCONNECTED
            self._queue.put_nowait(_CLOSED)
        logger.info("Unsubscribed", subscription=self.name, delivered=self.delivered)

    # Consumption

    async def get(self, timeout: Optional[float] = None) -> ChangeEvent:
        """Wait for the next event.

        Raises:
            asyncio.TimeoutError: nothing arrived within ``timeout``
            StopAsyncIteration: the subscription was closed
        """
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            # Leave the marker for any other waiter
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item

    def pending_events(self) -> int:
        return self._queue.qsize()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        return await self.get()


class RealtimeSync:
    """Creates subscriptions over a change feed and tracks their connection state."""

    def __init__(self, feed: ChangeFeed, debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS):
        self.feed = feed
        self.debounce_seconds = debounce_seconds
        self.subscriptions: dict[str, Subscription] = {}
        self._ids = itertools.count(1)

    async def subscribe(
        self,
        table: str,
        kind: Union[str, ChangeKind] = ChangeKind.ALL,
        row_filter: Optional[str] = None,
        predicate: Optional[Predicate] = None,
        debounce_seconds: Optional[float] = None,
    ) -> Subscription:
        """Open a debounced subscription to ``table``."""
        kind = ChangeKind(kind)
        name = f"taskboard:{table}:{next(self._ids)}"
        subscription = Subscription(
            self.feed,
            name,
            table,
            kind=kind,
            row_filter=row_filter,
            predicate=predicate,
            debounce_seconds=self.debounce_seconds if debounce_seconds is None else debounce_seconds,
            on_state_change=self._state_changed,
        )
        self.subscriptions[name] = subscription
        try:
            await subscription.connect()
        except StoreError:
            self.subscriptions.pop(name, None)
            raise

        logger.info(
            "Subscribed to changes",
            subscription=name,
            table=table,
            kind=kind.value,
            row_filter=row_filter,
        )
        return subscription

    def _state_changed(self, subscription: Subscription) -> None:
        logger.debug("Sync state", subscription=subscription.name, aggregate_state=self.state.value)

    @property
    def state(self) -> ConnectionState:
        """ERROR if any subscription errored, CONNECTED if all are connected, else DISCONNECTED."""
        states = [s.state for s in self.subscriptions.values() if not s.closed]
        if ConnectionState.ERROR in states:
            return ConnectionState.ERROR
        if states and all(s == ConnectionState.CONNECTED for s in states):
            return ConnectionState.CONNECTED
        return ConnectionState.DISCONNECTED

    def states(self) -> dict[str, ConnectionState]:
        return {name: s.state for name, s in self.subscriptions.items()}

    async def reconnect(self, only_unhealthy: bool = True) -> None:
        """Re-open subscriptions; by default only those not currently connected."""
        for subscription in list(self.subscriptions.values()):
            if only_unhealthy and subscription.state == ConnectionState.CONNECTED:
                continue
            await subscription.reconnect()

    async def unsubscribe(self, subscription: Subscription) -> None:
        await subscription.unsubscribe()
        self.subscriptions.pop(subscription.name, None)

    async def close(self) -> None:
        for subscription in list(self.subscriptions.values()):
            await self.unsubscribe(subscription)

    async def __aenter__(self) -> "RealtimeSync":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()
