"""
Live collections: a snapshot-seeded, feed-maintained view of one resource
under one parent (the rows of a meeting's chat, a recording's highlights,
a workspace's departments, ...).

    col = LiveCollection("highlight", recording_id, reader, feed)
    await col.start()      # snapshot, then attach the change feed
    col.items              # current rows
    await col.stop()       # detach; no further updates
"""
import asyncio
import inspect
import logging
from typing import Awaitable, Callable, List, Optional, Union

from .feed import ChangeFeed, FeedError, FeedState, Subscription
from .models import ChangeEvent, ResourceSpec, RowBase, get_resource
from .reconciler import Reconciler, order_key
from .snapshot import SnapshotLoader, SnapshotReader

logger = logging.getLogger(__name__)

# listener(kind, rows) with kind in {"snapshot", "change"}
Listener = Callable[[str, List[RowBase]], Union[None, Awaitable[None]]]


class LiveCollection:
    def __init__(
        self,
        resource: Union[str, ResourceSpec],
        parent_id: Optional[str],
        reader: SnapshotReader,
        feed: ChangeFeed,
        resort: bool = False,
        snapshot_timeout: Optional[float] = None,
    ):
        self.spec = resource if isinstance(resource, ResourceSpec) else get_resource(resource)
        self.parent_id = parent_id
        self.feed = feed
        self.loader = SnapshotLoader(reader, timeout=snapshot_timeout)
        self.reconciler = Reconciler(
            sort_key=order_key(self.spec.order_column) if resort else None,
            singleton=self.spec.singleton,
        )
        self.error: Optional[str] = None
        self.feed_state: Optional[FeedState] = None
        self.subscription: Optional[Subscription] = None
        self._listeners: List[Listener] = []
        self._feed_error: Optional[str] = None
        self._started = False
        self._resync: Optional[asyncio.Task] = None
        self._in_flight: Optional[List[ChangeEvent]] = None

    @property
    def items(self) -> List[RowBase]:
        return self.reconciler.items

    @property
    def loading(self) -> bool:
        return self.loader.loading

    @property
    def started(self) -> bool:
        return self._started

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a callable that removes it."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def _notify(self, kind: str) -> None:
        rows = self.items
        for listener in list(self._listeners):
            try:
                result = listener(kind, rows)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Listener failed on {self.spec.name}:{self.parent_id}")

    async def refresh(self) -> bool:
        """Re-run the snapshot. On failure the current rows are kept.

        Events delivered while the read is in flight are replayed on top of
        the new snapshot, so a refresh never rolls back a live change.
        """
        self._in_flight = []
        try:
            result = await self.loader.load(self.spec, self.parent_id)
        finally:
            in_flight, self._in_flight = self._in_flight, None
        if result.error is not None:
            self.error = result.error
            return False
        if not result.fetched:
            return True
        self.reconciler.replace_all(result.rows)
        for event in in_flight:
            self.reconciler.apply(event)
        self.error = None
        await self._notify("snapshot")
        return True

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        if not self.parent_id:
            # nothing to load or subscribe to
            return
        await self.refresh()
        if not self.spec.live:
            return
        try:
            self.subscription = await self.feed.subscribe(
                self.spec, self.parent_id, self._on_event, on_state=self._on_feed_state
            )
        except FeedError as e:
            logger.error(f"Live {self.spec.name} collection for {self.parent_id} has no feed: {e}")
            self._feed_error = str(e)
            self.error = self._feed_error

    async def _on_event(self, event: ChangeEvent) -> None:
        if not self._started:
            return
        if self._in_flight is not None:
            self._in_flight.append(event)
        self.reconciler.apply(event)
        await self._notify("change")

    def _on_feed_state(self, state: FeedState) -> None:
        previous, self.feed_state = self.feed_state, state
        sub = self.subscription
        if state == FeedState.DISCONNECTED and sub is not None and sub.error:
            self._feed_error = str(sub.error)
            self.error = self._feed_error
        elif state == FeedState.CONNECTED and self._feed_error:
            # snapshot errors are only cleared by refresh()
            if self.error == self._feed_error:
                self.error = None
            self._feed_error = None
        if state == FeedState.CONNECTED and previous == FeedState.RECONNECTING:
            # pub/sub drops whatever was published while we were away
            self._schedule_resync()

    def _schedule_resync(self) -> None:
        if self._resync is not None and not self._resync.done():
            return
        self._resync = asyncio.create_task(self.refresh())
        self._resync.add_done_callback(self._resync_done)

    def _resync_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Resync of {self.spec.name}:{self.parent_id} failed: {exc}")
        elif task.result():
            logger.info(f"Resynced {self.spec.name}:{self.parent_id} after reconnect")

    async def stop(self) -> None:
        self._started = False
        resync, self._resync = self._resync, None
        if resync is not None and not resync.done():
            resync.cancel()
            try:
                await resync
            except asyncio.CancelledError:
                pass
        subscription, self.subscription = self.subscription, None
        if subscription is not None:
            await subscription.unsubscribe()

    async def switch(self, parent_id: Optional[str]) -> None:
        """Re-point the collection at another parent, starting from scratch."""
        await self.stop()
        self.parent_id = parent_id
        self.reconciler.clear()
        self.error = None
        self._feed_error = None
        await self.start()

    def describe(self) -> dict:
        return {
            "resource": self.spec.name,
            "parent_id": self.parent_id,
            "loading": self.loading,
            "error": self.error,
            "feed_state": self.feed_state.value if self.feed_state else None,
            "count": len(self.reconciler),
            "ids": self.reconciler.ids(),
        }

    def __repr__(self) -> str:
        return f"<LiveCollection {self.spec.name}:{self.parent_id} rows={len(self.reconciler)}>"
