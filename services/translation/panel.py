"""
Live translation of a meeting's chat.

The consumer attaches to the `message:<meeting-id>` feed, then translates the
existing messages from a snapshot. A DedupGuard keeps a message that arrives
through both paths from being translated twice, including the re-walk of
stored messages after the feed reconnects. Message bodies that parse as
JSON are call-signaling payloads, not chat, and are skipped.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from services.realtime.dedup import DedupGuard
from services.realtime.feed import ChangeFeed, FeedError, FeedState, Subscription
from services.realtime.models import ChangeEvent, MessageRow, Operation, get_resource
from services.realtime.snapshot import SnapshotLoader, SnapshotReader

from .client import FunctionError, FunctionErrorKind, FunctionsClient, TranslationResult

logger = logging.getLogger(__name__)

FAILED_PREFIX = "Translation failed: "


@dataclass
class TranslationSegment:
    id: str
    speaker: str
    original_text: str
    translated_text: str
    timestamp: datetime
    ok: bool = True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "speaker": self.speaker,
            "original_text": self.original_text,
            "translated_text": self.translated_text,
            "timestamp": self.timestamp.isoformat(),
            "ok": self.ok,
        }


def render_translation(result: TranslationResult) -> str:
    """Chat-panel rendering: failures are shown inline, never hidden."""
    if result.ok:
        return result.text
    return f"{FAILED_PREFIX}{result.error.message}"


def is_signaling(body: str) -> bool:
    try:
        json.loads(body)
    except (ValueError, TypeError):
        return False
    return True


class TranslationConsumer:
    def __init__(
        self,
        meeting_id: str,
        reader: SnapshotReader,
        feed: ChangeFeed,
        client: FunctionsClient,
        source_language: str = "en",
        target_language: str = "es",
        snapshot_timeout: Optional[float] = None,
        on_update: Optional[Callable[[List[TranslationSegment]], None]] = None,
    ):
        self.meeting_id = meeting_id
        self.feed = feed
        self.client = client
        self.source_language = source_language
        self.target_language = target_language
        self.on_update = on_update
        self.loader = SnapshotLoader(reader, timeout=snapshot_timeout)
        self.dedup = DedupGuard()
        self.segments: List[TranslationSegment] = []
        self.is_translating = False
        self.is_paused = False
        self.error: Optional[str] = None
        self._subscription: Optional[Subscription] = None
        self._feed_state: Optional[FeedState] = None
        self._catch_up: Optional[asyncio.Task] = None

    @property
    def attached(self) -> bool:
        return self._subscription is not None

    async def start(self) -> None:
        self.is_translating = True
        self.is_paused = False
        self.error = None
        self.dedup.clear()

        await self._attach()
        await self._backfill()
        logger.info(f"Real-time translation started for meeting {self.meeting_id}")

    async def _backfill(self) -> None:
        """Translate every stored message not yet seen."""
        result = await self.loader.load(get_resource("message"), self.meeting_id)
        if result.error:
            # live translation still runs without the backlog
            logger.error(f"Error fetching existing messages for {self.meeting_id}: {result.error}")
        for row in result.rows:
            if not self.is_translating or self.is_paused:
                break
            await self._handle(row)

    def _on_feed_state(self, state: FeedState) -> None:
        previous, self._feed_state = self._feed_state, state
        if state != FeedState.CONNECTED or previous != FeedState.RECONNECTING:
            return
        # messages published during the outage never reach the feed
        if self._catch_up is None or self._catch_up.done():
            self._catch_up = asyncio.create_task(self._backfill())
            self._catch_up.add_done_callback(self._catch_up_done)

    def _catch_up_done(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Catch-up for meeting {self.meeting_id} failed: {task.exception()}")

    async def pause(self) -> None:
        self.is_paused = True
        await self._detach()

    async def resume(self) -> None:
        self.is_paused = False
        if self.is_translating:
            await self._attach()

    async def stop(self) -> None:
        self.is_translating = False
        self.is_paused = False
        await self._detach()

    def set_languages(self, source_language: Optional[str] = None, target_language: Optional[str] = None) -> None:
        if source_language:
            self.source_language = source_language
        if target_language:
            self.target_language = target_language

    def export_text(self) -> str:
        return "\n\n".join(f"[{s.speaker}] {s.translated_text}" for s in self.segments)

    def clear(self) -> None:
        self.segments = []

    async def _attach(self) -> None:
        if self._subscription is not None:
            return
        try:
            self._subscription = await self.feed.subscribe(
                "message", self.meeting_id, self._on_event, on_state=self._on_feed_state
            )
        except FeedError as e:
            logger.error(f"Translation feed unavailable for {self.meeting_id}: {e}")
            self.error = str(e)

    async def _detach(self) -> None:
        catch_up, self._catch_up = self._catch_up, None
        if catch_up is not None and not catch_up.done():
            catch_up.cancel()
            try:
                await catch_up
            except asyncio.CancelledError:
                pass
        self._feed_state = None
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.unsubscribe()

    async def _on_event(self, event: ChangeEvent) -> None:
        if event.operation != Operation.INSERT:
            return
        if not self.is_translating or self.is_paused:
            return
        await self._handle(event.row)

    async def _handle(self, row: MessageRow) -> Optional[TranslationSegment]:
        if is_signaling(row.message):
            return None
        if not self.dedup.claim(row.id):
            return None

        try:
            result = await self.client.translate(
                self.meeting_id,
                row.message,
                self.source_language,
                self.target_language,
                speaker=row.user_name,
            )
        except Exception as e:
            logger.exception(f"Translation call failed for message {row.id}")
            error = FunctionError(FunctionErrorKind.HTTP_ERROR, str(e) or e.__class__.__name__)
            result = TranslationResult(row.message, self.source_language, self.target_language, error=error)
        segment = TranslationSegment(
            id=row.id,
            speaker=row.user_name,
            original_text=row.message,
            translated_text=render_translation(result),
            timestamp=row.timestamp,
            ok=result.ok,
        )
        self.segments.append(segment)
        if self.on_update:
            try:
                self.on_update(list(self.segments))
            except Exception:
                logger.exception(f"Translation update listener failed for {self.meeting_id}")
        return segment
