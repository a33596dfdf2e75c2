import json

import pytest

from services.realtime.collection import LiveCollection
from services.realtime.feed import ChangeFeed
from services.realtime.mutations import RowWriter
from services.realtime.snapshot import SnapshotReader
from services.translation.panel import TranslationConsumer
from services.translation.client import TranslationResult


def echo_insert(query, args):
    columns = query.split("(", 1)[1].split(")", 1)[0].split(", ")
    return dict(zip(columns, args))


class EchoTranslator:
    async def translate(self, meeting_id, text, source_language, target_language, speaker=None):
        return TranslationResult(text.upper(), source_language, target_language)


@pytest.mark.asyncio
async def test_writer_event_shape(fake_pool, fake_redis):
    fake_pool.row = echo_insert
    writer = RowWriter(fake_pool, ChangeFeed(fake_redis))
    await writer.insert("highlight", {
        "recording_id": "rec-1",
        "user_id": "u-1",
        "title": "Decision made",
        "start_time": 12.5,
        "end_time": 20.0,
        "type": "decision",
    })

    channel, data = fake_redis.published[0]
    assert channel == "highlight:rec-1"
    payload = json.loads(data)
    assert set(payload) == {"eventType", "resource", "new", "old", "commit_ts"}
    assert payload["resource"] == "highlight"
    assert payload["new"]["type"] == "decision"
    assert payload["old"] == {}


@pytest.mark.asyncio
async def test_writer_events_reach_live_collection(fake_pool, fake_redis, eventually):
    feed = ChangeFeed(fake_redis)
    collection = LiveCollection("comment", "rec-1", SnapshotReader(fake_pool), feed)
    await collection.start()

    fake_pool.row = echo_insert
    writer = RowWriter(fake_pool, feed)
    created = await writer.insert("comment", {
        "recording_id": "rec-1",
        "user_id": "u-1",
        "text": "Nice point",
        "created_at": "2024-05-01T10:00:00+00:00",
    })
    await eventually(lambda: len(collection.items) == 1)
    assert collection.items[0].id == created.data.id

    fake_pool.row = {"id": created.data.id, "recording_id": "rec-1"}
    await writer.delete("comment", created.data.id)
    await eventually(lambda: collection.items == [])
    await collection.stop()


@pytest.mark.asyncio
async def test_chat_messages_reach_translation_consumer(fake_pool, fake_redis, eventually):
    feed = ChangeFeed(fake_redis)
    consumer = TranslationConsumer("m-1", SnapshotReader(fake_pool), feed, EchoTranslator())
    await consumer.start()

    fake_pool.row = echo_insert
    await RowWriter(fake_pool, feed).insert("message", {
        "meeting_id": "m-1",
        "user_id": "u-1",
        "user_name": "Ana",
        "message": "ship it",
        "timestamp": "2024-05-01T10:00:00+00:00",
    })
    await eventually(lambda: len(consumer.segments) == 1)
    assert consumer.segments[0].translated_text == "SHIP IT"
    await consumer.stop()
