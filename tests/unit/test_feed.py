import json

import pytest

from services.realtime.feed import ChangeFeed, FeedError, FeedState
from services.realtime.models import ChangeEvent, CommentRow, Operation, RowRef

COMMENT = {
    "id": "c-1",
    "recording_id": "rec-1",
    "user_id": "u-1",
    "text": "Nice point",
    "created_at": "2024-05-01T12:00:00+00:00",
}


def make_feed(redis_client, attempts=3):
    return ChangeFeed(redis_client, reconnect_attempts=attempts, backoff_base=0.01, backoff_max=0.02)


@pytest.mark.asyncio
async def test_events_are_delivered_in_order(fake_redis, eventually):
    feed = make_feed(fake_redis)
    received = []
    sub = await feed.subscribe("comment", "rec-1", received.append)
    assert sub.channel == "comment:rec-1"
    assert sub.state == FeedState.CONNECTED

    row = CommentRow.model_validate(COMMENT)
    await feed.publish(ChangeEvent(Operation.INSERT, "comment", row), "rec-1")
    edited = row.model_copy(update={"text": "Edited"})
    await feed.publish(ChangeEvent(Operation.UPDATE, "comment", edited), "rec-1")
    ref = RowRef(id="c-1", resource="comment")
    await feed.publish(ChangeEvent(Operation.DELETE, "comment", ref, old=ref), "rec-1")

    await eventually(lambda: len(received) == 3)
    assert [e.operation for e in received] == [Operation.INSERT, Operation.UPDATE, Operation.DELETE]
    assert received[1].row.text == "Edited"
    assert received[2].old.id == "c-1"
    await sub.unsubscribe()


@pytest.mark.asyncio
async def test_other_parents_are_not_delivered(fake_redis, eventually):
    feed = make_feed(fake_redis)
    received = []
    sub = await feed.subscribe("comment", "rec-1", received.append)
    row = CommentRow.model_validate({**COMMENT, "recording_id": "rec-2"})
    await feed.publish(ChangeEvent(Operation.INSERT, "comment", row), "rec-2")
    await feed.publish(ChangeEvent(Operation.INSERT, "comment", CommentRow.model_validate(COMMENT)), "rec-1")
    await eventually(lambda: len(received) == 1)
    assert received[0].row.recording_id == "rec-1"
    await sub.unsubscribe()


@pytest.mark.asyncio
async def test_async_callbacks_are_awaited(fake_redis, eventually):
    feed = make_feed(fake_redis)
    received = []

    async def callback(event):
        received.append(event.row_id)

    sub = await feed.subscribe("comment", "rec-1", callback)
    await feed.publish(ChangeEvent(Operation.INSERT, "comment", CommentRow.model_validate(COMMENT)), "rec-1")
    await eventually(lambda: received == ["c-1"])
    await sub.unsubscribe()


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery_and_is_idempotent(fake_redis, eventually):
    feed = make_feed(fake_redis)
    received = []
    sub = await feed.subscribe("comment", "rec-1", received.append)
    await feed.publish(ChangeEvent(Operation.INSERT, "comment", CommentRow.model_validate(COMMENT)), "rec-1")
    await eventually(lambda: len(received) == 1)

    await sub.unsubscribe()
    await sub.unsubscribe()
    assert sub.state == FeedState.CLOSED
    assert fake_redis.active_subscribers("comment:rec-1") == 0

    await fake_redis.publish("comment:rec-1", json.dumps({"eventType": "INSERT", "new": {**COMMENT, "id": "c-2"}}))
    assert len(received) == 1


@pytest.mark.asyncio
async def test_malformed_messages_are_skipped(fake_redis, eventually):
    feed = make_feed(fake_redis)
    received = []
    sub = await feed.subscribe("comment", "rec-1", received.append)
    await fake_redis.publish("comment:rec-1", "{not json")
    await fake_redis.publish("comment:rec-1", json.dumps({"eventType": "INSERT", "new": {"id": "c-9"}}))
    await fake_redis.publish("comment:rec-1", json.dumps({"eventType": "INSERT", "new": COMMENT}))
    await eventually(lambda: len(received) == 1)
    assert received[0].row_id == "c-1"
    assert sub.state == FeedState.CONNECTED
    await sub.unsubscribe()


@pytest.mark.asyncio
async def test_callback_errors_do_not_stop_the_listener(fake_redis, eventually):
    feed = make_feed(fake_redis)
    seen = []

    def callback(event):
        seen.append(event.row_id)
        if len(seen) == 1:
            raise RuntimeError("consumer bug")

    sub = await feed.subscribe("comment", "rec-1", callback)
    await feed.publish(ChangeEvent(Operation.INSERT, "comment", CommentRow.model_validate(COMMENT)), "rec-1")
    await feed.publish(ChangeEvent(Operation.INSERT, "comment", CommentRow.model_validate({**COMMENT, "id": "c-2"})), "rec-1")
    await eventually(lambda: seen == ["c-1", "c-2"])
    await sub.unsubscribe()


@pytest.mark.asyncio
async def test_reconnects_after_dropped_connection(fake_redis, eventually):
    feed = make_feed(fake_redis)
    states = []
    received = []
    sub = await feed.subscribe("comment", "rec-1", received.append, on_state=states.append)

    fake_redis.fail_subscribes = 1
    fake_redis.drop_connections()
    await eventually(lambda: sub.state == FeedState.CONNECTED and FeedState.RECONNECTING in states)
    assert states[-3:] == [FeedState.DISCONNECTED, FeedState.RECONNECTING, FeedState.CONNECTED]

    await feed.publish(ChangeEvent(Operation.INSERT, "comment", CommentRow.model_validate(COMMENT)), "rec-1")
    await eventually(lambda: len(received) == 1)
    await sub.unsubscribe()
    assert states[-1] == FeedState.CLOSED


@pytest.mark.asyncio
async def test_gives_up_after_attempt_budget(fake_redis, eventually):
    feed = make_feed(fake_redis, attempts=2)
    sub = await feed.subscribe("comment", "rec-1", lambda e: None)
    fake_redis.fail_subscribes = 10
    fake_redis.drop_connections()
    await eventually(lambda: sub.error is not None)
    assert isinstance(sub.error, FeedError)
    assert sub.state == FeedState.DISCONNECTED
    await sub.unsubscribe()


@pytest.mark.asyncio
async def test_initial_subscribe_failure_raises_feed_error(fake_redis):
    fake_redis.fail_subscribes = 10
    feed = make_feed(fake_redis, attempts=2)
    with pytest.raises(FeedError) as exc:
        await feed.subscribe("comment", "rec-1", lambda e: None)
    assert exc.value.channel == "comment:rec-1"


@pytest.mark.asyncio
async def test_subscribe_requires_parent(fake_redis):
    with pytest.raises(ValueError):
        await make_feed(fake_redis).subscribe("comment", "", lambda e: None)
