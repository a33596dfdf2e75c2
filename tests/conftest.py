import asyncio
import json
from collections import defaultdict

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError


class FakePubSub:
    """In-memory stand-in for redis.asyncio.client.PubSub."""

    def __init__(self, broker):
        self.broker = broker
        self.channels = set()
        self.queue = asyncio.Queue()
        self.closed = False

    async def subscribe(self, *channels):
        if self.broker.fail_subscribes > 0:
            self.broker.fail_subscribes -= 1
            raise RedisConnectionError("Error 111 connecting to redis:6379. Connection refused.")
        for channel in channels:
            self.channels.add(channel)
            self.broker.subscribers[channel].add(self)
            self.queue.put_nowait({"type": "subscribe", "channel": channel, "data": 1})

    async def unsubscribe(self, *channels):
        for channel in channels or list(self.channels):
            self.channels.discard(channel)
            self.broker.subscribers[channel].discard(self)

    async def aclose(self):
        await self.unsubscribe()
        self.closed = True
        self.queue.put_nowait(None)

    async def listen(self):
        while not self.closed:
            item = await self.queue.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item


class FakeRedis:
    def __init__(self):
        self.published = []
        self.subscribers = defaultdict(set)
        self.pubsubs = []
        self.fail_subscribes = 0

    def pubsub(self):
        p = FakePubSub(self)
        self.pubsubs.append(p)
        return p

    async def publish(self, channel, data):
        if not isinstance(data, str):
            data = json.dumps(data)
        self.published.append((channel, data))
        targets = list(self.subscribers[channel])
        for p in targets:
            p.queue.put_nowait({"type": "message", "channel": channel, "data": data})
        return len(targets)

    async def ping(self):
        return True

    async def aclose(self):
        for p in self.pubsubs:
            if not p.closed:
                await p.aclose()

    def drop_connections(self):
        for p in self.pubsubs:
            if not p.closed:
                p.queue.put_nowait(RedisConnectionError("Connection reset by peer"))

    def active_subscribers(self, channel):
        return len(self.subscribers[channel])


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    async def _run(self, kind, query, args):
        self.pool.queries.append((kind, query, args))
        if self.pool.delay:
            await asyncio.sleep(self.pool.delay)
        if self.pool.error is not None:
            raise self.pool.error

    async def fetch(self, query, *args):
        await self._run("fetch", query, args)
        return [dict(r) for r in self.pool.rows]

    async def fetchrow(self, query, *args):
        await self._run("fetchrow", query, args)
        result = self.pool.row
        return result(query, args) if callable(result) else result

    async def fetchval(self, query, *args):
        await self._run("fetchval", query, args)
        return 1


class _Acquire:
    def __init__(self, conn):
        self.conn = conn

    async def __aenter__(self):
        return self.conn

    async def __aexit__(self, *exc):
        return False


class FakePool:
    """Just enough of asyncpg.Pool for `async with pool.acquire() as conn`."""

    def __init__(self, rows=None, row=None):
        self.rows = list(rows or [])
        self.row = row
        self.error = None
        self.delay = 0.0
        self.queries = []

    def acquire(self):
        return _Acquire(FakeConnection(self))

    async def close(self):
        pass


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def fake_pool():
    return FakePool()


@pytest.fixture
def eventually():
    async def _wait(predicate, timeout=1.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.01)

    return _wait
