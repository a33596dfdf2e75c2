"""
Realtime Service - live collections over Postgres snapshots and the Redis change feed
"""
import asyncio
import contextvars
import logging
import os
import time
import uuid
from typing import Any, Dict, Optional, Set

import asyncpg
import redis.asyncio as redis
from fastapi import Body, FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from slowapi import Limiter
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from tenacity import retry, stop_after_attempt, wait_exponential

from .collection import LiveCollection
from .config import settings
from .feed import ChangeFeed
from .models import RowBase, UnknownResourceError, get_resource
from .mutations import MutationResult, RowWriter
from .snapshot import SnapshotLoader, SnapshotReader

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")

# Rate limiting
limiter = Limiter(key_func=get_remote_address)

app = FastAPI(title="Realtime Service", version="1.0.0")
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Prometheus metrics
REQUEST_COUNT = Counter(
    "realtime_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "realtime_http_request_duration_seconds",
    "HTTP request latency in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)
ERROR_COUNT = Counter(
    "realtime_http_errors_total",
    "Total HTTP errors",
    ["type"],
)
HEALTH_GAUGE = Gauge(
    "realtime_dependency_up",
    "Health of dependencies (1 up, 0 down)",
    ["component"],
)
WS_CONNECTIONS = Gauge(
    "realtime_ws_connections",
    "Open WebSocket collection streams",
)


@app.middleware("http")
async def size_limit_and_timeout(request: Request, call_next):
    max_bytes = int(os.getenv("MAX_REQUEST_BYTES", "1048576"))
    cl = request.headers.get("content-length")
    if cl and cl.isdigit() and int(cl) > max_bytes:
        return JSONResponse(status_code=413, content={"error": "Request too large"})
    timeout_s = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "15"))
    try:
        return await asyncio.wait_for(call_next(request), timeout=timeout_s)
    except asyncio.TimeoutError:
        ERROR_COUNT.labels("timeout").inc()
        return JSONResponse(status_code=504, content={"error": "Request timed out"})


@app.middleware("http")
async def add_request_id_and_metrics(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request_id_var.set(request_id)
    start = time.perf_counter()
    response: Response = await call_next(request)
    elapsed = time.perf_counter() - start
    route_path = getattr(request.scope.get("route"), "path", request.url.path)
    REQUEST_COUNT.labels(request.method, route_path, str(response.status_code)).inc()
    REQUEST_LATENCY.observe(elapsed)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response: Response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "no-referrer"
    response.headers["Cross-Origin-Opener-Policy"] = "same-origin"
    response.headers["Cross-Origin-Resource-Policy"] = "same-site"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


@app.get("/metrics")
async def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError):
    ERROR_COUNT.labels("validation").inc()
    return JSONResponse(status_code=422, content={"error": "Validation error", "details": exc.errors(), "request_id": request_id_var.get()})


@app.exception_handler(UnknownResourceError)
async def handle_unknown_resource(request: Request, exc: UnknownResourceError):
    ERROR_COUNT.labels("unknown_resource").inc()
    return JSONResponse(status_code=404, content={"error": exc.args[0] if exc.args else "Unknown resource", "request_id": request_id_var.get()})


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception):
    ERROR_COUNT.labels("unhandled").inc()
    logger.exception(f"Unhandled error: {exc}")
    return JSONResponse(status_code=500, content={"error": "Internal server error", "request_id": request_id_var.get()})


# Global variables
redis_client = None
db_pool = None
change_feed: Optional[ChangeFeed] = None
snapshot_reader: Optional[SnapshotReader] = None
row_writer: Optional[RowWriter] = None
live_collections: Set[LiveCollection] = set()


@retry(reraise=True, stop=stop_after_attempt(5), wait=wait_exponential(multiplier=1, min=1, max=8))
async def _connect_redis():
    client = redis.from_url(settings.redis_url, decode_responses=True)
    await client.ping()
    return client


@retry(reraise=True, stop=stop_after_attempt(5), wait=wait_exponential(multiplier=1, min=1, max=8))
async def _connect_postgres():
    return await asyncpg.create_pool(settings.database_url, min_size=2, max_size=10)


@app.on_event("startup")
async def startup():
    global redis_client, db_pool, change_feed, snapshot_reader, row_writer
    degraded_ok = os.getenv("ALLOW_DEGRADED_STARTUP") == "1"
    try:
        redis_client = await _connect_redis()
    except Exception:
        if not degraded_ok:
            raise
        logger.warning("Redis unavailable after retries; starting Realtime in degraded mode")
        redis_client = None
    try:
        db_pool = await _connect_postgres()
    except Exception:
        if not degraded_ok:
            raise
        logger.warning("Postgres unavailable after retries; starting Realtime in degraded mode")
        db_pool = None

    if redis_client is not None:
        change_feed = ChangeFeed(
            redis_client,
            reconnect_attempts=settings.feed_reconnect_max_attempts,
            backoff_base=settings.feed_reconnect_base_seconds,
            backoff_max=settings.feed_reconnect_max_seconds,
        )
    if db_pool is not None:
        snapshot_reader = SnapshotReader(db_pool)
    if db_pool is not None and change_feed is not None:
        row_writer = RowWriter(db_pool, change_feed)
    logger.info("Realtime service started")


@app.on_event("shutdown")
async def shutdown():
    """Clean up connections"""
    if redis_client:
        await redis_client.aclose()
    if db_pool:
        await db_pool.close()


def _unavailable(component: str) -> JSONResponse:
    ERROR_COUNT.labels("unavailable").inc()
    return JSONResponse(status_code=503, content={"error": f"{component} unavailable", "request_id": request_id_var.get()})


def _mutation_response(result: MutationResult, status_code: int = 200):
    if result.error:
        return JSONResponse(status_code=400, content={"error": result.error, "request_id": request_id_var.get()})
    return JSONResponse(status_code=status_code, content={"data": _dump(result.data)})


def _dump(row: Optional[RowBase]) -> Optional[Dict[str, Any]]:
    return row.model_dump(mode="json") if row is not None else None


@app.get("/realtime/{resource}/{parent_id}")
async def get_snapshot(resource: str, parent_id: str):
    spec = get_resource(resource)
    if snapshot_reader is None:
        return _unavailable("Database")
    loader = SnapshotLoader(snapshot_reader, timeout=settings.snapshot_timeout_seconds)
    result = await loader.load(spec, parent_id)
    if result.error:
        return JSONResponse(status_code=502, content={"error": result.error, "request_id": request_id_var.get()})
    return {"resource": spec.name, "parent_id": parent_id, "rows": [_dump(r) for r in result.rows]}


@app.post("/realtime/{resource}")
@limiter.limit("60/minute")
async def create_row(request: Request, resource: str, payload: Dict[str, Any] = Body(...)):
    get_resource(resource)
    if row_writer is None:
        return _unavailable("Writer")
    return _mutation_response(await row_writer.insert(resource, payload), status_code=201)


@app.patch("/realtime/{resource}/{row_id}")
@limiter.limit("60/minute")
async def update_row(request: Request, resource: str, row_id: str, changes: Dict[str, Any] = Body(...)):
    get_resource(resource)
    if row_writer is None:
        return _unavailable("Writer")
    return _mutation_response(await row_writer.update(resource, row_id, changes))


@app.delete("/realtime/{resource}/{row_id}")
@limiter.limit("60/minute")
async def delete_row(request: Request, resource: str, row_id: str, parent_id: Optional[str] = None):
    get_resource(resource)
    if row_writer is None:
        return _unavailable("Writer")
    return _mutation_response(await row_writer.delete(resource, row_id, parent_id))


@app.get("/realtime/streams")
async def list_streams():
    """Live collections currently pushed over WebSockets"""
    return {"streams": [c.describe() for c in live_collections]}


@app.websocket("/ws/{resource}/{parent_id}")
async def collection_stream(websocket: WebSocket, resource: str, parent_id: str):
    """Push the live collection to the client on every change"""
    try:
        spec = get_resource(resource)
    except UnknownResourceError:
        await websocket.close(code=4404)
        return
    if snapshot_reader is None or change_feed is None:
        await websocket.close(code=1013)
        return

    await websocket.accept()
    WS_CONNECTIONS.inc()
    collection = LiveCollection(
        spec,
        parent_id,
        snapshot_reader,
        change_feed,
        resort=settings.reconciler_resort,
        snapshot_timeout=settings.snapshot_timeout_seconds,
    )

    sent_snapshot = False

    async def push(kind: str, rows):
        nonlocal sent_snapshot
        sent_snapshot = sent_snapshot or kind == "snapshot"
        await websocket.send_json({"type": kind, "rows": [_dump(r) for r in rows], "error": collection.error})

    # listen before starting so no change between snapshot and feed is missed
    collection.add_listener(push)
    live_collections.add(collection)
    try:
        await collection.start()
        if not sent_snapshot:
            # the snapshot failed; the client still gets the error
            await push("snapshot", collection.items)
        while True:
            # clients only send keepalives
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected for {spec.name}:{parent_id}")
    finally:
        live_collections.discard(collection)
        await collection.stop()
        WS_CONNECTIONS.dec()


@app.get("/health")
async def health_check():
    ok_redis = 0
    ok_db = 0
    try:
        if redis_client:
            pong = await redis_client.ping()
            ok_redis = 1 if pong else 0
    except Exception:
        ok_redis = 0
    try:
        if db_pool:
            async with db_pool.acquire() as conn:
                row = await conn.fetchval("SELECT 1")
                ok_db = 1 if row == 1 else 0
    except Exception:
        ok_db = 0
    HEALTH_GAUGE.labels("redis").set(ok_redis)
    HEALTH_GAUGE.labels("postgres").set(ok_db)
    overall = ok_redis and ok_db
    return {"status": "healthy" if overall else "degraded", "service": "realtime", "dependencies": {"redis": bool(ok_redis), "postgres": bool(ok_db)}}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
