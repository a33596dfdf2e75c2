"""
Translation Service - live meeting chat translation and summary passthrough
"""
import asyncio
import contextvars
import logging
import os
import re
import time
import uuid
from typing import Any, Dict, List, Optional

import asyncpg
import redis.asyncio as redis
from fastapi import Body, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from pydantic import BaseModel
from slowapi import Limiter
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from tenacity import retry, stop_after_attempt, wait_exponential

from services.realtime.feed import ChangeFeed
from services.realtime.snapshot import SnapshotReader

from .client import FunctionErrorKind, FunctionsClient
from .config import settings
from .language import detect_language, supported_languages
from .panel import TranslationConsumer

# Configure logging with credential redaction
logging.basicConfig(level=logging.INFO)
class _RedactFilter(logging.Filter):
    _bearer = re.compile(r"Bearer\s+[A-Za-z0-9\-_.=:+/]{10,}", re.IGNORECASE)
    def filter(self, record: logging.LogRecord) -> bool:
        msg = str(record.getMessage())
        msg = self._bearer.sub("Bearer <redacted>", msg)
        record.msg = msg
        record.args = ()
        return True

request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")

# Rate limiting
limiter = Limiter(key_func=get_remote_address)
logger = logging.getLogger(__name__)
logger.addFilter(_RedactFilter())

app = FastAPI(title="Translation Service", version="1.0.0")
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
    "translation_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "translation_http_request_duration_seconds",
    "HTTP request latency in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)
ERROR_COUNT = Counter(
    "translation_http_errors_total",
    "Total HTTP errors",
    ["type"],
)
HEALTH_GAUGE = Gauge(
    "translation_dependency_up",
    "Health of dependencies (1 up, 0 down)",
    ["component"],
)
ACTIVE_PANELS = Gauge(
    "translation_active_panels",
    "Meetings with live translation running",
)


@app.middleware("http")
async def size_limit_and_timeout(request: Request, call_next):
    max_bytes = int(os.getenv("MAX_REQUEST_BYTES", "1048576"))
    cl = request.headers.get("content-length")
    if cl and cl.isdigit() and int(cl) > max_bytes:
        return JSONResponse(status_code=413, content={"error": "Request too large"})
    timeout_s = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "60"))
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


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception):
    ERROR_COUNT.labels("unhandled").inc()
    logger.exception(f"Unhandled error: {exc}")
    return JSONResponse(status_code=500, content={"error": "Internal server error", "request_id": request_id_var.get()})


# Global variables
redis_client = None
db_pool = None
functions_client: Optional[FunctionsClient] = None
change_feed: Optional[ChangeFeed] = None
snapshot_reader: Optional[SnapshotReader] = None
consumers: Dict[str, TranslationConsumer] = {}


class StartRequest(BaseModel):
    source_language: Optional[str] = None
    target_language: Optional[str] = None


class TranslateRequest(BaseModel):
    text: str
    meeting_id: str = ""
    source_language: Optional[str] = None  # detected when omitted
    target_language: Optional[str] = None
    speaker: Optional[str] = None


class SummaryRequest(BaseModel):
    participants: List[Any] = []


@retry(reraise=True, stop=stop_after_attempt(5), wait=wait_exponential(multiplier=1, min=1, max=8))
async def _connect_redis():
    client = redis.from_url(settings.redis_url, decode_responses=True)
    await client.ping()
    return client


@retry(reraise=True, stop=stop_after_attempt(5), wait=wait_exponential(multiplier=1, min=1, max=8))
async def _connect_postgres():
    return await asyncpg.create_pool(settings.database_url, min_size=1, max_size=5)


@app.on_event("startup")
async def startup():
    global redis_client, db_pool, functions_client, change_feed, snapshot_reader
    degraded_ok = os.getenv("ALLOW_DEGRADED_STARTUP") == "1"
    try:
        redis_client = await _connect_redis()
    except Exception:
        if not degraded_ok:
            raise
        logger.warning("Redis unavailable after retries; starting Translation in degraded mode")
        redis_client = None
    try:
        db_pool = await _connect_postgres()
    except Exception:
        if not degraded_ok:
            raise
        logger.warning("Postgres unavailable after retries; starting Translation in degraded mode")
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
    if not settings.functions_anon_key:
        logger.warning("FUNCTIONS_ANON_KEY not set; AI function calls will be unauthenticated")
    functions_client = FunctionsClient(
        settings.functions_url,
        anon_key=settings.functions_anon_key,
        timeout=settings.functions_timeout_seconds,
        retry_attempts=settings.functions_retry_attempts,
    )
    logger.info("Translation service started")


@app.on_event("shutdown")
async def shutdown():
    """Stop live panels and clean up connections"""
    for consumer in list(consumers.values()):
        await consumer.stop()
    consumers.clear()
    ACTIVE_PANELS.set(0)
    if functions_client:
        await functions_client.aclose()
    if redis_client:
        await redis_client.aclose()
    if db_pool:
        await db_pool.close()


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra, "request_id": request_id_var.get()})


def _panel_state(consumer: TranslationConsumer) -> Dict[str, Any]:
    return {
        "meeting_id": consumer.meeting_id,
        "is_translating": consumer.is_translating,
        "is_paused": consumer.is_paused,
        "source_language": consumer.source_language,
        "target_language": consumer.target_language,
        "segments": len(consumer.segments),
        "error": consumer.error,
    }


@app.post("/translation/meetings/{meeting_id}/start")
@limiter.limit("30/minute")
async def start_translation(request: Request, meeting_id: str, body: StartRequest = Body(default=StartRequest())):
    if snapshot_reader is None or change_feed is None or functions_client is None:
        ERROR_COUNT.labels("unavailable").inc()
        return _error(503, "Translation backends unavailable")
    consumer = consumers.get(meeting_id)
    if consumer is None:
        consumer = TranslationConsumer(
            meeting_id,
            snapshot_reader,
            change_feed,
            functions_client,
            source_language=settings.source_language,
            target_language=settings.target_language,
            snapshot_timeout=settings.snapshot_timeout_seconds,
        )
        consumers[meeting_id] = consumer
    else:
        await consumer.stop()
    consumer.set_languages(body.source_language, body.target_language)
    await consumer.start()
    ACTIVE_PANELS.set(sum(1 for c in consumers.values() if c.is_translating))
    return {"status": "success", "panel": _panel_state(consumer)}


@app.post("/translation/meetings/{meeting_id}/pause")
async def pause_translation(meeting_id: str):
    consumer = consumers.get(meeting_id)
    if consumer is None:
        return _error(404, f"Translation not started for meeting {meeting_id}")
    await consumer.pause()
    return {"status": "success", "panel": _panel_state(consumer)}


@app.post("/translation/meetings/{meeting_id}/resume")
async def resume_translation(meeting_id: str):
    consumer = consumers.get(meeting_id)
    if consumer is None:
        return _error(404, f"Translation not started for meeting {meeting_id}")
    await consumer.resume()
    return {"status": "success", "panel": _panel_state(consumer)}


@app.post("/translation/meetings/{meeting_id}/stop")
async def stop_translation(meeting_id: str):
    consumer = consumers.get(meeting_id)
    if consumer is None:
        return _error(404, f"Translation not started for meeting {meeting_id}")
    await consumer.stop()
    ACTIVE_PANELS.set(sum(1 for c in consumers.values() if c.is_translating))
    return {"status": "success", "panel": _panel_state(consumer)}


@app.get("/translation/meetings/{meeting_id}/segments")
async def get_segments(meeting_id: str):
    consumer = consumers.get(meeting_id)
    if consumer is None:
        return _error(404, f"Translation not started for meeting {meeting_id}")
    return {
        "panel": _panel_state(consumer),
        "segments": [s.to_dict() for s in consumer.segments],
        "text": consumer.export_text(),
    }


@app.get("/translation/languages")
async def get_languages():
    return {"languages": supported_languages()}


@app.post("/translation/translate")
@limiter.limit("120/minute")
async def translate_text(request: Request, body: TranslateRequest):
    if functions_client is None:
        return _error(503, "Functions client unavailable")
    source = body.source_language or detect_language(body.text, settings.default_language)
    target = body.target_language or settings.target_language
    result = await functions_client.translate(body.meeting_id, body.text, source, target, speaker=body.speaker)
    if not result.ok:
        return _error(502, result.error.message, kind=result.error.kind.value, text=body.text)
    return {"translated_text": result.text, "source_language": source, "target_language": target}


@app.post("/summary/meetings/{meeting_id}")
@limiter.limit("10/minute")
async def summarize_meeting(request: Request, meeting_id: str, body: SummaryRequest = Body(default=SummaryRequest())):
    if functions_client is None:
        return _error(503, "Functions client unavailable")
    result = await functions_client.summarize(meeting_id, body.participants)
    if not result.ok:
        throttled = result.error.kind in (FunctionErrorKind.QUOTA_EXCEEDED, FunctionErrorKind.RATE_LIMIT)
        return _error(429 if throttled else 502, result.error.message, kind=result.error.kind.value)
    return {"meeting_id": meeting_id, "summary": result.summary}


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
    return {
        "status": "healthy" if overall else "degraded",
        "service": "translation",
        "dependencies": {"redis": bool(ok_redis), "postgres": bool(ok_db), "functions": functions_client is not None},
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
