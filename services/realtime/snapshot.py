"""
Snapshot loading: one ordered read that seeds a collection before the change
feed starts delivering incremental events.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import asyncpg

from .metrics import SNAPSHOT_ERRORS, SNAPSHOT_LATENCY
from .models import ResourceSpec, RowBase, parse_rows

logger = logging.getLogger(__name__)


class SnapshotError(Exception):
    """A snapshot read failed; the message is the backend's."""

    def __init__(self, message: str, resource: Optional[str] = None, parent_id: Optional[str] = None):
        super().__init__(message)
        self.resource = resource
        self.parent_id = parent_id


class SnapshotReader:
    """Ordered reads against Postgres. Table and column names only ever come
    from the resource registry, parent ids are always bound parameters."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def read(self, spec: ResourceSpec, parent_id: str) -> List[Dict[str, Any]]:
        query = (
            f"SELECT * FROM {spec.table} "
            f"WHERE {spec.parent_column} = $1 "
            f"ORDER BY {spec.order_column} ASC"
        )
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(query, parent_id)
        except (asyncpg.PostgresError, OSError) as e:
            raise SnapshotError(str(e), spec.name, parent_id) from e
        return [dict(r) for r in rows]


@dataclass
class SnapshotResult:
    rows: List[RowBase] = field(default_factory=list)
    error: Optional[str] = None
    # False when there was nothing to load (no parent id)
    fetched: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


class SnapshotLoader:
    def __init__(self, reader: SnapshotReader, timeout: Optional[float] = None):
        self.reader = reader
        self.timeout = timeout
        self.loading = False

    async def load(self, spec: ResourceSpec, parent_id: Optional[str]) -> SnapshotResult:
        if not parent_id:
            self.loading = False
            return SnapshotResult()

        self.loading = True
        start = time.perf_counter()
        try:
            if self.timeout:
                raw = await asyncio.wait_for(self.reader.read(spec, parent_id), timeout=self.timeout)
            else:
                raw = await self.reader.read(spec, parent_id)
            rows = parse_rows(spec, raw)
            logger.info(f"Loaded {len(rows)} {spec.name} rows for {parent_id}")
            return SnapshotResult(rows=rows, fetched=True)
        except asyncio.TimeoutError:
            SNAPSHOT_ERRORS.labels(spec.name).inc()
            message = f"Snapshot load timed out after {self.timeout}s"
            logger.error(f"{message} ({spec.name}:{parent_id})")
            return SnapshotResult(error=message, fetched=True)
        except SnapshotError as e:
            SNAPSHOT_ERRORS.labels(spec.name).inc()
            logger.error(f"Error loading {spec.name} snapshot for {parent_id}: {e}")
            return SnapshotResult(error=str(e), fetched=True)
        finally:
            SNAPSHOT_LATENCY.labels(spec.name).observe(time.perf_counter() - start)
            self.loading = False
