"""
Row writes. Each successful insert/update/delete is committed first and then
published on the resource's change-feed channel, so every live collection
(including the writer's own) converges through the feed. Nothing is applied
locally ahead of the write.
"""
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import asyncpg
from pydantic import TypeAdapter, ValidationError
from redis.exceptions import RedisError

from .feed import ChangeFeed
from .metrics import MUTATIONS
from .models import ChangeEvent, Operation, ResourceSpec, RowBase, RowRef, get_resource, parse_row

logger = logging.getLogger(__name__)

_VERBS = {
    Operation.INSERT: "create",
    Operation.UPDATE: "update",
    Operation.DELETE: "delete",
}


@dataclass
class MutationResult:
    data: Optional[RowBase] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _columns(spec: ResourceSpec) -> List[str]:
    return [name for name in spec.model.model_fields if name != "resource"]


def _to_db(value: Any) -> Any:
    # jsonb columns are written as text
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return value


def _coerce(spec: ResourceSpec, values: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a partial row field by field; unknown columns are rejected."""
    allowed = set(_columns(spec))
    out: Dict[str, Any] = {}
    for key, value in values.items():
        if key == "resource":
            continue
        if key not in allowed:
            raise ValueError(f"Unknown field for {spec.name}: {key}")
        annotation = spec.model.model_fields[key].annotation
        out[key] = TypeAdapter(annotation).validate_python(value)
    return out


class RowWriter:
    def __init__(self, pool: asyncpg.Pool, feed: ChangeFeed):
        self.pool = pool
        self.feed = feed

    def _fail(self, spec: ResourceSpec, operation: Operation, message: str) -> MutationResult:
        MUTATIONS.labels(spec.name, operation.value, "error").inc()
        error = f"Failed to {_VERBS[operation]} {spec.name}: {message}"
        logger.error(error)
        return MutationResult(error=error)

    async def _publish(self, spec: ResourceSpec, event: ChangeEvent, parent_id: Optional[str]) -> None:
        if not parent_id:
            logger.warning(f"{spec.name} {event.row_id} has no {spec.parent_column}; change not published")
            return
        try:
            await self.feed.publish(event, parent_id)
        except (RedisError, OSError) as e:
            # the write is already committed
            logger.error(f"Failed to publish {event.operation.value} for {spec.name} {event.row_id}: {e}")

    async def _execute(self, query: str, *args: Any) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            record = await conn.fetchrow(query, *args)
        return dict(record) if record is not None else None

    async def insert(self, resource: str, payload: Dict[str, Any]) -> MutationResult:
        spec = get_resource(resource)
        values = dict(payload)
        values.setdefault("id", str(uuid.uuid4()))
        try:
            coerced = _coerce(spec, values)
            # full validation so required columns are caught before the write
            parse_row(spec, coerced)
        except (ValueError, ValidationError) as e:
            return self._fail(spec, Operation.INSERT, str(e))

        columns = list(coerced)
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        query = f"INSERT INTO {spec.table} ({', '.join(columns)}) VALUES ({placeholders}) RETURNING *"
        try:
            record = await self._execute(query, *[_to_db(coerced[c]) for c in columns])
            row = parse_row(spec, record or {})
        except (asyncpg.PostgresError, OSError, ValidationError) as e:
            return self._fail(spec, Operation.INSERT, str(e))

        MUTATIONS.labels(spec.name, Operation.INSERT.value, "ok").inc()
        await self._publish(spec, ChangeEvent(Operation.INSERT, spec.name, row), getattr(row, spec.parent_column, None))
        return MutationResult(data=row)

    async def update(self, resource: str, row_id: str, changes: Dict[str, Any]) -> MutationResult:
        spec = get_resource(resource)
        try:
            coerced = _coerce(spec, {k: v for k, v in changes.items() if k != "id"})
        except (ValueError, ValidationError) as e:
            return self._fail(spec, Operation.UPDATE, str(e))
        if not coerced:
            return self._fail(spec, Operation.UPDATE, "no fields to update")

        columns = list(coerced)
        assignments = ", ".join(f"{c} = ${i}" for i, c in enumerate(columns, start=1))
        query = f"UPDATE {spec.table} SET {assignments} WHERE id = ${len(columns) + 1} RETURNING *"
        try:
            record = await self._execute(query, *[_to_db(coerced[c]) for c in columns], row_id)
            if record is None:
                return self._fail(spec, Operation.UPDATE, f"{row_id} not found")
            row = parse_row(spec, record)
        except (asyncpg.PostgresError, OSError, ValidationError) as e:
            return self._fail(spec, Operation.UPDATE, str(e))

        MUTATIONS.labels(spec.name, Operation.UPDATE.value, "ok").inc()
        await self._publish(spec, ChangeEvent(Operation.UPDATE, spec.name, row), getattr(row, spec.parent_column, None))
        return MutationResult(data=row)

    async def delete(self, resource: str, row_id: str, parent_id: Optional[str] = None) -> MutationResult:
        spec = get_resource(resource)
        query, args = self._delete_query(spec, row_id, parent_id)
        try:
            record = await self._execute(query, *args)
        except (asyncpg.PostgresError, OSError) as e:
            return self._fail(spec, Operation.DELETE, str(e))
        if record is None:
            return self._fail(spec, Operation.DELETE, f"{row_id} not found")

        ref = RowRef(id=str(record["id"]), resource=spec.name)
        MUTATIONS.labels(spec.name, Operation.DELETE.value, "ok").inc()
        owner = record.get(spec.parent_column)
        await self._publish(spec, ChangeEvent(Operation.DELETE, spec.name, ref, old=ref), str(owner) if owner else None)
        return MutationResult(data=ref)

    @staticmethod
    def _delete_query(spec: ResourceSpec, row_id: str, parent_id: Optional[str]) -> Tuple[str, List[Any]]:
        query = f"DELETE FROM {spec.table} WHERE id = $1"
        args: List[Any] = [row_id]
        if parent_id:
            query += f" AND {spec.parent_column} = $2"
            args.append(parent_id)
        returning = "id" if spec.parent_column == "id" else f"id, {spec.parent_column}"
        return query + f" RETURNING {returning}", args
