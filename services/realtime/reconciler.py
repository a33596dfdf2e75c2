"""
Local collection reconciler.

Applies change events to an in-memory ordered collection:
- INSERT appends when the id is absent and replaces in place when present,
  so redelivered inserts are idempotent
- UPDATE replaces the element with the same id, no-op when absent
- DELETE removes the element with the same id, no-op when absent

Positions are preserved on update and inserts append regardless of their
sort key. Re-sorting after each apply is available but off by default.

Single-row views (a recording, a meeting summary) hold at most one row:
INSERT and UPDATE replace it whatever its id, DELETE clears it on a match.
"""
import logging
from typing import Any, Callable, List, Optional, Sequence

from .models import ChangeEvent, Operation, RowBase

logger = logging.getLogger(__name__)

SortKey = Callable[[RowBase], Any]


def _index_of(collection: Sequence[RowBase], row_id: str) -> int:
    for i, item in enumerate(collection):
        if item.id == row_id:
            return i
    return -1


def apply(
    collection: Sequence[RowBase],
    event: ChangeEvent,
    sort_key: Optional[SortKey] = None,
    singleton: bool = False,
) -> List[RowBase]:
    """Return a new collection with `event` applied. Never raises for unknown ids."""
    result = list(collection)
    idx = _index_of(result, event.row_id)

    if singleton and event.operation != Operation.DELETE:
        return [event.row]

    if event.operation == Operation.INSERT:
        if idx == -1:
            result.append(event.row)
        else:
            result[idx] = event.row
    elif event.operation == Operation.UPDATE:
        if idx == -1:
            logger.debug(f"Ignoring update for unknown {event.resource} {event.row_id}")
            return result
        result[idx] = event.row
    elif event.operation == Operation.DELETE:
        if idx == -1:
            logger.debug(f"Ignoring delete for unknown {event.resource} {event.row_id}")
            return result
        del result[idx]

    if sort_key is not None:
        result.sort(key=sort_key)
    return result


def order_key(column: str) -> SortKey:
    """Sort key on a row attribute; rows missing the value sort first."""
    def _key(row: RowBase):
        value = getattr(row, column, None)
        return (0, 0) if value is None else (1, value)
    return _key


class Reconciler:
    """Stateful wrapper owning one collection."""

    def __init__(self, sort_key: Optional[SortKey] = None, singleton: bool = False):
        self._items: List[RowBase] = []
        self._sort_key = sort_key
        self._singleton = singleton

    @property
    def items(self) -> List[RowBase]:
        return list(self._items)

    def replace_all(self, rows: Sequence[RowBase]) -> List[RowBase]:
        # Last occurrence wins so a snapshot can never seed duplicate ids
        deduped: List[RowBase] = []
        for row in rows:
            idx = _index_of(deduped, row.id)
            if idx == -1:
                deduped.append(row)
            else:
                deduped[idx] = row
        # a single-row view keeps the newest row
        self._items = deduped[-1:] if self._singleton else deduped
        return self.items

    def apply(self, event: ChangeEvent) -> List[RowBase]:
        self._items = apply(self._items, event, self._sort_key, self._singleton)
        return self.items

    def get(self, row_id: str) -> Optional[RowBase]:
        idx = _index_of(self._items, row_id)
        return self._items[idx] if idx != -1 else None

    def ids(self) -> List[str]:
        return [item.id for item in self._items]

    def clear(self) -> None:
        self._items = []

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, row_id: object) -> bool:
        return isinstance(row_id, str) and _index_of(self._items, row_id) != -1
