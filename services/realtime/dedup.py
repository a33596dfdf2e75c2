"""Processed-id set shared by a snapshot pass and the live feed that races it."""
from typing import Iterable, Set


class DedupGuard:
    def __init__(self, ids: Iterable[str] = ()):
        self._processed: Set[str] = set(ids)

    def should_process(self, row_id: str) -> bool:
        return row_id not in self._processed

    def mark_processed(self, row_id: str) -> None:
        self._processed.add(row_id)

    def claim(self, row_id: str) -> bool:
        """Check and mark in one step. Returns False if already processed."""
        if row_id in self._processed:
            return False
        self._processed.add(row_id)
        return True

    def clear(self) -> None:
        self._processed.clear()

    def __len__(self) -> int:
        return len(self._processed)

    def __contains__(self, row_id: object) -> bool:
        return row_id in self._processed
