"""Document collaborator contract and an in-memory record store.

The agent never touches the host canvas directly. It calls the narrow
:class:`CanvasDocument` protocol, most importantly :meth:`extract_diff`, which
records every mutation performed inside a callback so that a provisional action
can later be undone with :meth:`apply_inverse_diff`.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Protocol, runtime_checkable

__all__ = [
    "CanvasDocument",
    "InMemoryDocument",
    "Record",
    "RecordsDiff",
    "Rect",
]

LOGGER = logging.getLogger(__name__)

Record = dict[str, Any]


@dataclass(slots=True, frozen=True)
class Rect:
    x: float
    y: float
    w: float
    h: float

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y, "w": self.w, "h": self.h}


@dataclass(slots=True)
class RecordsDiff:
    """Records added, updated (``before``, ``after``), and removed by an operation."""

    added: dict[str, Record] = field(default_factory=dict)
    updated: dict[str, tuple[Record, Record]] = field(default_factory=dict)
    removed: dict[str, Record] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.updated or self.removed)

    def reversed(self) -> RecordsDiff:
        return RecordsDiff(
            added=copy.deepcopy(self.removed),
            updated={key: (copy.deepcopy(after), copy.deepcopy(before)) for key, (before, after) in self.updated.items()},
            removed=copy.deepcopy(self.added),
        )

    def touched_ids(self) -> set[str]:
        return set(self.added) | set(self.updated) | set(self.removed)

    def record_add(self, record: Record) -> None:
        record_id = record["id"]
        if record_id in self.removed:
            before = self.removed.pop(record_id)
            self.updated[record_id] = (before, copy.deepcopy(record))
        else:
            self.added[record_id] = copy.deepcopy(record)

    def record_update(self, before: Record, after: Record) -> None:
        record_id = after["id"]
        if record_id in self.added:
            self.added[record_id] = copy.deepcopy(after)
        elif record_id in self.updated:
            original = self.updated[record_id][0]
            self.updated[record_id] = (original, copy.deepcopy(after))
        else:
            self.updated[record_id] = (copy.deepcopy(before), copy.deepcopy(after))

    def record_remove(self, record: Record) -> None:
        record_id = record["id"]
        if record_id in self.added:
            del self.added[record_id]
            return
        if record_id in self.updated:
            record = self.updated.pop(record_id)[0]
        self.removed[record_id] = copy.deepcopy(record)


@runtime_checkable
class CanvasDocument(Protocol):
    """Operations the agent needs from the host document."""

    def extract_diff(self, fn: Callable[[], Any]) -> RecordsDiff:
        """Run ``fn`` and return the diff of every mutation it made."""
        ...

    def apply_diff(self, diff: RecordsDiff) -> None:
        ...

    def apply_inverse_diff(self, diff: RecordsDiff) -> None:
        ...

    def create_record(self, record: Mapping[str, Any]) -> Record:
        ...

    def get_record(self, record_id: str) -> Record | None:
        ...

    def update_record(self, record_id: str, changes: Mapping[str, Any]) -> Record | None:
        ...

    def delete_record(self, record_id: str) -> bool:
        ...

    def get_selected_records(self) -> list[Record]:
        ...

    def get_viewport_bounds(self) -> Rect:
        ...


class InMemoryDocument:
    """Dictionary-backed :class:`CanvasDocument` with exact inverse diffs."""

    def __init__(
        self,
        records: Iterable[Mapping[str, Any]] = (),
        *,
        viewport: Rect | None = None,
        selected_ids: Iterable[str] = (),
    ) -> None:
        self._records: dict[str, Record] = {}
        for record in records:
            self._records[str(record["id"])] = copy.deepcopy(dict(record))
        self._viewport = viewport or Rect(0, 0, 1920, 1080)
        self._selected_ids = list(selected_ids)
        self._recorders: list[RecordsDiff] = []
        self._next_id = 1

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def records(self) -> dict[str, Record]:
        return copy.deepcopy(self._records)

    def get_record(self, record_id: str) -> Record | None:
        record = self._records.get(record_id)
        return copy.deepcopy(record) if record is not None else None

    def get_selected_records(self) -> list[Record]:
        return [copy.deepcopy(self._records[rid]) for rid in self._selected_ids if rid in self._records]

    def select(self, record_ids: Iterable[str]) -> None:
        self._selected_ids = list(record_ids)

    def get_viewport_bounds(self) -> Rect:
        return self._viewport

    def set_viewport_bounds(self, bounds: Rect) -> None:
        self._viewport = bounds

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_record(self, record: Mapping[str, Any]) -> Record:
        created = copy.deepcopy(dict(record))
        if not created.get("id"):
            created["id"] = self._generate_id()
        record_id = str(created["id"])
        created["id"] = record_id
        previous = self._records.get(record_id)
        self._records[record_id] = created
        for recorder in self._recorders:
            if previous is None:
                recorder.record_add(created)
            else:
                recorder.record_update(previous, created)
        return copy.deepcopy(created)

    def update_record(self, record_id: str, changes: Mapping[str, Any]) -> Record | None:
        current = self._records.get(record_id)
        if current is None:
            LOGGER.debug("Ignoring update for missing record %s", record_id)
            return None
        updated = copy.deepcopy(current)
        updated.update(copy.deepcopy(dict(changes)))
        updated["id"] = record_id
        if updated == current:
            return copy.deepcopy(current)
        self._records[record_id] = updated
        for recorder in self._recorders:
            recorder.record_update(current, updated)
        return copy.deepcopy(updated)

    def delete_record(self, record_id: str) -> bool:
        current = self._records.pop(record_id, None)
        if current is None:
            return False
        if record_id in self._selected_ids:
            self._selected_ids.remove(record_id)
        for recorder in self._recorders:
            recorder.record_remove(current)
        return True

    def extract_diff(self, fn: Callable[[], Any]) -> RecordsDiff:
        recorder = RecordsDiff()
        self._recorders.append(recorder)
        try:
            fn()
        finally:
            self._recorders.remove(recorder)
        return recorder

    def apply_diff(self, diff: RecordsDiff) -> None:
        for record_id in diff.removed:
            self.delete_record(record_id)
        for record_id, (_, after) in diff.updated.items():
            self._put(after)
        for record in diff.added.values():
            self._put(record)

    def apply_inverse_diff(self, diff: RecordsDiff) -> None:
        self.apply_diff(diff.reversed())

    def _put(self, record: Record) -> None:
        record_id = record["id"]
        previous = self._records.get(record_id)
        self._records[record_id] = copy.deepcopy(record)
        for recorder in self._recorders:
            if previous is None:
                recorder.record_add(record)
            else:
                recorder.record_update(previous, record)

    def _generate_id(self) -> str:
        while True:
            candidate = f"shape:{self._next_id}"
            self._next_id += 1
            if candidate not in self._records:
                return candidate
