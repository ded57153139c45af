"""Todo items the agent works through across continuation requests."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Iterator, Literal

__all__ = ["TodoItem", "TodoList", "TodoStatus"]

TodoStatus = Literal["todo", "in-progress", "done"]
_STATUSES: tuple[TodoStatus, ...] = ("todo", "in-progress", "done")


@dataclass(slots=True, frozen=True)
class TodoItem:
    id: int
    text: str
    status: TodoStatus = "todo"


class TodoList:
    """Ordered todo items; fresh ids are one past the highest id seen."""

    def __init__(self) -> None:
        self._items: list[TodoItem] = []

    def __iter__(self) -> Iterator[TodoItem]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    @property
    def items(self) -> list[TodoItem]:
        return list(self._items)

    def add(self, text: str) -> TodoItem:
        item = TodoItem(id=self._next_id(), text=text)
        self._items.append(item)
        return item

    def get(self, item_id: int) -> TodoItem | None:
        for item in self._items:
            if item.id == item_id:
                return item
        return None

    def upsert(self, item_id: int | None, *, text: str | None = None, status: str | None = None) -> TodoItem:
        """Update an existing item, or append a new one when ``item_id`` is unknown."""

        normalized = status if status in _STATUSES else None
        existing = self.get(item_id) if item_id is not None else None
        if existing is None:
            item = TodoItem(
                id=item_id if item_id is not None else self._next_id(),
                text=text or "",
                status=normalized or "todo",
            )
            self._items.append(item)
            return item
        updated = replace(
            existing,
            text=existing.text if text is None else text,
            status=normalized or existing.status,
        )
        self._items[self._items.index(existing)] = updated
        return updated

    def remaining(self) -> list[TodoItem]:
        return [item for item in self._items if item.status != "done"]

    def clear(self) -> None:
        self._items.clear()

    def _next_id(self) -> int:
        return max((item.id for item in self._items), default=-1) + 1
