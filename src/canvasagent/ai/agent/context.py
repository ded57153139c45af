"""Context items the user attaches to a request (shapes, areas, points)."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Literal, Sequence, Union

from ...document import Rect

__all__ = [
    "AreaContextItem",
    "ContextItem",
    "PointContextItem",
    "ShapeContextItem",
    "ShapesContextItem",
    "context_items_equal",
    "context_item_to_dict",
    "dedupe_shapes_item",
]

ContextSource = Literal["user", "agent"]


@dataclass(slots=True, frozen=True)
class ShapeContextItem:
    shape: dict[str, Any]
    source: ContextSource = "user"
    type: Literal["shape"] = "shape"

    @property
    def shape_id(self) -> str | None:
        return self.shape.get("shapeId") or self.shape.get("id")


@dataclass(slots=True, frozen=True)
class ShapesContextItem:
    shapes: tuple[dict[str, Any], ...] = field(default_factory=tuple)
    source: ContextSource = "user"
    type: Literal["shapes"] = "shapes"

    @property
    def shape_ids(self) -> list[str | None]:
        return [shape.get("shapeId") or shape.get("id") for shape in self.shapes]


@dataclass(slots=True, frozen=True)
class AreaContextItem:
    bounds: Rect
    source: ContextSource = "user"
    type: Literal["area"] = "area"


@dataclass(slots=True, frozen=True)
class PointContextItem:
    x: float
    y: float
    source: ContextSource = "user"
    type: Literal["point"] = "point"


ContextItem = Union[ShapeContextItem, ShapesContextItem, AreaContextItem, PointContextItem]


def context_items_equal(a: ContextItem, b: ContextItem) -> bool:
    """Equality by identity of what the item points at, ignoring ``source``."""

    if a.type != b.type:
        return False
    if isinstance(a, ShapeContextItem) and isinstance(b, ShapeContextItem):
        return a.shape_id == b.shape_id
    if isinstance(a, ShapesContextItem) and isinstance(b, ShapesContextItem):
        if len(a.shapes) != len(b.shapes):
            return False
        other_ids = set(b.shape_ids)
        return all(shape_id in other_ids for shape_id in a.shape_ids)
    if isinstance(a, AreaContextItem) and isinstance(b, AreaContextItem):
        return a.bounds == b.bounds
    if isinstance(a, PointContextItem) and isinstance(b, PointContextItem):
        return (a.x, a.y) == (b.x, b.y)
    return False  # pragma: no cover - exhaustive above


def dedupe_shapes_item(item: ShapesContextItem, existing: Sequence[ContextItem]) -> list[ContextItem]:
    """Drop shapes already in context; a single survivor becomes a shape item."""

    known: set[str | None] = set()
    for entry in existing:
        if isinstance(entry, ShapeContextItem):
            known.add(entry.shape_id)
        elif isinstance(entry, ShapesContextItem):
            known.update(entry.shape_ids)
    remaining = [shape for shape in item.shapes if (shape.get("shapeId") or shape.get("id")) not in known]
    if not remaining:
        return []
    if len(remaining) == 1:
        return [ShapeContextItem(shape=copy.deepcopy(remaining[0]), source=item.source)]
    return [ShapesContextItem(shapes=tuple(copy.deepcopy(remaining)), source=item.source)]


def context_item_to_dict(item: ContextItem) -> dict[str, Any]:
    if isinstance(item, ShapeContextItem):
        return {"type": "shape", "shape": item.shape, "source": item.source}
    if isinstance(item, ShapesContextItem):
        return {"type": "shapes", "shapes": list(item.shapes), "source": item.source}
    if isinstance(item, AreaContextItem):
        return {"type": "area", "bounds": item.bounds.to_dict(), "source": item.source}
    return {"type": "point", "point": {"x": item.x, "y": item.y}, "source": item.source}
