"""Shared geometry helpers.

Rectangles are XYWH (see types.Rect). Screen projection follows the canvas
editor convention: screen = (page - camera) * z.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Sequence

from .types import CameraTransform, PageBox, Point, Rect


def rects_intersect(a: Rect, b: Rect) -> bool:
    """Strict overlap test; rectangles that only touch do not intersect."""
    return not (
        a.x >= b.max_x
        or a.max_x <= b.x
        or a.y >= b.max_y
        or a.max_y <= b.y
    )


def contains(outer: Rect, inner: Rect) -> bool:
    return (
        inner.x >= outer.x
        and inner.y >= outer.y
        and inner.max_x <= outer.max_x
        and inner.max_y <= outer.max_y
    )


def union_rect(rects: Iterable[Rect]) -> Rect | None:
    rects = list(rects)
    if not rects:
        return None
    x0 = min(r.x for r in rects)
    y0 = min(r.y for r in rects)
    x1 = max(r.max_x for r in rects)
    y1 = max(r.max_y for r in rects)
    return Rect(x0, y0, x1 - x0, y1 - y0)


def iou(a: Rect, b: Rect) -> float:
    """Intersection over Union between two boxes."""
    ix0 = max(a.x, b.x)
    iy0 = max(a.y, b.y)
    ix1 = min(a.max_x, b.max_x)
    iy1 = min(a.max_y, b.max_y)
    inter = max(0.0, ix1 - ix0) * max(0.0, iy1 - iy0)
    if inter == 0:
        return 0.0
    union = a.w * a.h + b.w * b.h - inter
    if union <= 0:
        return 0.0
    return inter / union


def distance(p: Point, q: Point) -> float:
    return math.hypot(p.x - q.x, p.y - q.y)


@dataclass(frozen=True)
class Coverage:
    union: Rect | None
    covered: bool


def union_and_coverage(page_boxes: Sequence[PageBox], selection: Rect) -> Coverage:
    """Union of mapped boxes and whether it lies inside the selection bounds."""
    union = union_rect(b.rect for b in page_boxes)
    if union is None:
        return Coverage(union=None, covered=True)
    return Coverage(union=union, covered=contains(selection, union))


def rmse(page_boxes: Sequence[PageBox], ground_points: Sequence[Point]) -> float:
    """Root-mean-square error between box centers and ground-truth points (paired by order)."""
    n = min(len(page_boxes), len(ground_points))
    if n == 0:
        return 0.0
    total = 0.0
    for b, g in zip(page_boxes[:n], ground_points[:n]):
        c = b.center
        total += (c.x - g.x) ** 2 + (c.y - g.y) ** 2
    return math.sqrt(total / (2 * n))


def page_to_screen(rect: Rect, camera: CameraTransform) -> Rect:
    return Rect(
        (rect.x - camera.x) * camera.z,
        (rect.y - camera.y) * camera.z,
        rect.w * camera.z,
        rect.h * camera.z,
    )


def screen_to_page(rect: Rect, camera: CameraTransform) -> Rect:
    if camera.z == 0:
        raise ValueError("camera zoom must be non-zero")
    return Rect(
        rect.x / camera.z + camera.x,
        rect.y / camera.z + camera.y,
        rect.w / camera.z,
        rect.h / camera.z,
    )
