"""Suggestion card placement.

A 32x32 density grid over the viewport scores candidate card positions around
each error anchor; anchors are placed in order and each chosen footprint
(plus a buffer) is reserved before the next anchor is scored.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

import numpy as np

from .canvas import SHAPE_DRAW, SHAPE_GEO, SHAPE_TEXT, CanvasShape
from .geometry import rects_intersect
from .types import Point, Rect

logger = logging.getLogger(__name__)

GRID_SIZE = 32

SHAPE_WEIGHTS = {SHAPE_DRAW: 0.8, SHAPE_TEXT: 0.9, SHAPE_GEO: 0.6}
DEFAULT_WEIGHT = 1.0

# (name, dx, dy)
DIRECTIONS = (
    ("N", 0, -1),
    ("NE", 1, -1),
    ("E", 1, 0),
    ("SE", 1, 1),
    ("S", 0, 1),
    ("SW", -1, 1),
    ("W", -1, 0),
    ("NW", -1, -1),
)


@dataclass(frozen=True)
class PlacementConfig:
    card_width: float = 180.0
    card_height: float = 120.0
    buffer: float = 20.0
    radii: tuple[float, ...] = (80.0, 120.0, 160.0, 200.0)
    animation_stagger_ms: int = 800
    fallback_offset_x: float = 100.0

    @classmethod
    def from_section(cls, section: dict[str, Any]) -> "PlacementConfig":
        return cls(
            card_width=float(section.get("card_width", 180)),
            card_height=float(section.get("card_height", 120)),
            buffer=float(section.get("buffer", 20)),
            radii=tuple(float(r) for r in section.get("radii", (80, 120, 160, 200))),
            animation_stagger_ms=int(section.get("animation_stagger_ms", 800)),
            fallback_offset_x=float(section.get("fallback_offset_x", 100)),
        )


@dataclass
class SpatialGrid:
    viewport: Rect
    density: np.ndarray  # (rows, cols) float
    occupied: np.ndarray  # (rows, cols) bool

    @property
    def rows(self) -> int:
        return int(self.density.shape[0])

    @property
    def cols(self) -> int:
        return int(self.density.shape[1])

    @property
    def cell_width(self) -> float:
        return self.viewport.w / self.cols

    @property
    def cell_height(self) -> float:
        return self.viewport.h / self.rows

    @property
    def cell_size(self) -> float:
        return min(self.cell_width, self.cell_height)

    def cell_span(self, rect: Rect) -> tuple[int, int, int, int] | None:
        """Inclusive (row0, row1, col0, col1) covered by rect, or None when outside."""
        vp = self.viewport
        c0 = max(0, math.floor((rect.x - vp.x) / self.cell_width))
        c1 = min(self.cols - 1, math.floor((rect.max_x - vp.x) / self.cell_width))
        r0 = max(0, math.floor((rect.y - vp.y) / self.cell_height))
        r1 = min(self.rows - 1, math.floor((rect.max_y - vp.y) / self.cell_height))
        if c1 < c0 or r1 < r0:
            return None
        return r0, r1, c0, c1


def create_spatial_grid(shapes: Iterable[CanvasShape], viewport: Rect, size: int = GRID_SIZE) -> SpatialGrid:
    if viewport.w <= 0 or viewport.h <= 0:
        raise ValueError(f"empty viewport: {viewport}")

    grid = SpatialGrid(
        viewport=viewport,
        density=np.zeros((size, size), dtype=np.float64),
        occupied=np.zeros((size, size), dtype=bool),
    )
    for shape in shapes:
        span = grid.cell_span(shape.bounds)
        if span is None:
            continue
        r0, r1, c0, c1 = span
        grid.density[r0:r1 + 1, c0:c1 + 1] += SHAPE_WEIGHTS.get(shape.type, DEFAULT_WEIGHT)
        grid.occupied[r0:r1 + 1, c0:c1 + 1] = True
    return grid


def high_density_cells(grid: SpatialGrid, threshold: float = 0.5, limit: int = 10) -> list[tuple[int, int, float]]:
    """(row, col, density) of the densest cells above threshold, densest first."""
    rows, cols = np.nonzero(grid.density > threshold)
    cells = [(int(r), int(c), float(grid.density[r, c])) for r, c in zip(rows, cols)]
    cells.sort(key=lambda t: t[2], reverse=True)
    return cells[:limit]


def _density_penalty(rect: Rect, grid: SpatialGrid) -> float:
    span = grid.cell_span(rect)
    if span is None:
        return 0.0
    r0, r1, c0, c1 = span
    return float(grid.density[r0:r1 + 1, c0:c1 + 1].mean()) * 25


def _boundary_bonus(rect: Rect, viewport: Rect) -> float:
    clearance = min(
        rect.x - viewport.x,
        rect.y - viewport.y,
        viewport.max_x - rect.max_x,
        viewport.max_y - rect.max_y,
    )
    if 40 <= clearance <= 80:
        return 1.0
    if 20 <= clearance <= 120:
        return 0.5
    return 0.0


def _distance_bonus(position: Point, anchor: Point) -> float:
    d = math.hypot(position.x - anchor.x, position.y - anchor.y)
    if 100 <= d <= 150:
        return 1.0
    if 80 <= d <= 200:
        return 0.6
    if 60 <= d <= 250:
        return 0.3
    return 0.0


def _direction_bonus(position: Point, anchor: Point) -> float:
    dx = position.x - anchor.x
    dy = position.y - anchor.y
    # up-right first, then down-right
    if dx > 0 and dy < 0:
        return 1.0
    if dx > 0 and dy > 0:
        return 0.8
    if dx > 0 and abs(dy) < 20:
        return 0.6
    if dx < 0 and dy < 0:
        return 0.4
    return 0.2


def calculate_position_score(
    position: Point,
    card_size: tuple[float, float],
    anchor: Point,
    grid: SpatialGrid,
) -> float:
    rect = Rect(position.x, position.y, card_size[0], card_size[1])
    score = 100.0
    score -= _density_penalty(rect, grid) * 40
    score += _boundary_bonus(rect, grid.viewport) * 20
    score += _distance_bonus(position, anchor) * 25
    score += _direction_bonus(position, anchor) * 15
    return max(0.0, score)


@dataclass(frozen=True)
class PositionCandidate:
    x: float
    y: float
    score: float
    direction: str
    distance_to_error: float


def generate_position_candidates(
    anchor: Point,
    card_size: tuple[float, float],
    grid: SpatialGrid,
    radii: Sequence[float] = (80.0, 120.0, 160.0, 200.0),
) -> list[PositionCandidate]:
    """In-viewport candidates around anchor, best score first (stable on ties)."""
    vp = grid.viewport
    w, h = card_size
    out: list[PositionCandidate] = []
    for name, dx, dy in DIRECTIONS:
        for r in radii:
            x = anchor.x + dx * r
            y = anchor.y + dy * r
            if x < vp.x or y < vp.y or x + w > vp.max_x or y + h > vp.max_y:
                continue
            score = calculate_position_score(Point(x, y), card_size, anchor, grid)
            out.append(PositionCandidate(x=x, y=y, score=score, direction=name, distance_to_error=r))
    out.sort(key=lambda c: c.score, reverse=True)
    return out


@dataclass(frozen=True)
class SuggestionPlacement:
    x: float
    y: float
    width: float
    height: float
    lead_line_start: Point
    lead_line_end: Point
    animation_delay_ms: int
    direction: str = ""
    score: float = 0.0
    fallback: bool = False

    @property
    def rect(self) -> Rect:
        return Rect(self.x, self.y, self.width, self.height)

    def footprint(self, buffer: float) -> Rect:
        return self.rect.inflate(buffer)

    def to_dict(self) -> dict[str, Any]:
        return {
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "lead_line_start": self.lead_line_start.to_dict(),
            "lead_line_end": self.lead_line_end.to_dict(),
            "animation_delay_ms": self.animation_delay_ms,
            "direction": self.direction,
            "score": self.score,
            "fallback": self.fallback,
        }


@dataclass
class LayoutResult:
    placements: list[SuggestionPlacement] = field(default_factory=list)

    @property
    def used_fallback(self) -> bool:
        return any(p.fallback for p in self.placements)


def optimize_layout(
    anchors: Sequence[Point],
    grid: SpatialGrid,
    config: PlacementConfig = PlacementConfig(),
) -> LayoutResult:
    """Place one card per anchor, in input order.

    Never raises for a crowded viewport: when every candidate collides the
    card goes to a fixed offset right of the anchor with `fallback=True`.
    """
    size = (config.card_width, config.card_height)
    used: list[Rect] = []
    result = LayoutResult()

    for index, anchor in enumerate(anchors):
        chosen: PositionCandidate | None = None
        for cand in generate_position_candidates(anchor, size, grid, config.radii):
            footprint = Rect(cand.x, cand.y, size[0], size[1]).inflate(config.buffer)
            if not any(rects_intersect(footprint, u) for u in used):
                chosen = cand
                break

        if chosen is not None:
            x, y, direction, score, fallback = chosen.x, chosen.y, chosen.direction, chosen.score, False
        else:
            x = anchor.x + config.fallback_offset_x
            y = anchor.y - config.card_height / 2
            direction, score, fallback = "fallback", 0.0, True
            logger.warning("no free candidate for anchor %d at (%.1f, %.1f); using fallback", index, anchor.x, anchor.y)

        placement = SuggestionPlacement(
            x=x,
            y=y,
            width=config.card_width,
            height=config.card_height,
            lead_line_start=anchor,
            lead_line_end=Point(x + config.card_width / 2, y + config.card_height / 2),
            animation_delay_ms=index * config.animation_stagger_ms,
            direction=direction,
            score=score,
            fallback=fallback,
        )
        result.placements.append(placement)
        used.append(placement.footprint(config.buffer))

    return result


def place_suggestions(
    shapes: Iterable[CanvasShape],
    viewport: Rect,
    anchors: Sequence[Point],
    config: PlacementConfig = PlacementConfig(),
) -> LayoutResult:
    grid = create_spatial_grid(shapes, viewport)
    return optimize_layout(anchors, grid, config)
