"""Error markers and suggestion cards drawn back onto the canvas.

Only page-space (reconciled) annotations should reach this module; the
geometry here is computed, animation playback is left to the editor.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

from .canvas import SHAPE_DRAW, SHAPE_GEO, SHAPE_TEXT, CanvasEditor
from .placement import SuggestionPlacement
from .types import ErrorAnnotation

logger = logging.getLogger(__name__)

MARKER_COLOR = "red"


@dataclass(frozen=True)
class MarkingConfig:
    marker_stagger_ms: int = 300
    min_radius: float = 35.0
    max_radius: float = 80.0
    radius_factor: float = 1.2
    default_radius: float = 30.0
    stroke_width: float = 3.0

    @classmethod
    def from_section(cls, section: dict[str, Any]) -> "MarkingConfig":
        return cls(
            marker_stagger_ms=int(section.get("marker_stagger_ms", 300)),
            min_radius=float(section.get("min_radius", 35)),
            max_radius=float(section.get("max_radius", 80)),
            radius_factor=float(section.get("radius_factor", 1.2)),
            default_radius=float(section.get("default_radius", 30)),
            stroke_width=float(section.get("stroke_width", 3)),
        )


@dataclass(frozen=True)
class MarkerGeometry:
    error_id: str
    kind: str  # circle|strikethrough|underline|highlight
    x: float
    y: float
    w: float
    h: float
    delay_ms: int = 0

    @property
    def radius(self) -> float:
        return self.w / 2 if self.kind == "circle" else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_id": self.error_id,
            "kind": self.kind,
            "x": self.x,
            "y": self.y,
            "w": self.w,
            "h": self.h,
            "delay_ms": self.delay_ms,
        }


def marker_geometry(error: ErrorAnnotation, index: int = 0, config: MarkingConfig = MarkingConfig()) -> MarkerGeometry:
    b, c = error.bbox, error.center
    delay = index * config.marker_stagger_ms

    if error.action == "circle":
        r = min(max(max(b.w, b.h) * config.radius_factor, config.min_radius), config.max_radius)
        return MarkerGeometry(error.id, "circle", c.x - r, c.y - r, 2 * r, 2 * r, delay)
    if error.action == "strikethrough":
        return MarkerGeometry(error.id, "strikethrough", b.x - 5, c.y, b.w + 10, 0.0, delay)
    if error.action == "underline":
        return MarkerGeometry(error.id, "underline", b.x - 3, b.y + b.h, b.w + 6, 0.0, delay)
    if error.action == "highlight":
        r = b.inflate(4)
        return MarkerGeometry(error.id, "highlight", r.x, r.y, r.w, r.h, delay)

    r = config.default_radius
    return MarkerGeometry(error.id, "circle", c.x - r, c.y - r, 2 * r, 2 * r, delay)


def _marker_shape(m: MarkerGeometry, config: MarkingConfig) -> tuple[str, float, float, dict[str, Any]]:
    if m.kind in ("strikethrough", "underline"):
        return SHAPE_DRAW, m.x, m.y, {
            "points": [[0, 0], [m.w, 0]],
            "stroke_width": config.stroke_width,
            "color": MARKER_COLOR,
        }
    if m.kind == "highlight":
        return SHAPE_GEO, m.x, m.y, {"geo": "rectangle", "w": m.w, "h": m.h, "color": "yellow", "fill": "semi"}
    return SHAPE_GEO, m.x, m.y, {"geo": "ellipse", "w": m.w, "h": m.h, "color": MARKER_COLOR, "fill": "none"}


def annotate_errors(
    canvas: CanvasEditor,
    errors: Sequence[ErrorAnnotation],
    config: MarkingConfig = MarkingConfig(),
) -> tuple[list[MarkerGeometry], list[str]]:
    """Create one marker shape per error. Returns (geometries, created shape ids)."""
    markers: list[MarkerGeometry] = []
    shape_ids: list[str] = []
    for i, err in enumerate(errors):
        if err.coordinate_space != "page":
            logger.warning("error %s is still in %s space; marking at its reported position", err.id, err.coordinate_space)
        m = marker_geometry(err, i, config)
        shape_type, x, y, props = _marker_shape(m, config)
        props["delay_ms"] = m.delay_ms
        shape_ids.append(canvas.create_shape(shape_type, x, y, props))
        markers.append(m)

    logger.info("created %d error markers", len(shape_ids))
    return markers, shape_ids


def add_suggestion_cards(
    canvas: CanvasEditor,
    errors: Sequence[ErrorAnnotation],
    placements: Sequence[SuggestionPlacement],
) -> list[str]:
    """Card text plus a lead line from the error center to the card center."""
    shape_ids: list[str] = []
    for err, p in zip(errors, placements):
        shape_ids.append(
            canvas.create_shape(
                SHAPE_TEXT,
                p.x,
                p.y,
                {
                    "text": f"{err.suggestion}\n{err.explanation}".strip(),
                    "w": p.width,
                    "h": p.height,
                    "font_size": 14,
                    "color": "blue",
                    "delay_ms": p.animation_delay_ms,
                },
            )
        )
        start, end = p.lead_line_start, p.lead_line_end
        shape_ids.append(
            canvas.create_shape(
                SHAPE_DRAW,
                start.x,
                start.y,
                {
                    "points": [[0, 0], [end.x - start.x, end.y - start.y]],
                    "stroke_width": 1,
                    "color": "blue",
                    "delay_ms": p.animation_delay_ms,
                },
            )
        )
    return shape_ids


def clear_marks(canvas: CanvasEditor, shape_ids: Iterable[str]) -> int:
    ids = list(shape_ids)
    if ids:
        canvas.delete_shapes(ids)
        logger.info("cleared %d marker shapes", len(ids))
    return len(ids)
