"""Pixel -> page coordinate mapping.

mapping rules:
- scale_x = page_rect.w / natural_width, scale_y = page_rect.h / natural_height,
  both read from one ImageGeometry snapshot
- corners are mapped independently; w/h are differences of mapped corners
- scale-anomaly correction runs once, on pixel boxes, before mapping
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Sequence

from .geometry import screen_to_page
from .types import CameraTransform, ImageGeometry, PageBox, PixelBox, Rect

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScaleAnomalyConfig:
    """Heuristic knobs. The 1.5 / 0.8 thresholds are tunables, not guarantees."""
    position_ratio: float = 1.5
    size_ratio: float = 0.8
    fallback_factor: float = 2.0
    first_glyph_height_ratio: float = 0.5

    @classmethod
    def from_section(cls, section: dict[str, Any]) -> "ScaleAnomalyConfig":
        return cls(
            position_ratio=float(section.get("heuristic_position_ratio", 1.5)),
            size_ratio=float(section.get("heuristic_size_ratio", 0.8)),
            fallback_factor=float(section.get("fallback_scale_factor", 2.0)),
            first_glyph_height_ratio=float(section.get("first_glyph_height_ratio", 0.5)),
        )


DEFAULT_SCALE_CONFIG = ScaleAnomalyConfig()


def _check_geometry(geometry: ImageGeometry) -> None:
    if geometry.natural_width <= 0 or geometry.natural_height <= 0:
        raise ValueError(
            f"invalid natural size {geometry.natural_width}x{geometry.natural_height}; "
            "geometry must come from a decoded image"
        )


def map_to_page(box: PixelBox, geometry: ImageGeometry) -> PageBox:
    _check_geometry(geometry)
    if not all(math.isfinite(v) for v in (box.x, box.y, box.w, box.h)):
        raise ValueError(f"non-finite pixel box {box.id}: {box}")

    rect = geometry.page_rect
    nw = geometry.natural_width
    nh = geometry.natural_height

    # v * (page / natural) evaluated as (v * page) / natural keeps integral
    # inputs exact, so the full-image box maps back onto page_rect.
    x1 = rect.x + box.x * rect.w / nw
    y1 = rect.y + box.y * rect.h / nh
    x2 = rect.x + (box.x + box.w) * rect.w / nw
    y2 = rect.y + (box.y + box.h) * rect.h / nh
    return PageBox(id=box.id, x=x1, y=y1, w=x2 - x1, h=y2 - y1)


def map_boxes_to_page(boxes: Sequence[PixelBox], geometry: ImageGeometry) -> list[PageBox]:
    return [map_to_page(b, geometry) for b in boxes]


def geometry_from_screen_rect(
    screen_rect: Rect,
    natural_width: int,
    natural_height: int,
    camera: CameraTransform,
) -> ImageGeometry:
    """Build geometry from an on-screen element rectangle (proxy element fallback path)."""
    return ImageGeometry(
        page_rect=screen_to_page(screen_rect, camera),
        natural_width=natural_width,
        natural_height=natural_height,
    )


def detect_internal_scale(
    first_glyph_height: float,
    image_height: float,
    *,
    config: ScaleAnomalyConfig = DEFAULT_SCALE_CONFIG,
) -> float:
    """Authoritative detection done by the OCR adapter: a first glyph taller
    than half the image means the engine worked on an upscaled bitmap."""
    if image_height <= 0:
        return 1.0
    if first_glyph_height / image_height > config.first_glyph_height_ratio:
        return config.fallback_factor
    return 1.0


def is_oversized(
    box: PixelBox,
    natural_width: float,
    natural_height: float,
    *,
    config: ScaleAnomalyConfig = DEFAULT_SCALE_CONFIG,
) -> bool:
    return (
        box.x > natural_width * config.position_ratio
        or box.y > natural_height * config.position_ratio
        or box.w > natural_width * config.size_ratio
        or box.h > natural_height * config.size_ratio
    )


def resolve_scale_factor(
    box: PixelBox,
    natural_width: float,
    natural_height: float,
    reported_factor: float | None = None,
    *,
    config: ScaleAnomalyConfig = DEFAULT_SCALE_CONFIG,
) -> float:
    """Reported factor wins when > 1; otherwise the per-box heuristic decides."""
    if reported_factor is not None and reported_factor > 1:
        return float(reported_factor)
    if is_oversized(box, natural_width, natural_height, config=config):
        return config.fallback_factor
    return 1.0


def correct_box(box: PixelBox, factor: float) -> PixelBox:
    """Return a derived copy divided by factor; the input box is never mutated."""
    if factor <= 1:
        return box
    return PixelBox(id=box.id, x=box.x / factor, y=box.y / factor, w=box.w / factor, h=box.h / factor)


@dataclass
class ScaleCorrection:
    boxes: list[PixelBox]
    factors: dict[str, float] = field(default_factory=dict)
    source: str = "none"  # none|reported|heuristic

    @property
    def corrected_count(self) -> int:
        return sum(1 for f in self.factors.values() if f > 1)


def correct_scale(
    boxes: Sequence[PixelBox],
    natural_width: float,
    natural_height: float,
    reported_factor: float | None = None,
    *,
    config: ScaleAnomalyConfig = DEFAULT_SCALE_CONFIG,
) -> ScaleCorrection:
    out = ScaleCorrection(boxes=[])
    if reported_factor is not None and reported_factor > 1:
        out.source = "reported"
    for b in boxes:
        f = resolve_scale_factor(b, natural_width, natural_height, reported_factor, config=config)
        if f > 1 and out.source == "none":
            out.source = "heuristic"
        out.factors[b.id] = f
        out.boxes.append(correct_box(b, f))

    if out.corrected_count:
        logger.warning(
            "scale anomaly: corrected %d/%d boxes (source=%s)",
            out.corrected_count,
            len(out.boxes),
            out.source,
        )
    return out


def map_with_correction(
    boxes: Sequence[PixelBox],
    geometry: ImageGeometry,
    reported_factor: float | None = None,
    *,
    config: ScaleAnomalyConfig = DEFAULT_SCALE_CONFIG,
) -> list[PageBox]:
    corrected = correct_scale(
        boxes,
        geometry.natural_width,
        geometry.natural_height,
        reported_factor,
        config=config,
    )
    return map_boxes_to_page(corrected.boxes, geometry)
