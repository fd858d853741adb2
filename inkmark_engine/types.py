from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class Point:
    x: float
    y: float

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Point":
        return cls(float(d["x"]), float(d["y"]))


@dataclass(frozen=True)
class Rect:
    """Axis-aligned rectangle in XYWH format (any coordinate space)."""
    x: float
    y: float
    w: float
    h: float

    @property
    def max_x(self) -> float:
        return self.x + self.w

    @property
    def max_y(self) -> float:
        return self.y + self.h

    @property
    def center(self) -> Point:
        return Point(self.x + self.w / 2, self.y + self.h / 2)

    def inflate(self, pad: float) -> "Rect":
        return Rect(self.x - pad, self.y - pad, self.w + 2 * pad, self.h + 2 * pad)

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y, "w": self.w, "h": self.h}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Rect":
        # Accept both w/h and width/height spellings.
        w = d["w"] if "w" in d else d["width"]
        h = d["h"] if "h" in d else d["height"]
        return cls(float(d["x"]), float(d["y"]), float(w), float(h))


@dataclass(frozen=True)
class PixelBox:
    """Box in raster pixel space (origin top-left of the capture). Ground truth once produced."""
    id: str
    x: float
    y: float
    w: float
    h: float

    @property
    def rect(self) -> Rect:
        return Rect(self.x, self.y, self.w, self.h)

    @property
    def center(self) -> Point:
        return self.rect.center

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "x": self.x, "y": self.y, "w": self.w, "h": self.h}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "PixelBox":
        src = d.get("bbox", d) if isinstance(d.get("bbox"), dict) else d
        return cls(str(d.get("id", "unknown")), float(src["x"]), float(src["y"]), float(src["w"]), float(src["h"]))


@dataclass(frozen=True)
class PageBox:
    """Box in canvas page coordinates. Always derived from a PixelBox."""
    id: str
    x: float
    y: float
    w: float
    h: float

    @property
    def rect(self) -> Rect:
        return Rect(self.x, self.y, self.w, self.h)

    @property
    def center(self) -> Point:
        return self.rect.center

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "x": self.x, "y": self.y, "w": self.w, "h": self.h}


@dataclass(frozen=True)
class CharacterBox:
    id: str  # c001, c002, ...
    char: str
    bbox: Rect
    center: Point
    confidence: float  # 0..1

    @property
    def pixel_box(self) -> PixelBox:
        return PixelBox(self.id, self.bbox.x, self.bbox.y, self.bbox.w, self.bbox.h)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "char": self.char,
            "bbox": self.bbox.to_dict(),
            "center": self.center.to_dict(),
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "CharacterBox":
        bbox = Rect.from_dict(d["bbox"])
        center = Point.from_dict(d["center"]) if d.get("center") else bbox.center
        return cls(
            id=str(d["id"]),
            char=str(d.get("char", "")),
            bbox=bbox,
            center=center,
            confidence=float(d.get("confidence", 0.0)),
        )


@dataclass(frozen=True)
class CameraTransform:
    """Viewport pan offset (x, y) and zoom (z). Owned by the canvas editor."""
    x: float = 0.0
    y: float = 0.0
    z: float = 1.0


@dataclass(frozen=True)
class ImageGeometry:
    """Page rectangle occupied by a raster plus the raster's intrinsic size.

    Both scale factors must come from the same snapshot.
    """
    page_rect: Rect
    natural_width: int
    natural_height: int

    @property
    def scale_x(self) -> float:
        return self.page_rect.w / self.natural_width

    @property
    def scale_y(self) -> float:
        return self.page_rect.h / self.natural_height

    def to_dict(self) -> dict[str, Any]:
        return {
            "page_rect": self.page_rect.to_dict(),
            "natural_width": self.natural_width,
            "natural_height": self.natural_height,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "ImageGeometry":
        rect = d.get("page_rect", d.get("pageRect", d.get("rect")))
        return cls(
            page_rect=Rect.from_dict(rect),
            natural_width=int(d.get("natural_width", d.get("naturalWidth"))),
            natural_height=int(d.get("natural_height", d.get("naturalHeight"))),
        )


@dataclass
class OCRResult:
    image_id: str
    timestamp: float
    full_text: str
    char_boxes: list[CharacterBox]
    image_width: int
    image_height: int
    processing_time_ms: float = 0.0
    detected_internal_scale_factor: float | None = None
    original_image: bytes | None = field(default=None, repr=False)
    preprocessed_image: bytes | None = field(default=None, repr=False)

    @property
    def pixel_boxes(self) -> list[PixelBox]:
        return [c.pixel_box for c in self.char_boxes]

    def to_dict(self) -> dict[str, Any]:
        return {
            "image_id": self.image_id,
            "timestamp": self.timestamp,
            "full_text": self.full_text,
            "char_boxes": [c.to_dict() for c in self.char_boxes],
            "metadata": {
                "image_width": self.image_width,
                "image_height": self.image_height,
                "processing_time_ms": self.processing_time_ms,
                "detected_internal_scale_factor": self.detected_internal_scale_factor,
            },
        }


ERROR_TYPES = ("math", "notation", "dimension", "property", "concept")
MARK_ACTIONS = ("circle", "strikethrough", "underline", "highlight")


@dataclass(frozen=True)
class ErrorAnnotation:
    """Error reported by the reasoning service for one character id.

    bbox/center are untrusted until reconciled; coordinate_space tells which
    space they are expressed in ("pixel" before reconciliation).
    """
    id: str
    bbox: Rect
    center: Point
    error_type: str
    suggestion: str
    explanation: str
    action: str = "circle"
    coordinate_space: str = "pixel"
    verified: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "bbox": self.bbox.to_dict(),
            "center": self.center.to_dict(),
            "errorType": self.error_type,
            "suggestion": self.suggestion,
            "explanation": self.explanation,
            "action": self.action,
            "coordinate_space": self.coordinate_space,
            "verified": self.verified,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "ErrorAnnotation":
        bbox = Rect.from_dict(d["bbox"])
        center = Point.from_dict(d["center"]) if d.get("center") else bbox.center
        return cls(
            id=str(d["id"]),
            bbox=bbox,
            center=center,
            error_type=str(d.get("errorType", d.get("error_type", "math"))),
            suggestion=str(d.get("suggestion", "")),
            explanation=str(d.get("explanation", "")),
            action=str(d.get("action", "circle")),
            coordinate_space=str(d.get("coordinate_space", "pixel")),
            verified=bool(d.get("verified", False)),
        )


@dataclass
class ErrorAnalysisResult:
    original_content: str
    has_errors: bool
    results: list[ErrorAnnotation]
    processing_time_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "originalContent": self.original_content,
            "hasErrors": self.has_errors,
            "results": [e.to_dict() for e in self.results],
            "processing_time_ms": self.processing_time_ms,
        }


class CapturePhase(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    INITIALIZED = "initialized"
    RECOGNIZING = "recognizing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def in_flight(self) -> bool:
        return self in (CapturePhase.INITIALIZING, CapturePhase.RECOGNIZING)


@dataclass
class CaptureSession:
    """Working state of one two-phase capture. Mutated only by the state machine."""
    session_id: str
    phase: CapturePhase = CapturePhase.IDLE
    shape_ids: list[str] = field(default_factory=list)
    selection_page_bounds: Rect | None = None
    raster: bytes | None = field(default=None, repr=False)
    image_geometry: ImageGeometry | None = None
    created_at: str = ""
