from __future__ import annotations

import asyncio
import time
from io import BytesIO
from typing import Callable

import pytest
from PIL import Image

from inkmark_engine.canvas import CanvasShape, InMemoryCanvas
from inkmark_engine.readiness import ImageReadinessGate, ProxyImage
from inkmark_engine.store import RecognitionStore
from inkmark_engine.types import (
    CameraTransform,
    CharacterBox,
    ErrorAnalysisResult,
    ErrorAnnotation,
    OCRResult,
    Point,
    Rect,
)


def png_bytes(width: int, height: int, color=(255, 255, 255)) -> bytes:
    buf = BytesIO()
    Image.new("RGB", (width, height), color=color).save(buf, format="PNG")
    return buf.getvalue()


def make_char(index: int, x: float, y: float, w: float, h: float, char: str = "1", confidence: float = 0.9) -> CharacterBox:
    bbox = Rect(x, y, w, h)
    return CharacterBox(id=f"c{index:03d}", char=char, bbox=bbox, center=bbox.center, confidence=confidence)


class FakeRecognizer:
    """Returns fixed char boxes; records every raster it was given."""

    def __init__(self, chars: list[CharacterBox], *, factor: float | None = 1.0, error: Exception | None = None):
        self.chars = chars
        self.factor = factor
        self.error = error
        self.seen: list[bytes] = []
        self.gate: asyncio.Event | None = None

    async def recognize(self, raster: bytes) -> OCRResult:
        self.seen.append(raster)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        with Image.open(BytesIO(raster)) as img:
            w, h = img.size
        return OCRResult(
            image_id="ocr_test000001",
            timestamp=time.time(),
            full_text="".join(c.char for c in self.chars),
            char_boxes=list(self.chars),
            image_width=w,
            image_height=h,
            detected_internal_scale_factor=self.factor,
            original_image=raster,
        )


class FakeAnalyzer:
    def __init__(self, errors: list[ErrorAnnotation], *, error: Exception | None = None):
        self.errors = errors
        self.error = error
        self.calls: list[tuple[bytes, list[CharacterBox], str]] = []

    async def analyze(self, image: bytes, char_boxes: list[CharacterBox], full_text: str) -> ErrorAnalysisResult:
        self.calls.append((image, char_boxes, full_text))
        if self.error is not None:
            raise self.error
        return ErrorAnalysisResult(original_content=full_text, has_errors=bool(self.errors), results=list(self.errors))


def make_error(error_id: str, bbox: Rect, action: str = "circle") -> ErrorAnnotation:
    return ErrorAnnotation(
        id=error_id,
        bbox=bbox,
        center=bbox.center,
        error_type="math",
        suggestion="6",
        explanation="2 x 3 = 6",
        action=action,
    )


@pytest.fixture
def ink_canvas() -> InMemoryCanvas:
    """One stroke spanning page (99, 199)-(401, 351) once stroke width is included."""
    stroke = CanvasShape(
        id="shape:ink",
        type="draw",
        x=100,
        y=200,
        props={"points": [[0, 0], [150, 75], [300, 150]], "stroke_width": 2},
    )
    canvas = InMemoryCanvas([stroke], camera=CameraTransform(0, 0, 1), screen_size=(1280, 800))
    canvas.select(["shape:ink"])
    return canvas


@pytest.fixture
def gate() -> ImageReadinessGate:
    return ImageReadinessGate(ProxyImage())


@pytest.fixture
def store() -> RecognitionStore:
    return RecognitionStore()


@pytest.fixture
def chars() -> list[CharacterBox]:
    return [
        make_char(1, 10, 20, 30, 40, "2"),
        make_char(2, 60, 20, 30, 40, "x"),
        make_char(3, 110, 20, 30, 40, "5"),
    ]


@pytest.fixture
def no_sleep() -> Callable:
    calls: list[float] = []

    async def _sleep(seconds: float) -> None:
        calls.append(seconds)

    _sleep.calls = calls  # type: ignore[attr-defined]
    return _sleep


@pytest.fixture
def anchor() -> Point:
    return Point(500, 500)
