from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from io import BytesIO
from typing import Any, Protocol

import cv2
import numpy as np
from PIL import Image, ImageEnhance

from .errors import RecognitionServiceError
from .mapping import DEFAULT_SCALE_CONFIG, ScaleAnomalyConfig, detect_internal_scale
from .types import CharacterBox, OCRResult, Point, Rect
from .utils import char_id, new_image_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Glyph:
    text: str
    confidence: float  # 0..1
    bbox_xyxy: tuple[int, int, int, int]


def _poly_to_xyxy(poly: list[list[float]] | list[tuple[float, float]]) -> tuple[int, int, int, int]:
    xs = [p[0] for p in poly]
    ys = [p[1] for p in poly]
    x0, y0, x1, y1 = min(xs), min(ys), max(xs), max(ys)
    return int(x0), int(y0), int(x1), int(y1)


@dataclass(frozen=True)
class PreprocessOptions:
    grayscale: bool = True
    binary: bool = True
    denoise: bool = True
    enhance: bool = True
    contrast_factor: float = 1.5

    @classmethod
    def from_section(cls, section: dict[str, Any]) -> "PreprocessOptions":
        return cls(
            grayscale=bool(section.get("grayscale", True)),
            binary=bool(section.get("binary", True)),
            denoise=bool(section.get("denoise", True)),
            enhance=bool(section.get("enhance", True)),
            contrast_factor=float(section.get("contrast_factor", 1.5)),
        )


def preprocess_image(image: Image.Image, options: PreprocessOptions = PreprocessOptions()) -> Image.Image:
    """Fixed binarization pre-step. Output keeps the input pixel size."""
    arr = np.array(image.convert("RGB"))
    if options.grayscale or options.binary or options.denoise:
        arr = cv2.cvtColor(arr, cv2.COLOR_RGB2GRAY)

        # adaptive threshold copes with uneven canvas backgrounds
        if options.binary:
            arr = cv2.adaptiveThreshold(
                arr, 255,
                cv2.ADAPTIVE_THRESH_GAUSSIAN_C,
                cv2.THRESH_BINARY,
                11, 2,
            )

        if options.denoise:
            arr = cv2.fastNlMeansDenoising(arr, None, 10, 7, 21)

    processed = Image.fromarray(arr)
    if options.enhance:
        processed = ImageEnhance.Contrast(processed).enhance(options.contrast_factor)
    return processed.convert("RGB")


class GlyphBackend(Protocol):
    name: str

    def read(self, image: Image.Image) -> tuple[str, list[Glyph]]: ...


@dataclass
class TesseractBackend:
    """Character-level boxes via pytesseract (image_to_boxes + word confidences)."""
    lang: str = "eng"
    psm: int = 6
    oem: int = 1
    name: str = "tesseract"

    @property
    def tess_config(self) -> str:
        return f"--psm {self.psm} --oem {self.oem} -c preserve_interword_spaces=1"

    def read(self, image: Image.Image) -> tuple[str, list[Glyph]]:
        import pytesseract

        h = image.height
        text = pytesseract.image_to_string(image, lang=self.lang, config=self.tess_config)
        boxes = pytesseract.image_to_boxes(
            image, lang=self.lang, config=self.tess_config, output_type=pytesseract.Output.DICT
        )
        words = pytesseract.image_to_data(
            image, lang=self.lang, config=self.tess_config, output_type=pytesseract.Output.DICT
        )

        word_boxes: list[tuple[tuple[int, int, int, int], float]] = []
        for i, wtext in enumerate(words.get("text", [])):
            conf = float(words["conf"][i])
            if not str(wtext).strip() or conf < 0:
                continue
            x0, y0 = int(words["left"][i]), int(words["top"][i])
            word_boxes.append(((x0, y0, x0 + int(words["width"][i]), y0 + int(words["height"][i])), conf / 100.0))

        glyphs: list[Glyph] = []
        for i, ch in enumerate(boxes.get("char", [])):
            if not str(ch).strip():
                continue
            # Tesseract box origin is bottom-left.
            x0, x1 = int(boxes["left"][i]), int(boxes["right"][i])
            y0, y1 = h - int(boxes["top"][i]), h - int(boxes["bottom"][i])
            cx, cy = (x0 + x1) / 2, (y0 + y1) / 2
            conf = 0.0
            for (wx0, wy0, wx1, wy1), wconf in word_boxes:
                if wx0 <= cx <= wx1 and wy0 <= cy <= wy1:
                    conf = wconf
                    break
            glyphs.append(Glyph(text=str(ch), confidence=conf, bbox_xyxy=(x0, y0, x1, y1)))
        return text.strip(), glyphs


@dataclass
class EasyOCRBackend:
    """Word-level EasyOCR boxes split into equal-width glyph cells."""
    lang: str = "en"
    gpu: bool = False
    name: str = "easyocr"
    _reader: Any | None = None

    def read(self, image: Image.Image) -> tuple[str, list[Glyph]]:
        import easyocr

        if self._reader is None:
            self._reader = easyocr.Reader(self.lang.split(","), gpu=self.gpu)

        results = self._reader.readtext(np.array(image))
        texts: list[str] = []
        glyphs: list[Glyph] = []
        for (poly, text, confidence) in results:
            texts.append(text)
            x0, y0, x1, y1 = _poly_to_xyxy(poly)
            chars = [c for c in text if c.strip()]
            if not chars:
                continue
            cell = (x1 - x0) / len(chars)
            for k, c in enumerate(chars):
                cx0 = int(round(x0 + k * cell))
                cx1 = int(round(x0 + (k + 1) * cell))
                glyphs.append(Glyph(text=c, confidence=float(confidence), bbox_xyxy=(cx0, y0, cx1, y1)))
        return " ".join(texts).strip(), glyphs


def build_backend(engine: str, ocr_cfg: dict[str, Any] | None = None) -> GlyphBackend:
    ocr_cfg = ocr_cfg or {}
    if engine == "tesseract":
        return TesseractBackend(
            lang=str(ocr_cfg.get("tesseract_lang", "eng")),
            psm=int(ocr_cfg.get("tesseract_psm", 6)),
        )
    if engine == "easyocr":
        return EasyOCRBackend(lang=str(ocr_cfg.get("easyocr_lang", "en")), gpu=bool(ocr_cfg.get("gpu", False)))
    raise ValueError(f"Unknown OCR engine: {engine}")


def glyphs_to_char_boxes(glyphs: list[Glyph]) -> list[CharacterBox]:
    out: list[CharacterBox] = []
    for g in glyphs:
        x0, y0, x1, y1 = g.bbox_xyxy
        bbox = Rect(float(x0), float(y0), float(x1 - x0), float(y1 - y0))
        center = Point(float(round(bbox.x + bbox.w / 2)), float(round(bbox.y + bbox.h / 2)))
        out.append(CharacterBox(id=char_id(len(out)), char=g.text, bbox=bbox, center=center, confidence=g.confidence))
    return out


class Recognizer(Protocol):
    async def recognize(self, raster: bytes) -> OCRResult: ...


@dataclass
class OCREngine:
    """Async OCR collaborator over a glyph backend.

    The backend runs off the event loop; callers only see an awaitable.
    Boxes always refer to the unmodified raster size.
    """
    backend: GlyphBackend
    preprocess: PreprocessOptions = field(default_factory=PreprocessOptions)
    scale_config: ScaleAnomalyConfig = DEFAULT_SCALE_CONFIG
    max_retries: int = 2

    async def recognize(self, raster: bytes) -> OCRResult:
        return await asyncio.to_thread(self._recognize_sync, raster)

    def _recognize_sync(self, raster: bytes) -> OCRResult:
        start = time.time()
        try:
            original = Image.open(BytesIO(raster)).convert("RGB")
        except Exception as e:
            raise RecognitionServiceError(f"unreadable raster: {e}") from e
        processed = preprocess_image(original, self.preprocess)

        full_text, glyphs = "", []
        for attempt in range(self.max_retries):
            # first pass on the binarized raster, retry on the untouched one
            image = processed if attempt == 0 else original
            try:
                full_text, glyphs = self.backend.read(image)
            except Exception as e:
                if attempt == self.max_retries - 1:
                    raise RecognitionServiceError(f"{self.backend.name} failed: {e}") from e
                logger.warning("%s attempt %d failed: %s", self.backend.name, attempt + 1, e)
                continue
            if glyphs:
                break

        char_boxes = glyphs_to_char_boxes(glyphs)
        factor = 1.0
        if char_boxes:
            factor = detect_internal_scale(char_boxes[0].bbox.h, processed.height, config=self.scale_config)

        buf_o, buf_p = BytesIO(), BytesIO()
        original.save(buf_o, format="PNG")
        processed.save(buf_p, format="PNG")
        return OCRResult(
            image_id=new_image_id(),
            timestamp=time.time(),
            full_text=full_text,
            char_boxes=char_boxes,
            image_width=original.width,
            image_height=original.height,
            processing_time_ms=(time.time() - start) * 1000.0,
            detected_internal_scale_factor=factor,
            original_image=buf_o.getvalue(),
            preprocessed_image=buf_p.getvalue(),
        )


@dataclass
class OCRValidation:
    is_valid: bool
    issues: list[str]
    suggestions: list[str]


def validate_ocr_result(result: OCRResult) -> OCRValidation:
    issues: list[str] = []
    suggestions: list[str] = []

    if not result.full_text:
        issues.append("No text was recognized")
        suggestions.append("Try improving image quality or adjusting preprocessing settings")

    if not result.char_boxes:
        issues.append("No character boxes were extracted")
        suggestions.append("Image may be too blurry or text too small")
    else:
        avg = sum(c.confidence for c in result.char_boxes) / len(result.char_boxes)
        if avg < 0.5:
            issues.append(f"Low average confidence: {avg * 100:.1f}%")
            suggestions.append("Consider improving image preprocessing or using different OCR settings")
        if any(c.confidence < 0.3 for c in result.char_boxes):
            issues.append("Some characters have very low confidence")
            suggestions.append("Manual review may be needed for low-confidence characters")

    return OCRValidation(is_valid=not issues, issues=issues, suggestions=suggestions)
