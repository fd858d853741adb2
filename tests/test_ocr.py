"""OCR adapter: preprocessing, glyph conversion, scale detection, validation.

No OCR binary is invoked; a fake glyph backend stands in for Tesseract.
"""
from __future__ import annotations

import asyncio
from io import BytesIO

import pytest
from PIL import Image, ImageDraw

from conftest import make_char
from inkmark_engine.errors import RecognitionServiceError
from inkmark_engine.ocr import (
    EasyOCRBackend,
    Glyph,
    OCREngine,
    PreprocessOptions,
    TesseractBackend,
    build_backend,
    glyphs_to_char_boxes,
    preprocess_image,
    validate_ocr_result,
)
from inkmark_engine.types import OCRResult, Point, Rect


class FakeBackend:
    name = "fake"

    def __init__(self, glyphs: list[Glyph], *, failures: int = 0, text: str = "2x3"):
        self.glyphs = glyphs
        self.failures = failures
        self.text = text
        self.sizes: list[tuple[int, int]] = []

    def read(self, image: Image.Image) -> tuple[str, list[Glyph]]:
        self.sizes.append(image.size)
        if self.failures:
            self.failures -= 1
            raise RuntimeError("engine crashed")
        return self.text, list(self.glyphs)


@pytest.fixture
def handwriting_png() -> bytes:
    img = Image.new("RGB", (240, 120), color=(240, 240, 235))
    draw = ImageDraw.Draw(img)
    draw.line([(20, 30), (60, 90)], fill=(20, 20, 20), width=4)
    draw.line([(80, 30), (120, 90)], fill=(20, 20, 20), width=4)
    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


class TestPreprocessing:
    """Fixed binarization pre-step."""

    def test_keeps_pixel_size(self):
        img = Image.new("RGB", (123, 45), color=(200, 200, 200))
        out = preprocess_image(img)

        assert out.size == (123, 45)
        assert out.mode == "RGB"

    def test_binary_output(self):
        img = Image.new("RGB", (64, 64), color=(255, 255, 255))
        ImageDraw.Draw(img).rectangle([20, 20, 40, 40], fill=(0, 0, 0))

        out = preprocess_image(img, PreprocessOptions(denoise=False, enhance=False))

        values = set(out.convert("L").getdata())
        assert values <= {0, 255}

    def test_options_from_section(self):
        opts = PreprocessOptions.from_section({"denoise": False, "contrast_factor": 2})
        assert not opts.denoise
        assert opts.binary
        assert opts.contrast_factor == 2.0


class TestGlyphConversion:
    """Backend glyphs -> character boxes with c001.. ids."""

    def test_ids_boxes_and_rounded_centers(self):
        boxes = glyphs_to_char_boxes(
            [
                Glyph("2", 0.9, (10, 20, 25, 45)),
                Glyph("x", 0.8, (30, 20, 41, 45)),
            ]
        )

        assert [b.id for b in boxes] == ["c001", "c002"]
        assert boxes[0].bbox == Rect(10, 20, 15, 25)
        assert boxes[0].center == Point(18, 32)  # 17.5 and 32.5 rounded half-to-even
        assert boxes[1].char == "x"
        assert boxes[1].confidence == 0.8

    def test_build_backend(self):
        assert isinstance(build_backend("tesseract", {"tesseract_psm": 7}), TesseractBackend)
        assert build_backend("tesseract", {"tesseract_psm": 7}).psm == 7
        assert isinstance(build_backend("easyocr"), EasyOCRBackend)
        with pytest.raises(ValueError):
            build_backend("paddle")


class TestOCREngine:
    """Async adapter around a glyph backend."""

    def test_recognize(self, handwriting_png: bytes):
        backend = FakeBackend([Glyph("2", 0.9, (20, 30, 60, 90)), Glyph("x", 0.9, (80, 30, 120, 90))])
        engine = OCREngine(backend=backend)

        result = asyncio.run(engine.recognize(handwriting_png))

        assert result.full_text == "2x3"
        assert [c.id for c in result.char_boxes] == ["c001", "c002"]
        assert (result.image_width, result.image_height) == (240, 120)
        assert result.image_id.startswith("ocr_")
        assert backend.sizes == [(240, 120)]
        assert result.original_image and result.preprocessed_image

    def test_reports_internal_scale(self, handwriting_png: bytes):
        # first glyph 80px tall on a 120px image
        backend = FakeBackend([Glyph("2", 0.9, (20, 20, 60, 100))])
        result = asyncio.run(OCREngine(backend=backend).recognize(handwriting_png))

        assert result.detected_internal_scale_factor == 2.0

    def test_no_scale_for_normal_glyphs(self, handwriting_png: bytes):
        backend = FakeBackend([Glyph("2", 0.9, (20, 30, 60, 60))])
        result = asyncio.run(OCREngine(backend=backend).recognize(handwriting_png))

        assert result.detected_internal_scale_factor == 1.0

    def test_retries_on_original_raster(self, handwriting_png: bytes):
        backend = FakeBackend([Glyph("2", 0.9, (20, 30, 60, 60))], failures=1)
        result = asyncio.run(OCREngine(backend=backend).recognize(handwriting_png))

        assert len(backend.sizes) == 2
        assert len(result.char_boxes) == 1

    def test_gives_up_after_retries(self, handwriting_png: bytes):
        backend = FakeBackend([], failures=5)

        with pytest.raises(RecognitionServiceError):
            asyncio.run(OCREngine(backend=backend, max_retries=2).recognize(handwriting_png))
        assert len(backend.sizes) == 2

    def test_unreadable_raster(self):
        with pytest.raises(RecognitionServiceError):
            asyncio.run(OCREngine(backend=FakeBackend([])).recognize(b"garbage"))


class TestValidation:
    """OCR quality checks are advisory."""

    def _result(self, chars, text="2x5") -> OCRResult:
        return OCRResult(image_id="ocr_x", timestamp=0, full_text=text, char_boxes=chars, image_width=10, image_height=10)

    def test_good_result(self, chars):
        check = validate_ocr_result(self._result(chars))
        assert check.is_valid
        assert check.issues == []

    def test_empty(self):
        check = validate_ocr_result(self._result([], text=""))
        assert not check.is_valid
        assert len(check.issues) == 2
        assert len(check.suggestions) == 2

    def test_low_confidence(self):
        chars = [make_char(1, 0, 0, 5, 5, confidence=0.2), make_char(2, 5, 0, 5, 5, confidence=0.6)]
        check = validate_ocr_result(self._result(chars))

        assert not check.is_valid
        assert any("Low average confidence" in i for i in check.issues)
        assert any("very low confidence" in i for i in check.issues)
