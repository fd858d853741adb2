"""Data directory for persisted artifacts.

Files are routed into subdirectories by filename prefix, mirroring the
generic save-file endpoint the editor talks to. Persistence never aborts a
capture; callers log and continue.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Any, Sequence

from PIL import Image, ImageDraw, ImageFont

from .types import CharacterBox, ErrorAnalysisResult, ImageGeometry, OCRResult, PageBox, PixelBox
from .utils import append_jsonl, decode_image_content, ensure_dir, timestamp_token, utc_now_iso, write_json

logger = logging.getLogger(__name__)

SUBDIRS = ("ocr-results", "visualizations", "canvas-screenshots", "gpt-analysis", "coordinates")

# checked in order; first match wins
PREFIX_ROUTES = (
    ("canvas_screenshot_", "canvas-screenshots"),
    ("coordinates_", "coordinates"),
    ("canvas_analysis_", "gpt-analysis"),
    ("gpt_analysis_", "gpt-analysis"),
    ("visualization_", "visualizations"),
)
DEFAULT_SUBDIR = "ocr-results"


def route_for(filename: str) -> str:
    for prefix, subdir in PREFIX_ROUTES:
        if filename.startswith(prefix):
            return subdir
    return DEFAULT_SUBDIR


def _get_font(size: int = 16) -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
    for font_name in ["arial.ttf", "Arial.ttf", "DejaVuSans.ttf", "FreeSans.ttf"]:
        try:
            return ImageFont.truetype(font_name, size)
        except OSError:
            continue
    return ImageFont.load_default()


def draw_ocr_visualization(
    image: Image.Image,
    char_boxes: Sequence[CharacterBox],
    *,
    box_color: str = "#ff0000",
    center_color: str = "#00ff00",
    text_color: str = "#ff0000",
) -> Image.Image:
    """Boxes, center points and character ids drawn over the raster."""
    out = image.copy().convert("RGB")
    draw = ImageDraw.Draw(out)
    font = _get_font(max(10, min(out.width, out.height) // 50))

    for c in char_boxes:
        b = c.bbox
        draw.rectangle([(b.x, b.y), (b.max_x, b.max_y)], outline=box_color, width=2)
        cx, cy = c.center.x, c.center.y
        draw.ellipse([(cx - 2, cy - 2), (cx + 2, cy + 2)], fill=center_color)
        draw.text((b.x, max(0, b.y - 12)), c.id, fill=text_color, font=font)
    return out


@dataclass
class SavedFile:
    filename: str
    subdir: str
    path: Path

    @property
    def relative(self) -> str:
        return f"{self.subdir}/{self.filename}"


class DataDirectory:
    def __init__(self, root: str | Path):
        self.root = Path(root)
        self.errors_jsonl = self.root / "errors.jsonl"

    def ensure(self) -> None:
        ensure_dir(self.root)
        for sub in SUBDIRS:
            ensure_dir(self.root / sub)

    def save_file(self, filename: str, content: Any, kind: str = "json") -> SavedFile:
        """Write content under the subdirectory its prefix routes to.

        kind="json": dict/list are serialized, str is written as-is.
        kind="image": raw bytes, base64 text or a data URL.
        """
        if not filename or Path(filename).name != filename:
            raise ValueError(f"invalid filename: {filename!r}")

        subdir = route_for(filename)
        target = self.root / subdir / filename
        ensure_dir(target.parent)

        if kind == "json":
            if isinstance(content, str):
                target.write_text(content, encoding="utf-8")
            else:
                write_json(target, content)
        elif kind == "image":
            target.write_bytes(decode_image_content(content))
        else:
            raise ValueError(f"unknown kind: {kind}")

        logger.debug("saved %s/%s", subdir, filename)
        return SavedFile(filename=filename, subdir=subdir, path=target)

    def list_files(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(p.relative_to(self.root).as_posix() for p in self.root.rglob("*") if p.is_file())

    def record_error(self, session_id: str, stage: str, message: str) -> None:
        append_jsonl(self.errors_jsonl, {"session_id": session_id, "stage": stage, "message": message, "at": utc_now_iso()})

    # artifact helpers

    def save_screenshot(self, raster: bytes, session_id: str) -> SavedFile:
        return self.save_file(f"canvas_screenshot_{session_id[:8]}_{timestamp_token()}.png", raster, "image")

    def save_ocr_result(self, result: OCRResult) -> tuple[SavedFile, SavedFile | None]:
        base = f"{result.image_id}_{timestamp_token()}"
        vis_name = f"visualization_{base}.png"

        vis: SavedFile | None = None
        if result.original_image:
            with Image.open(BytesIO(result.original_image)) as img:
                rendered = draw_ocr_visualization(img, result.char_boxes)
            buf = BytesIO()
            rendered.save(buf, format="PNG")
            vis = self.save_file(vis_name, buf.getvalue(), "image")

        data = result.to_dict()
        data["visualization_image_file"] = vis_name if vis else None
        saved = self.save_file(f"ocr_result_{base}.json", data)
        logger.info("saved OCR result %s (%d chars)", saved.relative, len(result.char_boxes))
        return saved, vis

    def save_error_analysis(self, analysis: ErrorAnalysisResult, ocr: OCRResult) -> SavedFile:
        by_id = {c.id: c for c in ocr.char_boxes}
        n_chars = len(ocr.char_boxes)
        n_errors = len(analysis.results)
        data = {
            "timestamp": utc_now_iso(),
            "image_id": ocr.image_id,
            "ocr_full_text": ocr.full_text,
            "ocr_character_count": n_chars,
            "analysis": analysis.to_dict(),
            "error_details": [
                {
                    "error_number": i + 1,
                    "character_id": e.id,
                    "error_type": e.error_type,
                    "suggestion": e.suggestion,
                    "explanation": e.explanation,
                    "action": e.action,
                    "position": {"bbox": e.bbox.to_dict(), "center": e.center.to_dict()},
                    "ocr_character": by_id[e.id].to_dict() if e.id in by_id else None,
                }
                for i, e in enumerate(analysis.results)
            ],
            "summary": {
                "total_characters": n_chars,
                "errors_found": n_errors,
                "error_rate": f"{n_errors / n_chars * 100:.2f}%" if n_chars else "0%",
                "error_types": sorted({e.error_type for e in analysis.results}),
                "actions": sorted({e.action for e in analysis.results}),
            },
        }
        return self.save_file(f"gpt_analysis_{ocr.image_id}_{timestamp_token()}.json", data)

    def save_coordinates(
        self,
        session_id: str,
        pixel_boxes: Sequence[PixelBox],
        page_boxes: Sequence[PageBox],
        geometry: ImageGeometry,
        scale_factors: dict[str, float] | None = None,
    ) -> SavedFile:
        factors = scale_factors or {}
        data = {
            "timestamp": utc_now_iso(),
            "session_id": session_id,
            "geometry": geometry.to_dict(),
            "boxes": [
                {
                    "id": px.id,
                    "pixel": px.to_dict(),
                    "page": pg.to_dict(),
                    "scale_factor": factors.get(px.id, 1.0),
                }
                for px, pg in zip(pixel_boxes, page_boxes)
            ],
        }
        return self.save_file(f"coordinates_{session_id[:8]}_{timestamp_token()}.json", data)

