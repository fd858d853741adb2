"""Canvas editor collaborator.

`CanvasEditor` is the boundary the engine consumes (selection, raster export,
camera, viewport, shape creation/deletion). `InMemoryCanvas` is a reference
implementation that rasterizes its shapes with Pillow; it backs the CLI and
the tests.
"""
from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from io import BytesIO
from typing import Any, Iterable, Protocol, runtime_checkable

from PIL import Image, ImageDraw, ImageFont

from .geometry import screen_to_page, union_rect
from .types import CameraTransform, Rect


# Shape types contributing to content density.
SHAPE_DRAW = "draw"
SHAPE_TEXT = "text"
SHAPE_GEO = "geo"


@dataclass
class CanvasShape:
    id: str
    type: str
    x: float
    y: float
    props: dict[str, Any] = field(default_factory=dict)
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def bounds(self) -> Rect:
        if self.type == SHAPE_DRAW:
            pts = self.props.get("points") or [[0, 0]]
            sw = float(self.props.get("stroke_width", 2))
            xs = [float(p[0]) for p in pts]
            ys = [float(p[1]) for p in pts]
            x0, y0 = min(xs) - sw / 2, min(ys) - sw / 2
            x1, y1 = max(xs) + sw / 2, max(ys) + sw / 2
            return Rect(self.x + x0, self.y + y0, x1 - x0, y1 - y0)
        if self.type == SHAPE_TEXT and "w" not in self.props:
            text = str(self.props.get("text", ""))
            size = float(self.props.get("font_size", 16))
            return Rect(self.x, self.y, max(1.0, len(text) * size * 0.6), size * 1.2)
        return Rect(self.x, self.y, float(self.props.get("w", 1)), float(self.props.get("h", 1)))

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "type": self.type, "x": self.x, "y": self.y, "props": self.props, "meta": self.meta}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "CanvasShape":
        return cls(
            id=str(d.get("id") or f"shape:{uuid.uuid4().hex[:12]}"),
            type=str(d["type"]),
            x=float(d.get("x", 0)),
            y=float(d.get("y", 0)),
            props=dict(d.get("props", {})),
            meta=dict(d.get("meta", {})),
        )


@dataclass(frozen=True)
class RasterExport:
    data: bytes  # PNG
    width: int
    height: int


@runtime_checkable
class CanvasEditor(Protocol):
    def get_selected_shape_ids(self) -> list[str]: ...

    def get_selection_page_bounds(self) -> Rect | None: ...

    async def to_image(
        self,
        shape_ids: list[str],
        *,
        scale: float = 1.0,
        background: bool = True,
        padding: int = 0,
    ) -> RasterExport | None: ...

    def get_camera(self) -> CameraTransform: ...

    def get_viewport_page_bounds(self) -> Rect: ...

    def get_shapes(self) -> list[CanvasShape]: ...

    def create_shape(self, type: str, x: float, y: float, props: dict[str, Any] | None = None) -> str: ...

    def delete_shapes(self, shape_ids: Iterable[str]) -> None: ...

    def select(self, shape_ids: Iterable[str]) -> None: ...

    def select_all(self) -> None: ...


class InMemoryCanvas:
    """Minimal page model: shapes, selection, camera and a fixed screen size."""

    def __init__(
        self,
        shapes: Iterable[CanvasShape] = (),
        *,
        camera: CameraTransform | None = None,
        screen_size: tuple[int, int] = (1280, 800),
    ):
        self._shapes: dict[str, CanvasShape] = {}
        for s in shapes:
            self._shapes[s.id] = s
        self._selected: list[str] = []
        self.camera = camera or CameraTransform()
        self.screen_size = screen_size

    @classmethod
    def from_scene(cls, scene: dict[str, Any]) -> "InMemoryCanvas":
        cam = scene.get("camera") or {}
        screen = scene.get("screen_size") or [1280, 800]
        canvas = cls(
            [CanvasShape.from_dict(s) for s in scene.get("shapes", [])],
            camera=CameraTransform(float(cam.get("x", 0)), float(cam.get("y", 0)), float(cam.get("z", 1))),
            screen_size=(int(screen[0]), int(screen[1])),
        )
        if scene.get("selected"):
            canvas.select(scene["selected"])
        return canvas

    # selection

    def get_selected_shape_ids(self) -> list[str]:
        return list(self._selected)

    def select(self, shape_ids: Iterable[str]) -> None:
        self._selected = [sid for sid in shape_ids if sid in self._shapes]

    def select_all(self) -> None:
        self._selected = list(self._shapes)

    def get_selection_page_bounds(self) -> Rect | None:
        return union_rect(self._shapes[sid].bounds for sid in self._selected)

    # camera / viewport

    def get_camera(self) -> CameraTransform:
        return self.camera

    def set_camera(self, camera: CameraTransform) -> None:
        self.camera = camera

    def get_viewport_page_bounds(self) -> Rect:
        sw, sh = self.screen_size
        return screen_to_page(Rect(0, 0, sw, sh), self.camera)

    # shapes

    def get_shapes(self) -> list[CanvasShape]:
        return list(self._shapes.values())

    def get_shape(self, shape_id: str) -> CanvasShape | None:
        return self._shapes.get(shape_id)

    def create_shape(self, type: str, x: float, y: float, props: dict[str, Any] | None = None) -> str:
        sid = f"shape:{uuid.uuid4().hex[:12]}"
        self._shapes[sid] = CanvasShape(id=sid, type=type, x=float(x), y=float(y), props=dict(props or {}))
        return sid

    def delete_shapes(self, shape_ids: Iterable[str]) -> None:
        ids = set(shape_ids)
        for sid in ids:
            self._shapes.pop(sid, None)
        self._selected = [sid for sid in self._selected if sid not in ids]

    # export

    async def to_image(
        self,
        shape_ids: list[str],
        *,
        scale: float = 1.0,
        background: bool = True,
        padding: int = 0,
    ) -> RasterExport | None:
        shapes = [self._shapes[sid] for sid in shape_ids if sid in self._shapes]
        bounds = union_rect(s.bounds for s in shapes)
        if bounds is None:
            return None

        width = max(1, int(math.ceil(bounds.w * scale)) + 2 * padding)
        height = max(1, int(math.ceil(bounds.h * scale)) + 2 * padding)
        mode, fill = ("RGB", (255, 255, 255)) if background else ("RGBA", (0, 0, 0, 0))
        img = Image.new(mode, (width, height), color=fill)
        draw = ImageDraw.Draw(img)

        def tx(px: float, py: float) -> tuple[float, float]:
            return (px - bounds.x) * scale + padding, (py - bounds.y) * scale + padding

        for s in shapes:
            color = s.props.get("color", "black")
            if s.type == SHAPE_DRAW:
                pts = [tx(s.x + float(p[0]), s.y + float(p[1])) for p in s.props.get("points", [])]
                sw = max(1, int(round(float(s.props.get("stroke_width", 2)) * scale)))
                if len(pts) == 1:
                    draw.point(pts, fill=color)
                elif pts:
                    draw.line(pts, fill=color, width=sw, joint="curve")
            elif s.type == SHAPE_TEXT:
                font = ImageFont.load_default(size=max(8, int(float(s.props.get("font_size", 16)) * scale)))
                draw.text(tx(s.x, s.y), str(s.props.get("text", "")), fill=color, font=font)
            else:
                b = s.bounds
                x0, y0 = tx(b.x, b.y)
                x1, y1 = tx(b.max_x, b.max_y)
                draw.rectangle([x0, y0, max(x0, x1 - 1), max(y0, y1 - 1)], outline=color, width=2)

        buf = BytesIO()
        img.save(buf, format="PNG")
        return RasterExport(data=buf.getvalue(), width=width, height=height)
