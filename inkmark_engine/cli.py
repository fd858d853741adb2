from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from .analysis import ErrorAnalyzer
from .canvas import InMemoryCanvas
from .capture import CaptureStateMachine
from .config import EngineConfig, load_config
from .mapping import ScaleAnomalyConfig, correct_scale, map_boxes_to_page
from .ocr import OCREngine, PreprocessOptions, build_backend
from .placement import PlacementConfig, place_suggestions
from .storage import DataDirectory
from .types import ImageGeometry, PixelBox, Point
from .utils import load_json


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="inkmark_engine")
    p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    sub = p.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Capture and recognize a canvas scene")
    run.add_argument("--scene", required=True, help="Scene JSON (shapes, camera, screen_size, selected)")
    run.add_argument("--select", nargs="*", default=None, help="Shape ids to select (default: scene selection or all)")
    run.add_argument("--workspace", default="./workspace", help="Workspace root; artifacts go to <workspace>/data")
    run.add_argument("--config", default=str(Path("config") / "default.json"), help="Config path")
    run.add_argument("--engine", default=None, choices=["tesseract", "easyocr"], help="OCR engine (overrides config)")
    run.add_argument("--no-analysis", action="store_true", help="Skip LLM error analysis")

    mp = sub.add_parser("map", help="Map pixel boxes to page coordinates")
    mp.add_argument("--boxes", required=True, help="JSON list of {id,x,y,w,h} pixel boxes")
    mp.add_argument("--geometry", required=True, help="JSON {page_rect:{x,y,w,h}, natural_width, natural_height}")
    mp.add_argument("--scale-factor", type=float, default=None, help="Reported internal OCR scale factor")
    mp.add_argument("--config", default=None, help="Config path")

    pl = sub.add_parser("place", help="Compute suggestion card placements")
    pl.add_argument("--scene", required=True, help="Scene JSON")
    pl.add_argument("--anchors", required=True, help="JSON list of {x,y} error centers (page space)")
    pl.add_argument("--config", default=None, help="Config path")

    return p


def _load_cfg(path: str | None) -> EngineConfig:
    if path and Path(path).exists():
        return load_config(path)
    return load_config(None)


async def _run_capture(machine: CaptureStateMachine) -> dict[str, Any]:
    init = await machine.recognize_or_initialize()
    if not init.success:
        return {"success": False, "stage": "initialize", "error": init.error}
    outcome = await machine.recognize_or_initialize()
    if not outcome.success or outcome.result is None:
        return {"success": False, "stage": "recognize", "error": outcome.error}
    data = outcome.result.to_dict()
    data["success"] = True
    data["processing_time_ms"] = round(outcome.processing_time_ms, 1)
    return data


def cmd_run(args: argparse.Namespace) -> int:
    cfg = _load_cfg(args.config)
    canvas = InMemoryCanvas.from_scene(load_json(args.scene))
    if args.select:
        canvas.select(args.select)
    elif not canvas.get_selected_shape_ids():
        canvas.select_all()

    engine = args.engine or str(cfg.ocr.get("engine", "tesseract"))
    recognizer = OCREngine(
        backend=build_backend(engine, cfg.ocr),
        preprocess=PreprocessOptions.from_section(cfg.preprocess),
        scale_config=ScaleAnomalyConfig.from_section(cfg.mapping),
        max_retries=int(cfg.ocr.get("max_retries", 2)),
    )

    analyzer = None
    if not args.no_analysis:
        try:
            analyzer = ErrorAnalyzer(
                model=str(cfg.analysis.get("model", "gpt-4o")),
                temperature=float(cfg.analysis.get("temperature", 0.0)),
                max_output_tokens=int(cfg.analysis.get("max_output_tokens", 2048)),
            )
        except ValueError as e:
            print(f"analysis_disabled: {e}")

    data_dir = DataDirectory(Path(args.workspace) / str(cfg.storage.get("data_dir", "data")))
    data_dir.ensure()

    machine = CaptureStateMachine(canvas, recognizer, analyzer, config=cfg, data_dir=data_dir)
    summary = asyncio.run(_run_capture(machine))
    print(json.dumps(summary, ensure_ascii=False, indent=2))
    return 0 if summary.get("success") else 1


def cmd_map(args: argparse.Namespace) -> int:
    cfg = _load_cfg(args.config)
    try:
        boxes = [PixelBox.from_dict(b) for b in load_json(args.boxes)]
        geometry = ImageGeometry.from_dict(load_json(args.geometry))
        correction = correct_scale(
            boxes,
            geometry.natural_width,
            geometry.natural_height,
            args.scale_factor,
            config=ScaleAnomalyConfig.from_section(cfg.mapping),
        )
        page_boxes = map_boxes_to_page(correction.boxes, geometry)
    except (KeyError, TypeError, ValueError) as e:
        print(f"map_failed: {e}")
        return 1

    print(json.dumps({
        "scale_source": correction.source,
        "page_boxes": [b.to_dict() for b in page_boxes],
    }, indent=2))
    return 0


def cmd_place(args: argparse.Namespace) -> int:
    cfg = _load_cfg(args.config)
    canvas = InMemoryCanvas.from_scene(load_json(args.scene))
    anchors = [Point.from_dict(a) for a in load_json(args.anchors)]
    try:
        layout = place_suggestions(
            canvas.get_shapes(),
            canvas.get_viewport_page_bounds(),
            anchors,
            PlacementConfig.from_section(cfg.placement),
        )
    except ValueError as e:
        print(f"place_failed: {e}")
        return 1

    print(json.dumps({
        "used_fallback": layout.used_fallback,
        "placements": [p.to_dict() for p in layout.placements],
    }, indent=2))
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.command == "run":
        return cmd_run(args)

    if args.command == "map":
        return cmd_map(args)

    if args.command == "place":
        return cmd_place(args)

    raise SystemExit(2)


if __name__ == "__main__":
    raise SystemExit(main())
