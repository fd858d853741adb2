from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .utils import load_json


@dataclass(frozen=True)
class EngineConfig:
    capture: dict[str, Any]
    mapping: dict[str, Any]
    preprocess: dict[str, Any]
    ocr: dict[str, Any]
    analysis: dict[str, Any]
    placement: dict[str, Any]
    marking: dict[str, Any]
    storage: dict[str, Any]


def config_from_dict(data: dict[str, Any]) -> EngineConfig:
    return EngineConfig(
        capture=data.get("capture", {}),
        mapping=data.get("mapping", {}),
        preprocess=data.get("preprocess", {}),
        ocr=data.get("ocr", {}),
        analysis=data.get("analysis", {}),
        placement=data.get("placement", {}),
        marking=data.get("marking", {}),
        storage=data.get("storage", {}),
    )


def load_config(config_path: str | Path | None) -> EngineConfig:
    """Load a JSON config; None yields all-default (empty) sections."""
    if config_path is None:
        return config_from_dict({})
    return config_from_dict(load_json(config_path))
