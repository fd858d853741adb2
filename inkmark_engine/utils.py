from __future__ import annotations

import base64
import json
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def timestamp_token() -> str:
    """Filesystem-safe UTC timestamp, e.g. 2025-06-12T08-30-01."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")


def ensure_dir(path: str | Path) -> None:
    Path(path).mkdir(parents=True, exist_ok=True)


def new_image_id() -> str:
    return f"ocr_{uuid.uuid4().hex[:10]}"


def new_session_id() -> str:
    return uuid.uuid4().hex


def char_id(index: int) -> str:
    """0-based index -> c001, c002, ..."""
    return f"c{index + 1:03d}"


def png_data_url(data: bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(data).decode("ascii")


def decode_image_content(content: bytes | str) -> bytes:
    """Accept raw bytes, base64 text or a data URL."""
    if isinstance(content, bytes):
        return content
    text = content
    if text.startswith("data:image/"):
        text = re.sub(r"^data:image/\w+;base64,", "", text)
    return base64.b64decode(text)


def write_json(path: str | Path, data: Any) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2)


def append_jsonl(path: str | Path, obj: dict[str, Any]) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(obj, ensure_ascii=False) + "\n")


def load_json(path: str | Path) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)
