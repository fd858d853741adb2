"""Process-wide "last recognition result".

The capture state machine is the only writer. Other surfaces (exporters,
visualizers) read immutable snapshots or subscribe to publishes.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable

from .placement import SuggestionPlacement
from .types import ErrorAnalysisResult, ErrorAnnotation, OCRResult, PageBox, Rect

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecognitionSnapshot:
    session_id: str | None = None
    ocr_result: OCRResult | None = None
    page_boxes: tuple[PageBox, ...] = ()
    selection_bounds: Rect | None = None
    error_analysis: ErrorAnalysisResult | None = None
    reconciled_errors: tuple[ErrorAnnotation, ...] = ()
    placements: tuple[SuggestionPlacement, ...] = ()
    marker_shape_ids: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return self.ocr_result is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "ocr_result": self.ocr_result.to_dict() if self.ocr_result else None,
            "page_boxes": [b.to_dict() for b in self.page_boxes],
            "selection_bounds": self.selection_bounds.to_dict() if self.selection_bounds else None,
            "error_analysis": self.error_analysis.to_dict() if self.error_analysis else None,
            "reconciled_errors": [e.to_dict() for e in self.reconciled_errors],
            "placements": [p.to_dict() for p in self.placements],
            "marker_shape_ids": list(self.marker_shape_ids),
        }


Subscriber = Callable[[RecognitionSnapshot], None]


class RecognitionStore:
    def __init__(self) -> None:
        self._snapshot = RecognitionSnapshot()
        self._subscribers: list[Subscriber] = []

    @property
    def snapshot(self) -> RecognitionSnapshot:
        return self._snapshot

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, **changes: Any) -> RecognitionSnapshot:
        for key in ("page_boxes", "reconciled_errors", "placements", "marker_shape_ids"):
            if key in changes and changes[key] is not None:
                changes[key] = tuple(changes[key])
        self._snapshot = replace(self._snapshot, **changes)
        for cb in list(self._subscribers):
            cb(self._snapshot)
        return self._snapshot

    def clear(self) -> None:
        self._snapshot = RecognitionSnapshot()
        for cb in list(self._subscribers):
            cb(self._snapshot)


_DEFAULT_STORE = RecognitionStore()


def get_default_store() -> RecognitionStore:
    return _DEFAULT_STORE
