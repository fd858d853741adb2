from __future__ import annotations

from dataclasses import dataclass


class InkmarkError(Exception):
    """Base class for pipeline failures surfaced to the caller of a phase."""

    stage = "pipeline"


class SelectionMissingError(InkmarkError):
    """Nothing selected at initialize time. Recoverable by prompting the user."""

    stage = "selection"


class ImageDecodeError(InkmarkError):
    """The raster never reported decoded dimensions."""

    stage = "decode"


class GeometryUnavailableError(InkmarkError):
    """Neither shape-based nor proxy-element geometry could be determined."""

    stage = "geometry"


class RecognitionServiceError(InkmarkError):
    stage = "ocr"


class AnalysisServiceError(InkmarkError):
    stage = "analysis"


class SessionBusyError(InkmarkError):
    """A phase is already in flight; the call is dropped, not queued."""

    stage = "guard"


class CoordinateMismatchWarning(UserWarning):
    """Analysis box differed from the canonical OCR box and was overwritten."""


class UnknownIdWarning(UserWarning):
    """Analysis referenced a character id the OCR stage never produced."""


@dataclass(frozen=True)
class WarningRecord:
    category: type[UserWarning]
    error_id: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"category": self.category.__name__, "id": self.error_id, "message": self.message}
