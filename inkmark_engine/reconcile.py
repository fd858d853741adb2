from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Sequence

from .errors import CoordinateMismatchWarning, UnknownIdWarning, WarningRecord
from .mapping import map_to_page
from .types import ErrorAnnotation, ImageGeometry, PixelBox, Point, Rect

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    errors: list[ErrorAnnotation]
    warnings: list[WarningRecord] = field(default_factory=list)

    @property
    def corrected_count(self) -> int:
        return sum(1 for w in self.warnings if w.category is CoordinateMismatchWarning)

    @property
    def unknown_ids(self) -> list[str]:
        return [w.error_id for w in self.warnings if w.category is UnknownIdWarning]

    def to_dict(self) -> dict:
        return {
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }


def _differs(a: float, b: float, tolerance: float) -> bool:
    return abs(a - b) > tolerance


def _mismatch_fields(error: ErrorAnnotation, box: PixelBox, tolerance: float) -> list[str]:
    out: list[str] = []
    for name, got, want in (
        ("x", error.bbox.x, box.x),
        ("y", error.bbox.y, box.y),
        ("w", error.bbox.w, box.w),
        ("h", error.bbox.h, box.h),
        ("center.x", error.center.x, box.center.x),
        ("center.y", error.center.y, box.center.y),
    ):
        if _differs(got, want, tolerance):
            out.append(name)
    return out


def reconcile(
    errors: Sequence[ErrorAnnotation],
    canonical: Sequence[PixelBox],
    geometry: ImageGeometry,
    *,
    reference: Sequence[PixelBox] | None = None,
    tolerance: float = 0.0,
) -> ReconcileReport:
    """Overwrite analysis coordinates with canonical OCR geometry keyed by id.

    `canonical` are the boxes that get mapped (already scale-corrected).
    `reference` are the boxes the analysis service was shown; mismatches are
    detected against them and default to `canonical`.

    Known ids always come out with the mapped canonical page box and its
    midpoint. Unknown ids are passed through unchanged and left unverified.
    Order is preserved and nothing is dropped.
    """
    by_id = {b.id: b for b in canonical}
    ref_by_id = {b.id: b for b in (reference if reference is not None else canonical)}

    report = ReconcileReport(errors=[])
    for err in errors:
        box = by_id.get(err.id)
        if box is None:
            msg = f"no canonical box for id {err.id!r}; keeping analysis coordinates unverified"
            logger.warning(msg)
            report.warnings.append(WarningRecord(UnknownIdWarning, err.id, msg))
            report.errors.append(err)
            continue

        ref = ref_by_id.get(err.id, box)
        fields = _mismatch_fields(err, ref, tolerance)
        if fields:
            msg = f"analysis box for {err.id} differs in {', '.join(fields)}; using canonical box"
            logger.warning(msg)
            report.warnings.append(WarningRecord(CoordinateMismatchWarning, err.id, msg))

        page = map_to_page(box, geometry)
        report.errors.append(
            replace(
                err,
                bbox=Rect(page.x, page.y, page.w, page.h),
                center=Point(page.x + page.w / 2, page.y + page.h / 2),
                coordinate_space="page",
                verified=True,
            )
        )

    if report.warnings:
        logger.info(
            "reconciled %d errors: %d corrected, %d unknown",
            len(report.errors),
            report.corrected_count,
            len(report.unknown_ids),
        )
    return report
