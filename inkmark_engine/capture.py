"""Two-phase capture state machine.

Phase one (initialize) snapshots the selection, rasterizes it and waits on
the readiness gate for geometry. Phase two (recognize) runs OCR against that
exact raster, maps boxes to page space, optionally asks the analyzer for
errors, reconciles them and draws markers/cards back onto the canvas.

One session at a time. Calls made while a phase is in flight are dropped
and reported as busy. Results of a phase whose session was reset meanwhile
are ignored (checked by session identity).
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .analysis import Analyzer, validate_error_analysis_result
from .canvas import CanvasEditor
from .config import EngineConfig, load_config
from .errors import (
    AnalysisServiceError,
    GeometryUnavailableError,
    ImageDecodeError,
    InkmarkError,
    RecognitionServiceError,
    SelectionMissingError,
    SessionBusyError,
    WarningRecord,
)
from .mapping import ScaleAnomalyConfig, correct_scale, geometry_from_screen_rect, map_boxes_to_page
from .marking import MarkingConfig, add_suggestion_cards, annotate_errors, clear_marks
from .ocr import Recognizer, validate_ocr_result
from .placement import PlacementConfig, SuggestionPlacement, place_suggestions
from .readiness import ImageReadinessGate
from .reconcile import reconcile
from .storage import DataDirectory
from .store import RecognitionStore, get_default_store
from .types import (
    CapturePhase,
    CaptureSession,
    ErrorAnalysisResult,
    ErrorAnnotation,
    ImageGeometry,
    OCRResult,
    PageBox,
)
from .utils import new_session_id, utc_now_iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaptureSettings:
    raster_scale: float = 1.0
    background: bool = True
    padding: int = 0
    geometry_attempts: int = 5
    geometry_backoff_s: float = 0.1
    run_analysis: bool = True
    place_suggestions: bool = True
    persist: bool = True

    @classmethod
    def from_section(cls, section: dict[str, Any]) -> "CaptureSettings":
        return cls(
            raster_scale=float(section.get("raster_scale", 1.0)),
            background=bool(section.get("background", True)),
            padding=int(section.get("padding", 0)),
            geometry_attempts=int(section.get("geometry_attempts", 5)),
            geometry_backoff_s=float(section.get("geometry_backoff_s", 0.1)),
            run_analysis=bool(section.get("run_analysis", True)),
            place_suggestions=bool(section.get("place_suggestions", True)),
            persist=bool(section.get("persist", True)),
        )


@dataclass
class InitializeOutcome:
    success: bool
    message: str
    session_id: str | None = None


@dataclass
class RecognitionResult:
    session_id: str
    ocr_result: OCRResult
    geometry: ImageGeometry
    page_boxes: list[PageBox]
    scale_source: str = "none"
    error_analysis: ErrorAnalysisResult | None = None
    errors: list[ErrorAnnotation] = field(default_factory=list)
    warnings: list[WarningRecord] = field(default_factory=list)
    placements: list[SuggestionPlacement] = field(default_factory=list)
    shape_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "full_text": self.ocr_result.full_text,
            "image_id": self.ocr_result.image_id,
            "geometry": self.geometry.to_dict(),
            "scale_source": self.scale_source,
            "page_boxes": [b.to_dict() for b in self.page_boxes],
            "has_errors": bool(self.error_analysis and self.error_analysis.has_errors),
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "placements": [p.to_dict() for p in self.placements],
        }


@dataclass
class RecognizeOutcome:
    success: bool
    result: RecognitionResult | None = None
    error: str | None = None
    message: str = ""
    processing_time_ms: float = 0.0


@dataclass(frozen=True)
class CaptureStatus:
    phase: CapturePhase
    is_processing: bool
    progress: int
    current_step: str
    error: str | None
    session_id: str | None


_LABELS = {
    CapturePhase.IDLE: "Initialize",
    CapturePhase.INITIALIZING: "Initializing...",
    CapturePhase.INITIALIZED: "Recognize",
    CapturePhase.RECOGNIZING: "Recognizing...",
    CapturePhase.COMPLETED: "Initialize",
    CapturePhase.FAILED: "Initialize",
}


def action_label(phase: CapturePhase) -> str:
    return _LABELS[phase]


def _describe(error: Exception) -> str:
    if isinstance(error, InkmarkError):
        return str(error)
    return f"unexpected {type(error).__name__}: {error}"


class _Superseded(Exception):
    """The session this phase belonged to is no longer current."""


class CaptureStateMachine:
    def __init__(
        self,
        canvas: CanvasEditor,
        recognizer: Recognizer,
        analyzer: Analyzer | None = None,
        *,
        config: EngineConfig | None = None,
        gate: ImageReadinessGate | None = None,
        store: RecognitionStore | None = None,
        data_dir: DataDirectory | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        cfg = config or load_config(None)
        self.canvas = canvas
        self.recognizer = recognizer
        self.analyzer = analyzer
        self.gate = gate or ImageReadinessGate()
        self.store = store or get_default_store()
        self.data_dir = data_dir
        self.settings = CaptureSettings.from_section(cfg.capture)
        self.scale_config = ScaleAnomalyConfig.from_section(cfg.mapping)
        self.placement_config = PlacementConfig.from_section(cfg.placement)
        self.marking_config = MarkingConfig.from_section(cfg.marking)
        self._sleep = sleep

        self._session: CaptureSession | None = None
        self._in_flight: CaptureSession | None = None
        self._progress = 0
        self._step = ""
        self._last_error: str | None = None
        self._shape_ids: list[str] = []

    # read-only state

    @property
    def session(self) -> CaptureSession | None:
        return self._session

    @property
    def phase(self) -> CapturePhase:
        return self._session.phase if self._session else CapturePhase.IDLE

    def status(self) -> CaptureStatus:
        return CaptureStatus(
            phase=self.phase,
            is_processing=self._in_flight is not None,
            progress=self._progress,
            current_step=self._step,
            error=self._last_error,
            session_id=self._session.session_id if self._session else None,
        )

    def action_label(self) -> str:
        return action_label(self.phase)

    # entry points

    async def initialize(self) -> InitializeOutcome:
        if self._in_flight is not None:
            return InitializeOutcome(False, self._busy_message())

        session = CaptureSession(session_id=new_session_id(), created_at=utc_now_iso())
        self._session = session
        self._in_flight = session
        self._last_error = None
        self._set_phase(session, CapturePhase.INITIALIZING)
        try:
            await self._run_initialize(session)
        except _Superseded:
            return InitializeOutcome(False, "capture session was reset", session.session_id)
        except InkmarkError as e:
            self._fail(session, e)
            return InitializeOutcome(False, str(e), session.session_id)
        except Exception as e:
            self._fail(session, e)
            return InitializeOutcome(False, _describe(e), session.session_id)
        else:
            self._set_phase(session, CapturePhase.INITIALIZED)
        finally:
            self._discard_if_half_run(session)
            self._release(session)

        return InitializeOutcome(True, "Initialized; trigger again to recognize", session.session_id)

    async def recognize(self) -> RecognizeOutcome:
        if self._in_flight is not None:
            return RecognizeOutcome(False, error=self._busy_message())
        session = self._session
        if session is None or session.phase is not CapturePhase.INITIALIZED:
            msg = f"cannot recognize from phase {self.phase.value}; initialize first"
            return RecognizeOutcome(False, error=msg, message=msg)

        start = time.time()
        self._in_flight = session
        self._last_error = None
        self._set_phase(session, CapturePhase.RECOGNIZING)
        try:
            result = await self._run_recognize(session)
        except _Superseded:
            return RecognizeOutcome(False, error="capture session was reset")
        except InkmarkError as e:
            self._fail(session, e)
            return RecognizeOutcome(False, error=str(e), processing_time_ms=(time.time() - start) * 1000.0)
        except Exception as e:
            self._fail(session, e)
            return RecognizeOutcome(False, error=_describe(e), processing_time_ms=(time.time() - start) * 1000.0)
        else:
            self._set_phase(session, CapturePhase.COMPLETED)
        finally:
            self._discard_if_half_run(session)
            self._release(session)

        elapsed = (time.time() - start) * 1000.0
        n = len(result.errors)
        msg = f"Recognized {len(result.page_boxes)} characters" + (f", {n} errors marked" if n else "")
        return RecognizeOutcome(True, result=result, message=msg, processing_time_ms=elapsed)

    async def recognize_or_initialize(self) -> RecognizeOutcome:
        """Single UI entry point: initialize from Idle, recognize from Initialized."""
        if self._in_flight is not None:
            return RecognizeOutcome(False, error=self._busy_message())
        if self.phase is CapturePhase.INITIALIZED:
            return await self.recognize()

        init = await self.initialize()
        if not init.success:
            return RecognizeOutcome(False, error=init.message, message=init.message)
        return RecognizeOutcome(True, message=init.message)

    async def select_all_and_recognize(self) -> RecognizeOutcome:
        if self._in_flight is not None:
            return RecognizeOutcome(False, error=self._busy_message())
        self.canvas.select_all()
        if not self.canvas.get_selected_shape_ids():
            msg = str(SelectionMissingError("canvas is empty; nothing to recognize"))
            return RecognizeOutcome(False, error=msg, message=msg)
        if self.phase is CapturePhase.INITIALIZED:
            # new selection replaces the pending one
            self._session = None
        return await self.recognize_or_initialize()

    def reset(self) -> None:
        """Discard the session. A phase still in flight finishes but its result is ignored."""
        if self._session is not None:
            logger.info("session %s reset from %s", self._session.session_id[:8], self._session.phase.value)
        self._session = None
        self._in_flight = None
        self._progress = 0
        self._step = ""
        self._last_error = None

    def clear_marks(self) -> int:
        n = clear_marks(self.canvas, self._shape_ids)
        self._shape_ids = []
        self.store.publish(marker_shape_ids=(), placements=())
        return n

    # phases

    async def _run_initialize(self, session: CaptureSession) -> None:
        self._progress_to(0, "Reading selection...")
        shape_ids = self.canvas.get_selected_shape_ids()
        if not shape_ids:
            raise SelectionMissingError("Please select handwritten content on the canvas first")
        bounds = self.canvas.get_selection_page_bounds()
        if bounds is None or bounds.w <= 0 or bounds.h <= 0:
            raise SelectionMissingError("selection has no page bounds")

        self._progress_to(30, "Capturing image data...")
        raster = await self.canvas.to_image(
            shape_ids,
            scale=self.settings.raster_scale,
            background=self.settings.background,
            padding=self.settings.padding,
        )
        self._ensure_current(session)
        if raster is None or not raster.data:
            raise ImageDecodeError("selection could not be rasterized")

        self._progress_to(60, "Waiting for image decode...")
        geometry = await self.gate.open(raster.data, bounds, self.canvas.get_camera())
        self._ensure_current(session)

        session.shape_ids = list(shape_ids)
        session.selection_page_bounds = bounds
        session.raster = raster.data
        session.image_geometry = geometry
        self._progress_to(100, "Initialization completed")

        if self.data_dir is not None and self.settings.persist:
            self._persist(session, "screenshot", lambda: self.data_dir.save_screenshot(raster.data, session.session_id))

    async def _run_recognize(self, session: CaptureSession) -> RecognitionResult:
        if not session.raster:
            raise ImageDecodeError("initialization data is incomplete; initialize again")

        self._progress_to(10, "Resolving image geometry...")
        geometry = await self._resolve_geometry(session)
        self._ensure_current(session)

        self._progress_to(30, "Performing OCR recognition...")
        try:
            ocr = await self.recognizer.recognize(session.raster)
        except InkmarkError:
            raise
        except Exception as e:
            raise RecognitionServiceError(f"OCR failed: {e}") from e
        self._ensure_current(session)

        self._progress_to(60, "Validating recognition results...")
        try:
            check = validate_ocr_result(ocr)
            for issue in check.issues:
                logger.warning("OCR quality: %s", issue)

            correction = correct_scale(
                ocr.pixel_boxes,
                geometry.natural_width,
                geometry.natural_height,
                ocr.detected_internal_scale_factor,
                config=self.scale_config,
            )
            page_boxes = map_boxes_to_page(correction.boxes, geometry)
        except (ValueError, TypeError, KeyError) as e:
            raise RecognitionServiceError(f"malformed OCR result: {e}") from e
        result = RecognitionResult(
            session_id=session.session_id,
            ocr_result=ocr,
            geometry=geometry,
            page_boxes=page_boxes,
            scale_source=correction.source,
        )

        # canonical data is kept even if analysis fails later
        self.store.publish(
            session_id=session.session_id,
            ocr_result=ocr,
            page_boxes=page_boxes,
            selection_bounds=session.selection_page_bounds,
            error_analysis=None,
            reconciled_errors=(),
            placements=(),
        )

        if self.data_dir is not None and self.settings.persist:
            self._progress_to(70, "Saving results...")
            self._persist(session, "save_ocr", lambda: self.data_dir.save_ocr_result(ocr))
            self._persist(
                session,
                "save_coordinates",
                lambda: self.data_dir.save_coordinates(
                    session.session_id, correction.boxes, page_boxes, geometry, correction.factors
                ),
            )

        if self.analyzer is None or not self.settings.run_analysis:
            return result
        if not ocr.char_boxes or not ocr.full_text.strip():
            logger.info("no text recognized; skipping error analysis")
            return result

        self._progress_to(80, "Analyzing handwriting errors...")
        try:
            analysis = await self.analyzer.analyze(session.raster, ocr.char_boxes, ocr.full_text)
        except InkmarkError:
            raise
        except Exception as e:
            raise AnalysisServiceError(f"error analysis failed: {e}") from e
        self._ensure_current(session)

        check_a = validate_error_analysis_result(analysis.results, ocr.char_boxes)
        for issue in check_a.issues:
            logger.warning("analysis: %s", issue)

        report = reconcile(analysis.results, correction.boxes, geometry, reference=ocr.pixel_boxes)
        result.error_analysis = analysis
        result.errors = report.errors
        result.warnings = report.warnings
        self.store.publish(error_analysis=analysis, reconciled_errors=report.errors)

        if self.data_dir is not None and self.settings.persist:
            self._persist(session, "save_analysis", lambda: self.data_dir.save_error_analysis(analysis, ocr))

        self._progress_to(90, "Marking errors on canvas...")
        self._draw(result)
        self._progress_to(100, "Recognition completed")
        return result

    async def _resolve_geometry(self, session: CaptureSession) -> ImageGeometry:
        if session.image_geometry is not None and session.image_geometry.natural_width > 0:
            return session.image_geometry

        # proxy element fallback: bounded polling of the decoded element
        proxy = self.gate.proxy
        attempts = max(1, self.settings.geometry_attempts)
        for attempt in range(attempts):
            if proxy.is_decoded and proxy.screen_rect is not None:
                camera = proxy.synced_camera or self.canvas.get_camera()
                logger.info("geometry from proxy element after %d attempt(s)", attempt + 1)
                return geometry_from_screen_rect(proxy.screen_rect, proxy.natural_width, proxy.natural_height, camera)
            await self._sleep(self.settings.geometry_backoff_s)
        raise GeometryUnavailableError(f"image geometry unavailable after {attempts} attempts")

    def _draw(self, result: RecognitionResult) -> None:
        verified = [e for e in result.errors if e.verified]
        skipped = len(result.errors) - len(verified)
        if skipped:
            logger.warning("%d unverified errors not marked", skipped)
        # marks from the previous run never outlive a new result
        if self._shape_ids:
            self.clear_marks()
        if not verified:
            return

        if self.settings.place_suggestions:
            try:
                layout = place_suggestions(
                    self.canvas.get_shapes(),
                    self.canvas.get_viewport_page_bounds(),
                    [e.center for e in verified],
                    self.placement_config,
                )
                result.placements = layout.placements
            except ValueError as e:
                logger.warning("suggestion placement skipped: %s", e)

        _, marker_ids = annotate_errors(self.canvas, verified, self.marking_config)
        card_ids = add_suggestion_cards(self.canvas, verified, result.placements)
        self._shape_ids = marker_ids + card_ids
        result.shape_ids = list(self._shape_ids)
        self.store.publish(placements=result.placements, marker_shape_ids=self._shape_ids)

    # helpers

    def _busy_message(self) -> str:
        phase = self._in_flight.phase.value if self._in_flight else self.phase.value
        return str(SessionBusyError(f"a capture phase is already in progress ({phase}); request ignored"))

    def _set_phase(self, session: CaptureSession, phase: CapturePhase) -> None:
        if self._session is not session:
            return
        logger.info("session %s: %s -> %s", session.session_id[:8], session.phase.value, phase.value)
        session.phase = phase

    def _progress_to(self, progress: int, step: str) -> None:
        self._progress = progress
        self._step = step
        logger.debug("%3d%% %s", progress, step)

    def _ensure_current(self, session: CaptureSession) -> None:
        if self._session is not session:
            raise _Superseded()

    def _release(self, session: CaptureSession) -> None:
        if self._in_flight is session:
            self._in_flight = None

    def _discard_if_half_run(self, session: CaptureSession) -> None:
        # a cancelled phase must not leave the session stuck in flight
        if self._session is session and session.phase.in_flight:
            logger.warning("session %s abandoned while %s", session.session_id[:8], session.phase.value)
            self._session = None
            self._progress_to(0, "")

    def _fail(self, session: CaptureSession, error: Exception) -> None:
        if self._session is not session:
            return
        stage = getattr(error, "stage", "pipeline")
        message = _describe(error)
        if isinstance(error, InkmarkError):
            logger.error("session %s failed at %s: %s", session.session_id[:8], stage, message)
        else:
            logger.exception("session %s failed unexpectedly: %s", session.session_id[:8], message)
        self._set_phase(session, CapturePhase.FAILED)
        self._last_error = message
        self._progress_to(0, "")
        if self.data_dir is not None:
            try:
                self.data_dir.record_error(session.session_id, stage, message)
            except OSError as e:
                logger.warning("could not record error: %s", e)
        # back to Idle so a retry needs no explicit reset
        self._session = None

    def _persist(self, session: CaptureSession, what: str, fn: Callable[[], Any]) -> None:
        try:
            fn()
        except (OSError, ValueError) as e:
            logger.warning("session %s: %s failed: %s", session.session_id[:8], what, e)
