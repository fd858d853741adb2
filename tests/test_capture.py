"""Two-phase capture state machine, end to end over the in-memory canvas.

The ink fixture rasterizes to 302x152 at scale 1 and sits at page (99, 199),
so a pixel box (x, y) lands on page (99 + x, 199 + y).
"""
from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from conftest import FakeAnalyzer, FakeRecognizer, make_char, make_error
from inkmark_engine.canvas import InMemoryCanvas
from inkmark_engine.capture import CaptureSettings, CaptureStateMachine, action_label
from inkmark_engine.errors import AnalysisServiceError, CoordinateMismatchWarning, UnknownIdWarning
from inkmark_engine.storage import DataDirectory
from inkmark_engine.types import CapturePhase, PageBox, Point, Rect


@pytest.fixture
def data_dir(tmp_path: Path) -> DataDirectory:
    d = DataDirectory(tmp_path / "data")
    d.ensure()
    return d


def _machine(canvas, recognizer, analyzer=None, *, gate, store, sleep, data_dir=None) -> CaptureStateMachine:
    return CaptureStateMachine(canvas, recognizer, analyzer, gate=gate, store=store, data_dir=data_dir, sleep=sleep)


def _two_phase(machine: CaptureStateMachine):
    async def scenario():
        first = await machine.recognize_or_initialize()
        second = await machine.recognize_or_initialize()
        return first, second

    return asyncio.run(scenario())


# ═══════════════════════════════════════════════════════════════════════════════
# PHASE ORDERING
# ═══════════════════════════════════════════════════════════════════════════════

class TestPhases:
    """Initialize must complete before recognize; one trigger advances one phase."""

    def test_first_trigger_only_initializes(self, ink_canvas, gate, store, chars, no_sleep):
        recognizer = FakeRecognizer(chars)
        machine = _machine(ink_canvas, recognizer, gate=gate, store=store, sleep=no_sleep)

        outcome = asyncio.run(machine.recognize_or_initialize())

        assert outcome.success
        assert outcome.result is None
        assert machine.phase is CapturePhase.INITIALIZED
        assert machine.action_label() == "Recognize"
        assert recognizer.seen == []
        session = machine.session
        assert session.shape_ids == ["shape:ink"]
        assert session.selection_page_bounds == Rect(99, 199, 302, 152)
        assert (session.image_geometry.natural_width, session.image_geometry.natural_height) == (302, 152)

    def test_second_trigger_recognizes_same_raster(self, ink_canvas, gate, store, chars, no_sleep):
        recognizer = FakeRecognizer(chars)
        machine = _machine(ink_canvas, recognizer, gate=gate, store=store, sleep=no_sleep)

        async def scenario():
            await machine.recognize_or_initialize()
            raster = machine.session.raster
            outcome = await machine.recognize_or_initialize()
            return raster, outcome

        raster, outcome = asyncio.run(scenario())

        assert outcome.success
        assert recognizer.seen == [raster]
        assert machine.phase is CapturePhase.COMPLETED
        assert machine.action_label() == "Initialize"
        assert outcome.result.page_boxes[0] == PageBox("c001", 109, 219, 30, 40)
        assert outcome.result.scale_source == "none"
        assert outcome.message == "Recognized 3 characters"

    def test_recognize_without_initialize(self, ink_canvas, gate, store, chars, no_sleep):
        machine = _machine(ink_canvas, FakeRecognizer(chars), gate=gate, store=store, sleep=no_sleep)

        outcome = asyncio.run(machine.recognize())

        assert not outcome.success
        assert "initialize first" in outcome.error
        assert machine.phase is CapturePhase.IDLE

    def test_no_selection(self, ink_canvas, gate, store, chars, no_sleep):
        ink_canvas.select([])
        machine = _machine(ink_canvas, FakeRecognizer(chars), gate=gate, store=store, sleep=no_sleep)

        outcome = asyncio.run(machine.recognize_or_initialize())

        assert not outcome.success
        assert "select" in outcome.error
        assert machine.phase is CapturePhase.IDLE
        assert machine.status().error == outcome.error

    def test_select_all_on_empty_canvas(self, gate, store, chars, no_sleep):
        machine = _machine(InMemoryCanvas([]), FakeRecognizer(chars), gate=gate, store=store, sleep=no_sleep)

        outcome = asyncio.run(machine.select_all_and_recognize())

        assert not outcome.success
        assert "canvas is empty" in outcome.error

    def test_select_all_initializes_from_idle(self, ink_canvas, gate, store, chars, no_sleep):
        ink_canvas.select([])
        machine = _machine(ink_canvas, FakeRecognizer(chars), gate=gate, store=store, sleep=no_sleep)

        outcome = asyncio.run(machine.select_all_and_recognize())

        assert outcome.success
        assert machine.phase is CapturePhase.INITIALIZED
        assert machine.session.shape_ids == ["shape:ink"]

    def test_settings_from_section(self):
        s = CaptureSettings.from_section({"geometry_attempts": 3, "run_analysis": False})
        assert s.geometry_attempts == 3
        assert not s.run_analysis
        assert s.geometry_backoff_s == 0.1

    def test_labels(self):
        assert action_label(CapturePhase.INITIALIZING) == "Initializing..."
        assert action_label(CapturePhase.RECOGNIZING) == "Recognizing..."
        assert action_label(CapturePhase.FAILED) == "Initialize"


# ═══════════════════════════════════════════════════════════════════════════════
# CONCURRENCY
# ═══════════════════════════════════════════════════════════════════════════════

class TestBusyAndReset:
    """In-flight guard and stale-result suppression."""

    def test_calls_during_flight_are_dropped(self, ink_canvas, gate, store, chars, no_sleep):
        recognizer = FakeRecognizer(chars)
        machine = _machine(ink_canvas, recognizer, gate=gate, store=store, sleep=no_sleep)

        async def scenario():
            await machine.initialize()
            recognizer.gate = asyncio.Event()
            task = asyncio.create_task(machine.recognize())
            while not recognizer.seen:
                await asyncio.sleep(0)

            busy_init = await machine.initialize()
            busy_trigger = await machine.recognize_or_initialize()
            status = machine.status()
            recognizer.gate.set()
            return busy_init, busy_trigger, status, await task

        busy_init, busy_trigger, status, done = asyncio.run(scenario())

        assert not busy_init.success and "already in progress" in busy_init.message
        assert not busy_trigger.success and "already in progress" in busy_trigger.error
        assert status.is_processing
        assert status.phase is CapturePhase.RECOGNIZING
        assert done.success
        assert len(recognizer.seen) == 1

    def test_reset_during_recognize_discards_result(self, ink_canvas, gate, store, chars, no_sleep):
        recognizer = FakeRecognizer(chars)
        machine = _machine(ink_canvas, recognizer, gate=gate, store=store, sleep=no_sleep)

        async def scenario():
            await machine.initialize()
            recognizer.gate = asyncio.Event()
            task = asyncio.create_task(machine.recognize())
            while not recognizer.seen:
                await asyncio.sleep(0)
            machine.reset()
            recognizer.gate.set()
            return await task

        outcome = asyncio.run(scenario())

        assert not outcome.success
        assert outcome.error == "capture session was reset"
        assert machine.phase is CapturePhase.IDLE
        assert store.snapshot.is_empty

    def test_cancelled_recognize_returns_to_idle(self, ink_canvas, gate, store, chars, no_sleep):
        recognizer = FakeRecognizer(chars)
        machine = _machine(ink_canvas, recognizer, gate=gate, store=store, sleep=no_sleep)

        async def scenario():
            await machine.initialize()
            recognizer.gate = asyncio.Event()
            task = asyncio.create_task(machine.recognize())
            while not recognizer.seen:
                await asyncio.sleep(0)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            stuck = machine.status()
            recognizer.gate = None
            return stuck, await machine.recognize_or_initialize()

        stuck, retry = asyncio.run(scenario())

        assert stuck.phase is CapturePhase.IDLE
        assert not stuck.is_processing
        # the next trigger starts over instead of reporting busy
        assert retry.success
        assert machine.phase is CapturePhase.INITIALIZED

    def test_reset_clears_status(self, ink_canvas, gate, store, chars, no_sleep):
        machine = _machine(ink_canvas, FakeRecognizer(chars), gate=gate, store=store, sleep=no_sleep)
        asyncio.run(machine.initialize())

        machine.reset()

        status = machine.status()
        assert status.session_id is None
        assert status.progress == 0
        assert not status.is_processing


# ═══════════════════════════════════════════════════════════════════════════════
# RECONCILIATION AND DRAWING
# ═══════════════════════════════════════════════════════════════════════════════

class TestRecognitionPipeline:
    """OCR -> mapping -> analysis -> reconcile -> markers and cards."""

    def test_errors_use_canonical_page_boxes(self, ink_canvas, gate, store, chars, no_sleep):
        analyzer = FakeAnalyzer([make_error("c003", Rect(110, 20, 30, 40)), make_error("c999", Rect(0, 0, 1, 1))])
        machine = _machine(ink_canvas, FakeRecognizer(chars), analyzer, gate=gate, store=store, sleep=no_sleep)

        _, outcome = _two_phase(machine)
        result = outcome.result

        known, unknown = result.errors
        assert known.verified and known.coordinate_space == "page"
        assert known.bbox == Rect(209, 219, 30, 40)
        assert known.center == Point(224, 239)
        assert not unknown.verified
        assert unknown.bbox == Rect(0, 0, 1, 1)
        assert [w.category for w in result.warnings] == [UnknownIdWarning]
        assert outcome.message == "Recognized 3 characters, 2 errors marked"

        image, boxes, text = analyzer.calls[0]
        assert image == machine.session.raster
        assert [b.id for b in boxes] == ["c001", "c002", "c003"]
        assert text == "2x5"

    def test_only_verified_errors_are_drawn(self, ink_canvas, gate, store, chars, no_sleep):
        analyzer = FakeAnalyzer([make_error("c003", Rect(110, 20, 30, 40)), make_error("c999", Rect(0, 0, 1, 1))])
        machine = _machine(ink_canvas, FakeRecognizer(chars), analyzer, gate=gate, store=store, sleep=no_sleep)

        _, outcome = _two_phase(machine)

        # one marker plus card text and lead line
        assert len(outcome.result.shape_ids) == 3
        assert len(outcome.result.placements) == 1
        assert outcome.result.placements[0].lead_line_start == Point(224, 239)
        assert len(ink_canvas.get_shapes()) == 4

        snap = store.snapshot
        assert snap.session_id == outcome.result.session_id
        assert len(snap.reconciled_errors) == 2
        assert snap.marker_shape_ids == tuple(outcome.result.shape_ids)

        assert machine.clear_marks() == 3
        assert [s.id for s in ink_canvas.get_shapes()] == ["shape:ink"]
        assert store.snapshot.marker_shape_ids == ()

    def test_new_result_without_errors_clears_old_marks(self, ink_canvas, gate, store, chars, no_sleep):
        analyzer = FakeAnalyzer([make_error("c003", Rect(110, 20, 30, 40))])
        machine = _machine(ink_canvas, FakeRecognizer(chars), analyzer, gate=gate, store=store, sleep=no_sleep)
        _two_phase(machine)
        assert len(ink_canvas.get_shapes()) == 4

        analyzer.errors = []
        _, outcome = _two_phase(machine)

        assert outcome.success
        assert outcome.result.shape_ids == []
        assert [s.id for s in ink_canvas.get_shapes()] == ["shape:ink"]
        assert store.snapshot.marker_shape_ids == ()

    def test_blank_text_skips_analysis(self, ink_canvas, gate, store, no_sleep):
        blanks = [make_char(1, 10, 20, 30, 40, " "), make_char(2, 60, 20, 30, 40, " ")]
        analyzer = FakeAnalyzer([make_error("c001", Rect(10, 20, 30, 40))])
        machine = _machine(ink_canvas, FakeRecognizer(blanks), analyzer, gate=gate, store=store, sleep=no_sleep)

        _, outcome = _two_phase(machine)

        assert outcome.success
        assert analyzer.calls == []
        assert outcome.result.errors == []
        assert len(outcome.result.page_boxes) == 2

    def test_mismatched_analysis_box_is_overwritten(self, ink_canvas, gate, store, chars, no_sleep):
        analyzer = FakeAnalyzer([make_error("c003", Rect(100, 10, 50, 50))])
        machine = _machine(ink_canvas, FakeRecognizer(chars), analyzer, gate=gate, store=store, sleep=no_sleep)

        _, outcome = _two_phase(machine)

        assert outcome.result.errors[0].bbox == Rect(209, 219, 30, 40)
        assert [w.category for w in outcome.result.warnings] == [CoordinateMismatchWarning]

    def test_reported_scale_factor(self, ink_canvas, gate, store, no_sleep):
        doubled = [make_char(1, 20, 40, 60, 80, "2"), make_char(2, 120, 40, 60, 80, "x")]
        machine = _machine(ink_canvas, FakeRecognizer(doubled, factor=2.0), gate=gate, store=store, sleep=no_sleep)

        _, outcome = _two_phase(machine)

        assert outcome.result.scale_source == "reported"
        assert outcome.result.page_boxes == [PageBox("c001", 109, 219, 30, 40), PageBox("c002", 159, 219, 30, 40)]

    def test_status_after_completion(self, ink_canvas, gate, store, chars, no_sleep):
        analyzer = FakeAnalyzer([make_error("c003", Rect(110, 20, 30, 40))])
        machine = _machine(ink_canvas, FakeRecognizer(chars), analyzer, gate=gate, store=store, sleep=no_sleep)

        _two_phase(machine)

        status = machine.status()
        assert status.phase is CapturePhase.COMPLETED
        assert status.progress == 100
        assert status.current_step == "Recognition completed"
        assert status.error is None

    def test_artifacts_persisted(self, ink_canvas, gate, store, chars, no_sleep, data_dir):
        analyzer = FakeAnalyzer([make_error("c003", Rect(110, 20, 30, 40))])
        machine = _machine(
            ink_canvas, FakeRecognizer(chars), analyzer, gate=gate, store=store, sleep=no_sleep, data_dir=data_dir
        )

        _two_phase(machine)

        subdirs = {f.split("/")[0] for f in data_dir.list_files()}
        assert subdirs == {"canvas-screenshots", "ocr-results", "visualizations", "coordinates", "gpt-analysis"}


# ═══════════════════════════════════════════════════════════════════════════════
# FAILURES
# ═══════════════════════════════════════════════════════════════════════════════

class TestFailures:
    """Failures surface, get recorded and return the machine to Idle."""

    def test_analysis_failure_keeps_ocr_result(self, ink_canvas, gate, store, chars, no_sleep, data_dir):
        analyzer = FakeAnalyzer([], error=AnalysisServiceError("bad json"))
        machine = _machine(
            ink_canvas, FakeRecognizer(chars), analyzer, gate=gate, store=store, sleep=no_sleep, data_dir=data_dir
        )

        _, outcome = _two_phase(machine)

        assert not outcome.success
        assert outcome.error == "bad json"
        assert machine.phase is CapturePhase.IDLE
        assert store.snapshot.ocr_result is not None
        assert len(store.snapshot.page_boxes) == 3
        assert store.snapshot.reconciled_errors == ()

        records = [json.loads(line) for line in data_dir.errors_jsonl.read_text(encoding="utf-8").splitlines()]
        assert records[-1]["stage"] == "analysis"
        assert records[-1]["message"] == "bad json"

    def test_unexpected_analyzer_exception_is_wrapped(self, ink_canvas, gate, store, chars, no_sleep):
        analyzer = FakeAnalyzer([], error=RuntimeError("socket closed"))
        machine = _machine(ink_canvas, FakeRecognizer(chars), analyzer, gate=gate, store=store, sleep=no_sleep)

        _, outcome = _two_phase(machine)

        assert outcome.error == "error analysis failed: socket closed"

    def test_ocr_failure(self, ink_canvas, gate, store, chars, no_sleep):
        recognizer = FakeRecognizer(chars, error=RuntimeError("tesseract missing"))
        machine = _machine(ink_canvas, recognizer, gate=gate, store=store, sleep=no_sleep)

        _, outcome = _two_phase(machine)

        assert not outcome.success
        assert outcome.error == "OCR failed: tesseract missing"
        assert machine.phase is CapturePhase.IDLE
        assert store.snapshot.is_empty

    def test_non_finite_box_fails_cleanly(self, ink_canvas, gate, store, no_sleep, data_dir):
        recognizer = FakeRecognizer([make_char(1, float("nan"), 0, 10, 10)])
        machine = _machine(ink_canvas, recognizer, gate=gate, store=store, sleep=no_sleep, data_dir=data_dir)

        _, outcome = _two_phase(machine)

        assert not outcome.success
        assert outcome.error.startswith("malformed OCR result:")
        assert machine.phase is CapturePhase.IDLE
        assert machine.action_label() == "Initialize"
        assert not machine.status().is_processing
        assert store.snapshot.is_empty

        records = [json.loads(line) for line in data_dir.errors_jsonl.read_text(encoding="utf-8").splitlines()]
        assert records[-1]["stage"] == "ocr"

    def test_unexpected_canvas_exception_fails_cleanly(self, ink_canvas, gate, store, chars, no_sleep):
        async def broken_export(*args, **kwargs):
            raise RuntimeError("renderer crashed")

        ink_canvas.to_image = broken_export
        machine = _machine(ink_canvas, FakeRecognizer(chars), gate=gate, store=store, sleep=no_sleep)

        outcome = asyncio.run(machine.initialize())

        assert not outcome.success
        assert outcome.message == "unexpected RuntimeError: renderer crashed"
        assert machine.phase is CapturePhase.IDLE
        assert machine.status().error == outcome.message

    def test_retry_after_failure_needs_no_reset(self, ink_canvas, gate, store, chars, no_sleep):
        recognizer = FakeRecognizer(chars, error=RuntimeError("flaky"))
        machine = _machine(ink_canvas, recognizer, gate=gate, store=store, sleep=no_sleep)
        _two_phase(machine)

        recognizer.error = None
        _, outcome = _two_phase(machine)

        assert outcome.success


# ═══════════════════════════════════════════════════════════════════════════════
# GEOMETRY FALLBACK
# ═══════════════════════════════════════════════════════════════════════════════

class TestGeometryFallback:
    """Recognize re-derives geometry from the proxy element when the session lost it."""

    def test_proxy_element_geometry(self, ink_canvas, gate, store, chars, no_sleep):
        machine = _machine(ink_canvas, FakeRecognizer(chars), gate=gate, store=store, sleep=no_sleep)

        async def scenario():
            await machine.initialize()
            machine.session.image_geometry = None
            return await machine.recognize()

        outcome = asyncio.run(scenario())

        assert outcome.success
        assert outcome.result.geometry.page_rect == Rect(99, 199, 302, 152)
        assert outcome.result.page_boxes[0] == PageBox("c001", 109, 219, 30, 40)
        assert no_sleep.calls == []

    def test_unavailable_after_bounded_retries(self, ink_canvas, gate, store, chars, no_sleep):
        machine = _machine(ink_canvas, FakeRecognizer(chars), gate=gate, store=store, sleep=no_sleep)

        async def scenario():
            await machine.initialize()
            machine.session.image_geometry = None
            gate.proxy.reset()
            return await machine.recognize()

        outcome = asyncio.run(scenario())

        assert not outcome.success
        assert "geometry unavailable after 5 attempts" in outcome.error
        assert no_sleep.calls == [0.1] * 5
        assert machine.phase is CapturePhase.IDLE
