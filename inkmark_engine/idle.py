from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from .capture import CaptureStateMachine, RecognizeOutcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdleSettings:
    idle_timeout_s: float = 60.0
    settle_delay_s: float = 2.0

    @classmethod
    def from_section(cls, section: dict[str, Any]) -> "IdleSettings":
        return cls(
            idle_timeout_s=float(section.get("idle_timeout_s", 60.0)),
            settle_delay_s=float(section.get("settle_delay_s", 2.0)),
        )


class IdleTrigger:
    """Auto-runs initialize then recognize after the canvas has been idle.

    Both calls go through the machine's normal entry points, so the busy
    guard and phase ordering apply exactly as for manual triggers. Every
    edit restarts the countdown.
    """

    def __init__(
        self,
        machine: CaptureStateMachine,
        settings: IdleSettings = IdleSettings(),
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_complete: Callable[[RecognizeOutcome], None] | None = None,
    ):
        self.machine = machine
        self.settings = settings
        self.on_complete = on_complete
        self._sleep = sleep
        self._task: asyncio.Task | None = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def notify_edit(self) -> None:
        self.cancel()
        self._task = asyncio.get_running_loop().create_task(self._countdown())

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _countdown(self) -> RecognizeOutcome | None:
        await self._sleep(self.settings.idle_timeout_s)
        logger.info("canvas idle for %.0fs; auto-capturing", self.settings.idle_timeout_s)

        if not self.machine.canvas.get_selected_shape_ids():
            self.machine.canvas.select_all()
        init = await self.machine.initialize()
        if not init.success:
            logger.warning("auto-capture initialize failed: %s", init.message)
            return None

        await self._sleep(self.settings.settle_delay_s)
        outcome = await self.machine.recognize()
        if not outcome.success:
            logger.warning("auto-capture recognize failed: %s", outcome.error)
        if self.on_complete is not None:
            self.on_complete(outcome)
        return outcome

    async def wait(self) -> RecognizeOutcome | None:
        if self._task is None:
            return None
        return await self._task
