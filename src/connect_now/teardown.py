"""Idempotent release of everything a session acquired."""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable

from .models import TerminationReason
from .signaling import SessionNotFound

logger = logging.getLogger(__name__)

Step = Callable[[], Any]

STEP_STOP_TASKS = "stop-tasks"
STEP_STOP_MEDIA = "stop-media"
STEP_CLOSE_CONNECTION = "close-connection"
STEP_PURGE_RECORD = "purge-record"
STEP_REPORT = "report"

TEARDOWN_STEPS = (
    STEP_STOP_TASKS,
    STEP_STOP_MEDIA,
    STEP_CLOSE_CONNECTION,
    STEP_PURGE_RECORD,
    STEP_REPORT,
)


@dataclass(frozen=True, slots=True)
class TeardownReport:
    """Outcome of a completed teardown."""

    reason: TerminationReason
    failed_steps: tuple[str, ...] = ()

    @property
    def clean(self) -> bool:
        return not self.failed_steps

    def to_dict(self) -> dict[str, object]:
        return {"reason": self.reason.value, "failed_steps": list(self.failed_steps)}


async def _call(step: Step | None) -> None:
    if step is None:
        return
    result = step()
    if inspect.isawaitable(result):
        await result


class TeardownCoordinator:
    """Run the teardown steps of one session exactly once.

    The first :meth:`terminate` call fixes the reason and starts the run;
    every later or concurrent call awaits that same run and gets the same
    report. Steps run in order and are best-effort: a failing step is logged
    and recorded in the report, and the remaining steps still run.
    """

    def __init__(
        self,
        session_id: str,
        *,
        stop_tasks: Step | None = None,
        stop_media: Step | None = None,
        close_connection: Step | None = None,
        purge_record: Step | None = None,
        on_started: Callable[[TerminationReason], None] | None = None,
        on_complete: Callable[[TeardownReport], Any] | None = None,
    ) -> None:
        self.session_id = session_id
        self._steps: tuple[tuple[str, Step | None], ...] = (
            (STEP_STOP_TASKS, stop_tasks),
            (STEP_STOP_MEDIA, stop_media),
            (STEP_CLOSE_CONNECTION, close_connection),
            (STEP_PURGE_RECORD, purge_record),
        )
        self._on_started = on_started
        self._on_complete = on_complete
        self._task: asyncio.Future[TeardownReport] | None = None
        self._reason: TerminationReason | None = None

    @property
    def started(self) -> bool:
        return self._task is not None

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    @property
    def reason(self) -> TerminationReason | None:
        return self._reason

    def begin(
        self, reason: TerminationReason | str = TerminationReason.HANGUP
    ) -> asyncio.Future[TeardownReport]:
        """Start the teardown without waiting for it; later calls reuse the run."""

        if self._task is None:
            self._reason = TerminationReason(reason)
            logger.info("Session %s: teardown started (%s)", self.session_id, self._reason.value)
            if self._on_started is not None:
                try:
                    self._on_started(self._reason)
                except Exception:
                    logger.exception("Session %s: teardown start hook failed", self.session_id)
            self._task = asyncio.ensure_future(self._run(self._reason))
        else:
            logger.debug(
                "Session %s: teardown already %s",
                self.session_id,
                "complete" if self._task.done() else "in progress",
            )
        return self._task

    async def terminate(
        self, reason: TerminationReason | str = TerminationReason.HANGUP
    ) -> TeardownReport:
        return await asyncio.shield(self.begin(reason))

    async def wait(self) -> TeardownReport:
        """Wait for a teardown started elsewhere."""

        if self._task is None:
            raise RuntimeError("Teardown has not been started")
        return await asyncio.shield(self._task)

    async def _run(self, reason: TerminationReason) -> TeardownReport:
        failed: list[str] = []
        for name, step in self._steps:
            try:
                await _call(step)
            except SessionNotFound:
                if name != STEP_PURGE_RECORD:
                    failed.append(name)
                    logger.warning("Session %s: teardown step %s lost its record", self.session_id, name)
                else:
                    logger.debug("Session %s: record already purged", self.session_id)
            except Exception:
                failed.append(name)
                logger.exception("Session %s: teardown step %s failed", self.session_id, name)
        report = TeardownReport(reason=reason, failed_steps=tuple(failed))
        if self._on_complete is not None:
            try:
                await _call(lambda: self._on_complete(report))
            except Exception:
                logger.exception("Session %s: completion callback failed", self.session_id)
                report = TeardownReport(reason=reason, failed_steps=tuple(failed) + (STEP_REPORT,))
        logger.info(
            "Session %s: teardown finished%s",
            self.session_id,
            f" with failed steps {', '.join(report.failed_steps)}" if report.failed_steps else "",
        )
        return report


__all__ = [
    "STEP_CLOSE_CONNECTION",
    "STEP_PURGE_RECORD",
    "STEP_REPORT",
    "STEP_STOP_MEDIA",
    "STEP_STOP_TASKS",
    "TEARDOWN_STEPS",
    "TeardownCoordinator",
    "TeardownReport",
]
