from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger("squadguard.sweeper")


SweepJob = Callable[[], None]


class ExpirySweeper:
    """Runs housekeeping jobs on a fixed interval from an asyncio task."""

    def __init__(self, *jobs: SweepJob, interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._jobs = list(jobs)
        self._interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def run_once(self) -> None:
        for job in self._jobs:
            try:
                job()
            except Exception:
                logger.exception(
                    "Sweep job failed",
                    extra={"event": "sweep_job_failed", "reason": getattr(job, "__qualname__", repr(job))},
                )

    async def _run_forever(self) -> None:
        while True:
            await asyncio.sleep(self._interval_seconds)
            self.run_once()

    async def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run_forever(), name="squadguard-expiry-sweeper")
        logger.info(
            "Expiry sweeper started",
            extra={"event": "sweeper_started", "duration_seconds": self._interval_seconds},
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Expiry sweeper stopped", extra={"event": "sweeper_stopped"})
