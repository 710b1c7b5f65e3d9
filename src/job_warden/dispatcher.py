"""The periodic dispatch tick."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .config import Interval
from .reconciler import WatchdogReconciler
from .runner import JobRunner
from .state import WardenContext

logger = logging.getLogger("job-warden")


class Dispatcher:
    """Runs due interval jobs, then reconciles watched jobs, once per tick."""

    def __init__(self, context: WardenContext, runner: JobRunner, reconciler: WatchdogReconciler):
        self.context = context
        self.runner = runner
        self.reconciler = reconciler
        self._stop_event: Optional[asyncio.Event] = None
        self._stopped = False

    def due_jobs(self, now: float) -> list[str]:
        """Names of interval jobs due at `now`, in declaration order."""
        due = []
        for name, spec in self.context.config.schedule.items():
            if not isinstance(spec.trigger, Interval):
                continue
            state = self.context.store.schedule.get(name)
            if state is None:
                continue
            if now - state.last_run >= spec.trigger.seconds:
                due.append(name)
        return due

    def tick(self):
        """One synchronous dispatch pass."""
        for name in self.due_jobs(self.context.clock()):
            self.runner.run(name)
        self.reconciler.check()

    async def run(self):
        """Tick now and then every `check_interval` milliseconds until stopped."""
        self._stop_event = asyncio.Event()
        if self._stopped:
            return

        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Dispatch tick failed")

            interval = self.context.config.check_interval / 1000.0
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    def stop(self):
        """Stop the loop after the current tick."""
        self._stopped = True
        if self._stop_event is not None:
            self._stop_event.set()
