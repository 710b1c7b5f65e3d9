"""Keeping watched jobs alive."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

from .config import WatchedJobSpec
from .launcher import ExitStatus, ProcessLauncher
from .notifiers import NotificationSink
from .runner import JobController
from .state import WardenContext, WatchedJobState

logger = logging.getLogger("job-warden")


class RateLimiter:
    """Minimum spacing between successive starts of the same job."""

    def __init__(self, min_interval: Optional[float] = None):
        self.min_interval = min_interval

    def remaining(self, last_run: float, now: float) -> float:
        """Seconds to wait before the next start; 0 when it may start now."""
        if not self.min_interval:
            return 0.0
        wait = last_run + self.min_interval - now
        return wait if wait > 0 else 0.0


def _loop_call_later(delay: float, callback: Callable, *args) -> asyncio.TimerHandle:
    return asyncio.get_running_loop().call_later(delay, callback, *args)


class WatchdogReconciler(JobController):
    """Restarts watched jobs that are not running and stops removed ones."""

    def __init__(
        self,
        context: WardenContext,
        launcher: ProcessLauncher,
        notifier: Optional[NotificationSink] = None,
        call_later: Callable[..., Any] = _loop_call_later,
    ):
        super().__init__(context, launcher, notifier)
        self._call_later = call_later

    @property
    def rate_limiter(self) -> RateLimiter:
        return RateLimiter(self.context.config.rate_limit)

    def check(self):
        """Diff configured watched jobs against state and act on the difference."""
        configured = self.context.config.watch
        watched = self.context.store.watch

        for name in [n for n in watched if n not in configured]:
            self.retire(name)

        for name in configured:
            state = watched.get(name)
            if state is None:
                state = watched[name] = WatchedJobState(name=name)
            if state.running or state.pending_restart is not None:
                continue
            self.restart(name)

    def retire(self, name: str):
        """Terminate a removed job's process and forget its state."""
        state = self.context.store.watch.pop(name, None)
        if state is None:
            return
        state.retired = True

        if state.pending_restart is not None:
            state.pending_restart.cancel()
            state.pending_restart = None

        if state.handle is not None:
            logger.info(f"{name} is no longer configured, terminating (pid: {state.handle.pid})")
            state.handle.kill()
        else:
            state.close_output()

    def restart(self, name: str):
        """Start `name` now, or defer it if it was started too recently."""
        spec = self.context.config.watch.get(name)
        state = self.context.store.watch.get(name)
        if spec is None or state is None or state.running:
            return

        wait = self.rate_limiter.remaining(state.last_run, self.context.clock())
        if wait > 0:
            if state.pending_restart is None:
                logger.info(
                    f"{name} was started less than {self.context.config.rate_limit} seconds ago, "
                    f"deferring for {wait:.1f}s"
                )
                state.pending_restart = self._call_later(wait, self._deferred_restart, name)
            return

        if state.pending_restart is not None:
            state.pending_restart.cancel()
            state.pending_restart = None

        logger.info(f"{name} is not running, restarting")
        self._start(spec, state)

    def _deferred_restart(self, name: str):
        state = self.context.store.watch.get(name)
        if state is None:
            return
        state.pending_restart = None
        self.restart(name)

    def _completed(self, spec: WatchedJobSpec, state: WatchedJobState, status: ExitStatus):
        # Launch failures are retried by the next check, not in a tight loop
        if status.error is not None:
            return
        # Removed from config (or replaced) while it was running
        if self.context.store.watch.get(spec.name) is not state:
            return
        self.restart(spec.name)
