"""Runtime state for scheduled and watched jobs."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import IO, Any, Callable, Optional

from .config import WardenConfig

logger = logging.getLogger("job-warden")

# Far enough in the past that every interval job is due on the first tick
NEVER_RUN = datetime(1980, 1, 1).timestamp()

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def format_timestamp(ts: float) -> str:
    """Format an epoch timestamp in local time."""
    return datetime.fromtimestamp(ts).strftime(TIMESTAMP_FORMAT)


@dataclass
class JobState:
    """Mutable runtime state shared by scheduled and watched jobs."""

    name: str
    handle: Optional[Any] = None  # ProcessHandle while a process is live
    last_run: float = NEVER_RUN
    output_path: Optional[str] = None
    output_file: Optional[IO[bytes]] = field(default=None, repr=False)
    retired: bool = False  # terminated on purpose, exit is expected

    @property
    def running(self) -> bool:
        return self.handle is not None

    def mark_started(self, now: float):
        """Record a successful spawn; last_run never moves backwards."""
        if now > self.last_run:
            self.last_run = now

    def open_output(self, path: Optional[str]) -> Optional[IO[bytes]]:
        """Return the append-mode output file for `path`, opening it if needed.

        A previously owned file for a different path is closed first, so at
        most one file is open per job. None means output is discarded.
        """
        if path is None:
            self.close_output()
            self.output_path = None
            return None

        if self.output_file is not None and self.output_path == path:
            return self.output_file

        self.close_output()
        self.output_file = open(path, "ab")
        self.output_path = path
        return self.output_file

    def close_output(self):
        """Close the owned output file, if any."""
        if self.output_file is not None:
            try:
                self.output_file.close()
            finally:
                self.output_file = None


@dataclass
class ScheduledJobState(JobState):
    """Runtime state for a scheduled job."""

    env: dict[str, str] = field(default_factory=dict, repr=False)


@dataclass
class WatchedJobState(JobState):
    """Runtime state for a watched job."""

    pending_restart: Optional[Any] = None  # timer handle with cancel()


class StateStore:
    """Per-job state, keyed by job name."""

    def __init__(self):
        self.schedule: dict[str, ScheduledJobState] = {}
        self.watch: dict[str, WatchedJobState] = {}

    def sync(self, config: WardenConfig) -> list[str]:
        """Bring the store in line with `config`.

        New names get fresh state; retained names are left untouched. State
        for removed scheduled jobs is dropped here. Removed watched jobs keep
        their state until the reconciler has terminated their process.

        Returns the names of the scheduled jobs that were dropped.
        """
        for name in config.schedule:
            if name not in self.schedule:
                self.schedule[name] = ScheduledJobState(name=name)

        dropped = [name for name in self.schedule if name not in config.schedule]
        for name in dropped:
            state = self.schedule.pop(name)
            if not state.running:
                state.close_output()

        for name in config.watch:
            if name not in self.watch:
                self.watch[name] = WatchedJobState(name=name)

        return dropped

    def live_handles(self) -> dict[str, Any]:
        """Map of job name to live process handle, across both kinds."""
        handles = {}
        for states in (self.schedule, self.watch):
            for name, state in states.items():
                if state.handle is not None:
                    handles[name] = state.handle
        return handles


class WardenContext:
    """The current configuration together with the runtime state store."""

    def __init__(
        self,
        config: WardenConfig,
        store: Optional[StateStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.store = store or StateStore()
        self.clock = clock
        self.store.sync(config)

    def apply(self, config: WardenConfig) -> list[str]:
        """Swap in a freshly loaded configuration."""
        self.config = config
        dropped = self.store.sync(config)
        for name in dropped:
            logger.info(f"Scheduled job '{name}' removed from configuration")
        return dropped
