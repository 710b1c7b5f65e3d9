"""Running scheduled jobs and chaining their dependents."""

from __future__ import annotations

import logging
import os
import shlex
from functools import partial
from typing import Optional, Union

from .config import ScheduledJobSpec, WatchedJobSpec
from .launcher import ExitStatus, LaunchRequest, ProcessHandle, ProcessLauncher, SpawnError, compose_env
from .notifiers import NotificationEvent, NotificationSink
from .state import JobState, ScheduledJobState, WardenContext, format_timestamp

logger = logging.getLogger("job-warden")

JobSpec = Union[ScheduledJobSpec, WatchedJobSpec]


class JobController:
    """Spawn bookkeeping shared by the job runner and the watchdog."""

    def __init__(
        self,
        context: WardenContext,
        launcher: ProcessLauncher,
        notifier: Optional[NotificationSink] = None,
    ):
        self.context = context
        self.launcher = launcher
        self.notifier = notifier

    def _start(self, spec: JobSpec, state: JobState, extra_args: tuple = ()) -> Optional[ProcessHandle]:
        """Spawn `spec` and record the handle on `state`."""
        env = compose_env(spec.env)
        command = spec.command
        if extra_args:
            if isinstance(command, str):
                command = " ".join([command] + [shlex.quote(arg) for arg in extra_args])
            else:
                command = list(command) + list(extra_args)

        try:
            output = state.open_output(spec.output)
        except OSError as e:
            error = SpawnError(f"cannot open output {spec.output}: {e}")
            logger.error(f"Failed to start {spec.name}: {error}")
            self._notify(NotificationEvent.ERROR, spec.name, None, str(error))
            return None

        request = LaunchRequest(
            name=spec.name,
            command=command,
            env=env,
            cwd=spec.cwd or os.getcwd(),
            output=output,
        )
        handle = self.launcher.spawn(
            request,
            on_start=partial(self._on_start, state),
            on_exit=partial(self._on_exit, spec, state),
        )
        state.handle = handle
        if isinstance(state, ScheduledJobState):
            state.env = env
        return handle

    def _on_start(self, state: JobState, handle: ProcessHandle):
        state.mark_started(self.context.clock())
        logger.info(f"Started {state.name} (pid: {handle.pid})")

    def _on_exit(self, spec: JobSpec, state: JobState, handle: ProcessHandle, status: ExitStatus):
        if state.handle is handle:
            state.handle = None
        state.close_output()

        if status.error is not None:
            logger.error(f"{spec.name} {status.describe()}")
            self._notify(NotificationEvent.ERROR, spec.name, handle.pid, str(status.error))
        elif state.retired:
            logger.info(f"{spec.name} stopped after removal from configuration ({status.describe()})")
        elif not status.success:
            logger.warning(f"{spec.name} {status.describe()}")
            body = f"Process {status.describe()}"
            if spec.output:
                body += f"\nOutput is readable in {spec.output}"
            self._notify(NotificationEvent.NONZERO_EXIT, spec.name, handle.pid, body)
        else:
            logger.info(f"{spec.name} {status.describe()}")

        self._completed(spec, state, status)

    def _completed(self, spec: JobSpec, state: JobState, status: ExitStatus):
        """Hook run after every exit, once the state has been cleared."""

    def _notify(self, kind: str, name: str, pid: Optional[int], body: Optional[str] = None):
        if self.notifier is None:
            return
        try:
            self.notifier.notify(kind, name, pid, body)
        except Exception as e:
            logger.error(f"Failed to queue notification for {name}: {e}")


class JobRunner(JobController):
    """Runs scheduled jobs, at most one process per job at a time."""

    def run(self, name: str) -> Optional[ProcessHandle]:
        """Start job `name` unless it is already running."""
        spec = self.context.config.schedule.get(name)
        state = self.context.store.schedule.get(name)
        if spec is None or state is None:
            logger.warning(f"Unknown scheduled job '{name}', ignoring")
            return None

        if state.running:
            logger.info(f"... {name} is still running, skipping")
            return None

        return self._start(spec, state, tuple(self.resolve_args(spec, state)))

    def resolve_args(self, spec: ScheduledJobSpec, state: ScheduledJobState) -> list[str]:
        """Expand the job's dynamic argument tokens."""
        values = []
        for token in spec.args:
            if token == "last_run":
                values.append(format_timestamp(state.last_run))
            else:
                logger.warning(f"Unrecognized dynamic argument '{token}' for {spec.name}")
        return values

    def _completed(self, spec: ScheduledJobSpec, state: ScheduledJobState, status: ExitStatus):
        # A job that never started has not completed
        if status.error is not None:
            return

        if not status.success and not self.context.config.chain_on_failure:
            logger.info(f"{spec.name} failed, not running jobs that follow it")
            return

        for dependent in self.context.config.dependents_of(spec.name):
            self.run(dependent.name)
