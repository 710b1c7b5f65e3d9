"""Main warden daemon implementation."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from pathlib import Path
from typing import Callable, Optional, Union

from . import __version__
from .config import ConfigError, WardenConfig
from .dispatcher import Dispatcher
from .launcher import ProcessLauncher
from .notifiers import NotificationSink
from .reconciler import WatchdogReconciler
from .runner import JobRunner
from .state import WardenContext

logger = logging.getLogger("job-warden")


class JobWarden:
    """Main daemon that schedules jobs and keeps watched jobs running."""

    def __init__(
        self,
        config: WardenConfig,
        config_path: Optional[Union[str, Path]] = None,
        launcher: Optional[ProcessLauncher] = None,
        notifier: Optional[NotificationSink] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config_path = Path(config_path) if config_path else None
        self.context = WardenContext(config, clock=clock)
        self.launcher = launcher or ProcessLauncher()
        self.notifier = notifier or NotificationSink.from_config(config)
        self.runner = JobRunner(self.context, self.launcher, self.notifier)
        self.reconciler = WatchdogReconciler(self.context, self.launcher, self.notifier)
        self.dispatcher = Dispatcher(self.context, self.runner, self.reconciler)
        self.running = False

    @property
    def config(self) -> WardenConfig:
        return self.context.config

    def _setup_logging(self):
        """Configure logging."""
        level = getattr(logging, self.config.log_level.upper(), logging.INFO)
        logger.setLevel(level)
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

        # Console handler
        console = logging.StreamHandler()
        console.setLevel(level)
        console.setFormatter(formatter)
        logger.addHandler(console)

        # File handler
        if self.config.log:
            try:
                log_path = Path(self.config.log)
                log_path.parent.mkdir(parents=True, exist_ok=True)
                file_handler = logging.FileHandler(log_path)
                file_handler.setLevel(level)
                file_handler.setFormatter(formatter)
                logger.addHandler(file_handler)
            except PermissionError:
                logger.warning(f"Cannot write to log file: {self.config.log}")

    def _write_pid_file(self):
        """Write PID file for daemon mode."""
        if not self.config.pid:
            return

        pid_path = Path(self.config.pid)
        try:
            pid_path.parent.mkdir(parents=True, exist_ok=True)
            pid_path.write_text(str(os.getpid()))
            logger.debug(f"Wrote PID file: {pid_path}")
        except OSError as e:
            logger.warning(f"Failed to write PID file: {e}")

    def _remove_pid_file(self):
        """Remove PID file on shutdown."""
        if not self.config.pid:
            return

        try:
            Path(self.config.pid).unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to remove PID file: {e}")

    def reload(self) -> bool:
        """Re-read the config file and reconcile state against it.

        On failure the current configuration and state are kept.
        """
        if self.config_path is None:
            logger.warning("No config file to reload from")
            return False

        try:
            config = WardenConfig.from_yaml(self.config_path)
        except ConfigError as e:
            logger.error(f"Error reading config, keeping current configuration: {e}")
            return False

        errors = config.validate()
        if errors:
            for error in errors:
                logger.error(f"Invalid config, keeping current configuration: {error}")
            return False

        config.log_errors()
        self.context.apply(config)
        self.notifier.configure(config)
        self.reconciler.check()
        logger.info(
            f"Configuration reloaded: {len(config.schedule)} scheduled, {len(config.watch)} watched jobs"
        )
        return True

    async def serve(self):
        """Run the dispatch loop until a stop signal arrives."""
        loop = asyncio.get_running_loop()

        def handle_reload():
            logger.info("Caught SIGHUP - reloading configuration")
            self.reload()

        def handle_stop(signum):
            logger.info(f"Received signal {signum}, shutting down...")
            self.dispatcher.stop()

        loop.add_signal_handler(signal.SIGHUP, handle_reload)
        for signum in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(signum, handle_stop, signum)

        try:
            await self.dispatcher.run()
        finally:
            for signum in (signal.SIGHUP, signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(signum)

    def run(self):
        """Run the warden daemon loop."""
        self._setup_logging()
        self.running = True
        os.environ["IN_JOB_WARDEN"] = "1"
        self._write_pid_file()

        logger.info(f"Job Warden v{__version__} starting...")
        self.config.log_errors()
        logger.info(
            f"Managing {len(self.config.schedule)} scheduled and {len(self.config.watch)} watched jobs"
        )

        try:
            asyncio.run(self.serve())
        finally:
            self.running = False
            self._remove_pid_file()
            self.notifier.close()
            logger.info("Job Warden stopped")
