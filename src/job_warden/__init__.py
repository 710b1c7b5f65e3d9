"""
Job Warden - interval job scheduler and process watchdog

Runs commands on fixed intervals, chains dependent commands after a
predecessor finishes, and keeps long-running processes alive by
restarting them when they exit.
"""

__version__ = "1.0.0"

from .config import WardenConfig
from .dispatcher import Dispatcher
from .watchdog import JobWarden

__all__ = ["JobWarden", "WardenConfig", "Dispatcher"]
