"""Process creation for scheduled and watched jobs."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
import subprocess
from dataclasses import dataclass
from typing import IO, Callable, Mapping, Optional, Sequence, Union

logger = logging.getLogger("job-warden")

_VAR_RE = re.compile(r"\$([A-Za-z0-9_]+)")


class SpawnError(Exception):
    """A process could not be started (missing executable, bad cwd, ...)."""


def compose_env(overrides: Optional[Mapping[str, str]], ambient: Optional[Mapping[str, str]] = None) -> dict[str, str]:
    """Layer job overrides on top of the ambient environment."""
    env = dict(os.environ if ambient is None else ambient)
    if overrides:
        env.update(overrides)
    return env


def expand_vars(arg: str, env: Mapping[str, str]) -> str:
    """Replace $NAME references with values from `env` (missing names become '')."""
    return _VAR_RE.sub(lambda m: env.get(m.group(1), ""), arg)


Segment = tuple[str, bool]  # (text, may hold $NAME references)


def _scan_words(command: str) -> list[list[Segment]]:
    """Split `command` into shell words following POSIX quoting rules.

    Each word is a list of segments. Text inside single quotes or escaped
    with a backslash is literal; bare and double-quoted text may be
    expanded. Raises ValueError on unbalanced quotes or a trailing
    backslash.
    """
    words: list[list[Segment]] = []
    word: Optional[list[Segment]] = None
    i, n = 0, len(command)

    while i < n:
        ch = command[i]
        if ch.isspace():
            if word is not None:
                words.append(word)
                word = None
            i += 1
            continue

        if word is None:
            word = []

        if ch == "'":
            end = command.find("'", i + 1)
            if end < 0:
                raise ValueError("No closing quotation")
            word.append((command[i + 1:end], False))
            i = end + 1
        elif ch == '"':
            i += 1
            text = ""
            while True:
                if i >= n:
                    raise ValueError("No closing quotation")
                c = command[i]
                if c == '"':
                    i += 1
                    break
                if c == "\\" and i + 1 < n and command[i + 1] in '"\\$`':
                    if text:
                        word.append((text, True))
                        text = ""
                    word.append((command[i + 1], False))
                    i += 2
                    continue
                text += c
                i += 1
            word.append((text, True))
        elif ch == "\\":
            if i + 1 >= n:
                raise ValueError("No escaped character")
            word.append((command[i + 1], False))
            i += 2
        else:
            start = i
            while i < n and not command[i].isspace() and command[i] not in "'\"\\":
                i += 1
            word.append((command[start:i], True))

    if word is not None:
        words.append(word)
    return words


def split_command(command: str) -> list[str]:
    """Split a command line into shell words, without expansion.

    Raises ValueError on unbalanced quotes.
    """
    return ["".join(text for text, _ in word) for word in _scan_words(command)]


def parse_command(command: Union[str, Sequence[str]], env: Mapping[str, str]) -> list[str]:
    """Turn a command into an argv list.

    Single-quoted text is passed through verbatim; everything else has
    $NAME references expanded from `env`.
    """
    if isinstance(command, str):
        argv = [
            "".join(expand_vars(text, env) if expandable else text for text, expandable in word)
            for word in _scan_words(command)
        ]
    else:
        argv = [arg if arg.startswith("'") else expand_vars(arg, env) for arg in command]

    if not argv:
        raise ValueError("empty command")
    return argv


@dataclass
class LaunchRequest:
    """Everything needed to start one process."""

    name: str
    command: Union[str, Sequence[str]]
    env: dict[str, str]
    cwd: Optional[str] = None
    output: Optional[IO[bytes]] = None  # None discards stdout/stderr


@dataclass
class ExitStatus:
    """How a process ended, or why it never started."""

    returncode: Optional[int] = None
    error: Optional[BaseException] = None

    @property
    def success(self) -> bool:
        return self.error is None and self.returncode == 0

    @property
    def signal(self) -> Optional[int]:
        if self.returncode is not None and self.returncode < 0:
            return -self.returncode
        return None

    def describe(self) -> str:
        if self.error is not None:
            return f"could not start: {self.error}"
        if self.signal is not None:
            try:
                name = signal.Signals(self.signal).name
            except ValueError:
                name = str(self.signal)
            return f"killed by signal {name}"
        return f"finished with code {self.returncode}"


class ProcessHandle:
    """A process owned by a job: its pid, its status and a way to signal it."""

    def __init__(self, name: str):
        self.name = name
        self.pid: Optional[int] = None
        self.process: Optional[asyncio.subprocess.Process] = None
        self.status: Optional[ExitStatus] = None
        self.task: Optional[asyncio.Future] = None
        self._pending_signal: Optional[int] = None

    @property
    def alive(self) -> bool:
        return self.status is None

    def kill(self, sig: int = signal.SIGTERM) -> bool:
        """Send `sig` to the process; best effort, never waits.

        If the process is still being created the signal is delivered as
        soon as it exists.
        """
        if self.status is not None:
            return False
        if self.process is None:
            self._pending_signal = sig
            return True
        try:
            self.process.send_signal(sig)
        except ProcessLookupError:
            return False
        return True

    def _attach(self, process: asyncio.subprocess.Process):
        self.process = process
        self.pid = process.pid
        if self._pending_signal is not None:
            sig, self._pending_signal = self._pending_signal, None
            self.kill(sig)

    def __repr__(self) -> str:
        return f"<ProcessHandle {self.name} pid={self.pid} status={self.status}>"


StartCallback = Callable[[ProcessHandle], None]
ExitCallback = Callable[[ProcessHandle, ExitStatus], None]


class ProcessLauncher:
    """Start processes on the running asyncio loop and report their exit."""

    def spawn(self, request: LaunchRequest, on_start: StartCallback, on_exit: ExitCallback) -> ProcessHandle:
        """Start `request` in the background and return its handle at once.

        `on_start` runs once the OS process exists. `on_exit` runs exactly
        once, either with the exit code or with the launch error.
        """
        handle = ProcessHandle(request.name)
        handle.task = asyncio.ensure_future(self._supervise(handle, request, on_start, on_exit))
        return handle

    async def _supervise(
        self,
        handle: ProcessHandle,
        request: LaunchRequest,
        on_start: StartCallback,
        on_exit: ExitCallback,
    ):
        stdout = request.output if request.output is not None else subprocess.DEVNULL

        try:
            argv = parse_command(request.command, request.env)
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=subprocess.DEVNULL,
                stdout=stdout,
                stderr=stdout,
                env=request.env,
                cwd=request.cwd,
            )
        except (OSError, ValueError) as e:
            self._finish(handle, ExitStatus(error=SpawnError(str(e))), on_exit)
            return

        handle._attach(process)
        self._call(on_start, handle)

        returncode = await process.wait()
        self._finish(handle, ExitStatus(returncode=returncode), on_exit)

    def _finish(self, handle: ProcessHandle, status: ExitStatus, on_exit: ExitCallback):
        handle.status = status
        self._call(on_exit, handle, status)

    @staticmethod
    def _call(callback: Callable, *args):
        try:
            callback(*args)
        except Exception:
            logger.exception(f"Error in process callback for '{args[0].name}'")
