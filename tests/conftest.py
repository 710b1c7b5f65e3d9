"""Shared fixtures: a fake launcher, clock and timer queue."""

import signal
from unittest.mock import MagicMock

import pytest

from job_warden.config import WardenConfig
from job_warden.launcher import ExitStatus, SpawnError
from job_warden.notifiers import NotificationSink
from job_warden.state import WardenContext


class FakeHandle:
    """Stands in for a ProcessHandle; the test decides when it starts and exits."""

    def __init__(self, request, on_start, on_exit, pid):
        self.name = request.name
        self.request = request
        self.pid = None
        self.status = None
        self.signals = []
        self._next_pid = pid
        self._on_start = on_start
        self._on_exit = on_exit

    @property
    def alive(self):
        return self.status is None

    def start(self):
        self.pid = self._next_pid
        self._on_start(self)

    def exit(self, code=0):
        self.status = ExitStatus(returncode=code)
        self._on_exit(self, self.status)

    def fail(self, message="No such file or directory"):
        self.status = ExitStatus(error=SpawnError(message))
        self._on_exit(self, self.status)

    def kill(self, sig=signal.SIGTERM):
        self.signals.append(sig)
        return True


class FakeLauncher:
    """Records spawn requests instead of creating processes."""

    def __init__(self, auto_start=True):
        self.auto_start = auto_start
        self.spawned = []
        self._next_pid = 1000

    def spawn(self, request, on_start, on_exit):
        self._next_pid += 1
        handle = FakeHandle(request, on_start, on_exit, self._next_pid)
        self.spawned.append(handle)
        if self.auto_start:
            handle.start()
        return handle

    def for_job(self, name):
        return [h for h in self.spawned if h.name == name]


class FakeClock:
    """Wall clock whose `now` is an offset in seconds from `epoch`."""

    def __init__(self, epoch=1_700_000_000.0, now=0.0):
        self.epoch = epoch
        self.now = now

    def __call__(self):
        return self.epoch + self.now

    def at(self, offset):
        """The timestamp `offset` seconds after the epoch."""
        return self.epoch + offset


class FakeTimer:
    def __init__(self, when, callback, args):
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeTimers:
    """A call_later replacement driven by FakeClock."""

    def __init__(self, clock):
        self.clock = clock
        self.timers = []

    def call_later(self, delay, callback, *args):
        timer = FakeTimer(self.clock.now + delay, callback, args)
        self.timers.append(timer)
        return timer

    @property
    def pending(self):
        return [t for t in self.timers if not t.cancelled]

    def advance(self, to):
        """Move the clock to `to`, firing every timer due on the way."""
        while True:
            due = sorted((t for t in self.pending if t.when <= to), key=lambda t: t.when)
            if not due:
                break
            timer = due[0]
            self.timers.remove(timer)
            self.clock.now = timer.when
            timer.callback(*timer.args)
        self.clock.now = to


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timers(clock):
    return FakeTimers(clock)


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def notifier():
    return MagicMock(spec=NotificationSink)


@pytest.fixture
def make_context(clock):
    def _make(data):
        return WardenContext(WardenConfig.from_dict(data), clock=clock)

    return _make
