"""Configuration management for Job Warden."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from .launcher import split_command

logger = logging.getLogger("job-warden")

UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}

_EVERY_RE = re.compile(r"^every\s+(\d+(?:\.\d+)?)\s*([smhd])$")
_AFTER_RE = re.compile(r"^after\s+(\S.*)$")


class ConfigError(Exception):
    """The configuration file could not be read or is structurally invalid."""


class SpecValidationError(ValueError):
    """A single job entry is invalid and will not be run."""

    def __init__(self, kind: str, name: str, reason: str):
        self.kind = kind
        self.name = name
        self.reason = reason
        super().__init__(f"{kind} job '{name}': {reason}")


@dataclass(frozen=True)
class Interval:
    """Run every `seconds` seconds."""

    seconds: float


@dataclass(frozen=True)
class AfterJob:
    """Run each time `predecessor` completes."""

    predecessor: str


Trigger = Union[Interval, AfterJob]


def parse_trigger(when: str) -> Trigger:
    """Parse a `when` expression into a trigger.

    Raises ValueError for anything other than ``every <n><unit>`` or
    ``after <job>``.
    """
    if not isinstance(when, str):
        raise ValueError(f"'when' must be a string, got {type(when).__name__}")

    text = when.strip()
    m = _EVERY_RE.match(text)
    if m:
        return Interval(float(m.group(1)) * UNIT_SECONDS[m.group(2)])

    m = _AFTER_RE.match(text)
    if m:
        return AfterJob(m.group(1).strip())

    raise ValueError(f"unrecognized 'when' expression: {when!r}")


Command = Union[str, list]


@dataclass
class ScheduledJobSpec:
    """A command run on an interval or after another scheduled job."""

    name: str
    command: Command
    trigger: Trigger
    args: list[str] = field(default_factory=list)
    cwd: Optional[str] = None
    output: Optional[str] = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class WatchedJobSpec:
    """A long-running command that is restarted whenever it exits."""

    name: str
    command: Command
    cwd: Optional[str] = None
    output: Optional[str] = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class NotifierConfig:
    """Configuration for a notification channel."""

    type: str  # email, slack, webhook
    enabled: bool = True

    # Email
    smtp_host: str = "localhost"
    smtp_port: int = 25
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    starttls: bool = False
    from_addr: Optional[str] = None
    to_addrs: list[str] = field(default_factory=list)

    # Slack
    webhook_url: Optional[str] = None
    channel: Optional[str] = None

    # Webhook
    url: Optional[str] = None
    method: str = "POST"
    headers: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NotifierConfig":
        if not isinstance(data, dict) or "type" not in data:
            raise ConfigError(f"Notifier entry must be a mapping with a 'type': {data!r}")
        return cls(
            type=data["type"],
            enabled=data.get("enabled", True),
            smtp_host=data.get("smtp_host", "localhost"),
            smtp_port=data.get("smtp_port", 25),
            smtp_user=data.get("smtp_user"),
            smtp_password=data.get("smtp_password"),
            starttls=data.get("starttls", False),
            from_addr=data.get("from_addr"),
            to_addrs=data.get("to_addrs", []),
            webhook_url=data.get("webhook_url"),
            channel=data.get("channel"),
            url=data.get("url"),
            method=data.get("method", "POST"),
            headers=data.get("headers", {}),
        )


def _parse_env(kind: str, name: str, raw: Any) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise SpecValidationError(kind, name, "'env' must be a mapping")
    return {str(k): "" if v is None else str(v) for k, v in raw.items()}


def _parse_command(kind: str, name: str, entry: dict) -> Command:
    cmd = entry.get("cmd")
    if cmd is None or cmd == "" or cmd == []:
        raise SpecValidationError(kind, name, "missing 'cmd'")
    if isinstance(cmd, list):
        if not all(isinstance(part, (str, int, float)) for part in cmd):
            raise SpecValidationError(kind, name, "'cmd' list must contain only strings")
        return [str(part) for part in cmd]
    if not isinstance(cmd, str):
        raise SpecValidationError(kind, name, "'cmd' must be a string or a list")
    try:
        split_command(cmd)
    except ValueError as e:
        raise SpecValidationError(kind, name, f"cannot parse 'cmd': {e}") from e
    return cmd


def parse_scheduled_job(name: str, entry: Any) -> ScheduledJobSpec:
    """Build a ScheduledJobSpec from a raw config entry."""
    if not isinstance(entry, dict):
        raise SpecValidationError("schedule", name, "entry must be a mapping")

    command = _parse_command("schedule", name, entry)

    if "when" not in entry:
        raise SpecValidationError("schedule", name, "missing 'when'")
    try:
        trigger = parse_trigger(entry["when"])
    except ValueError as e:
        raise SpecValidationError("schedule", name, str(e)) from e

    args = entry.get("args") or []
    if not isinstance(args, list):
        raise SpecValidationError("schedule", name, "'args' must be a list")

    return ScheduledJobSpec(
        name=name,
        command=command,
        trigger=trigger,
        args=[str(a) for a in args],
        cwd=entry.get("cwd"),
        output=entry.get("output"),
        env=_parse_env("schedule", name, entry.get("env")),
    )


def parse_watched_job(name: str, entry: Any) -> WatchedJobSpec:
    """Build a WatchedJobSpec from a raw config entry."""
    if not isinstance(entry, dict):
        raise SpecValidationError("watch", name, "entry must be a mapping")

    return WatchedJobSpec(
        name=name,
        command=_parse_command("watch", name, entry),
        cwd=entry.get("cwd"),
        output=entry.get("output"),
        env=_parse_env("watch", name, entry.get("env")),
    )


@dataclass
class WardenConfig:
    """Main configuration for the warden daemon."""

    schedule: dict[str, ScheduledJobSpec] = field(default_factory=dict)
    watch: dict[str, WatchedJobSpec] = field(default_factory=dict)
    notifiers: list[NotifierConfig] = field(default_factory=list)

    # Global settings
    check_interval: int = 5000  # milliseconds between dispatch ticks
    rate_limit: Optional[int] = None  # min seconds between watched (re)starts
    chain_on_failure: bool = True

    # Notification settings
    admin: Optional[str] = None
    notify_email: Optional[str] = None
    from_email: Optional[str] = None
    smtp_host: str = "localhost"
    smtp_port: int = 25

    # Daemon settings
    daemon: bool = False
    log: Optional[str] = None
    pid: Optional[str] = None
    log_level: str = "INFO"

    # Entries dropped while loading
    errors: list[SpecValidationError] = field(default_factory=list)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "WardenConfig":
        """Load configuration from a YAML (or JSON) file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Error reading config {path}: {e}") from e

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Any) -> "WardenConfig":
        """Create configuration from dictionary."""
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError("Config document must be a mapping")

        config = cls()

        config.daemon = bool(data.get("daemon", config.daemon))
        config.log = data.get("log", config.log)
        config.pid = data.get("pid", config.pid)
        config.log_level = data.get("log_level", config.log_level)
        config.chain_on_failure = bool(data.get("chain_on_failure", config.chain_on_failure))
        config.admin = data.get("admin")
        config.notify_email = data.get("notify_email")
        config.from_email = data.get("from_email")
        config.smtp_host = data.get("smtp_host", config.smtp_host)
        config.smtp_port = data.get("smtp_port", config.smtp_port)

        try:
            config.check_interval = int(data.get("check_interval", config.check_interval))
            if data.get("rate_limit") is not None:
                config.rate_limit = int(data["rate_limit"])
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid numeric setting: {e}") from e
        if config.check_interval <= 0:
            raise ConfigError("check_interval must be a positive number of milliseconds")

        for section in ("schedule", "watch"):
            if not isinstance(data.get(section) or {}, dict):
                raise ConfigError(f"'{section}' must be a mapping of job name to entry")

        # Parse jobs, keeping declaration order
        for name, entry in (data.get("schedule") or {}).items():
            try:
                config.schedule[str(name)] = parse_scheduled_job(str(name), entry)
            except SpecValidationError as e:
                config.errors.append(e)

        for name, entry in (data.get("watch") or {}).items():
            try:
                config.watch[str(name)] = parse_watched_job(str(name), entry)
            except SpecValidationError as e:
                config.errors.append(e)

        # Dependents of a missing job would never run; repeat until stable
        orphaned = True
        while orphaned:
            orphaned = [
                spec
                for spec in config.schedule.values()
                if isinstance(spec.trigger, AfterJob) and spec.trigger.predecessor not in config.schedule
            ]
            for spec in orphaned:
                config.errors.append(
                    SpecValidationError(
                        "schedule",
                        spec.name,
                        f"'after' references unknown job '{spec.trigger.predecessor}'",
                    )
                )
                del config.schedule[spec.name]

        # Parse notifiers
        notifiers = data.get("notifiers") or []
        if not isinstance(notifiers, list):
            raise ConfigError("'notifiers' must be a list")
        for notif_data in notifiers:
            config.notifiers.append(NotifierConfig.from_dict(notif_data))

        if config.admin or config.notify_email:
            recipient = config.notify_email or config.admin
            config.notifiers.append(
                NotifierConfig(
                    type="email",
                    smtp_host=config.smtp_host,
                    smtp_port=config.smtp_port,
                    from_addr=config.from_email or config.admin or recipient,
                    to_addrs=[recipient],
                )
            )

        return config

    def log_errors(self):
        """Log every job entry that was dropped during loading."""
        for error in self.errors:
            logger.error(f"Skipping {error}")

    def validate(self) -> list[str]:
        """Validate global settings, return list of errors.

        Invalid job entries are not included; they are in `errors` and are
        skipped rather than treated as fatal.
        """
        errors = []

        if self.daemon:
            for key in ("log", "pid"):
                if not getattr(self, key):
                    errors.append(f"'{key}' must be specified when running as a daemon")

        if self.rate_limit is not None and self.rate_limit < 0:
            errors.append("rate_limit must not be negative")

        return errors

    def dependents_of(self, name: str) -> list[ScheduledJobSpec]:
        """Scheduled jobs triggered by the completion of `name`, in declaration order."""
        return [
            spec
            for spec in self.schedule.values()
            if isinstance(spec.trigger, AfterJob) and spec.trigger.predecessor == name
        ]

    def to_dict(self) -> dict[str, Any]:
        """Export configuration to dictionary."""

        def when(trigger: Trigger) -> str:
            if isinstance(trigger, AfterJob):
                return f"after {trigger.predecessor}"
            return f"every {trigger.seconds:g}s"

        return {
            "daemon": self.daemon,
            "log": self.log,
            "pid": self.pid,
            "log_level": self.log_level,
            "check_interval": self.check_interval,
            "rate_limit": self.rate_limit,
            "chain_on_failure": self.chain_on_failure,
            "schedule": {
                s.name: {
                    "cmd": s.command,
                    "when": when(s.trigger),
                    "args": list(s.args),
                    "cwd": s.cwd,
                    "output": s.output,
                    "env": dict(s.env),
                }
                for s in self.schedule.values()
            },
            "watch": {
                w.name: {"cmd": w.command, "cwd": w.cwd, "output": w.output, "env": dict(w.env)}
                for w in self.watch.values()
            },
            "notifiers": [{"type": n.type, "enabled": n.enabled} for n in self.notifiers],
        }
