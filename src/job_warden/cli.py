"""Command-line interface for Job Warden."""

import os
import sys
from pathlib import Path

import click

from .config import ConfigError, WardenConfig
from .watchdog import JobWarden


@click.group()
@click.version_option(package_name="job-warden")
def main():
    """Job Warden - Run jobs on intervals and keep processes alive."""
    pass


def _load(config_path: str) -> WardenConfig:
    try:
        return WardenConfig.from_yaml(config_path)
    except ConfigError as e:
        click.echo(f"Error loading config: {e}", err=True)
        sys.exit(1)


@main.command()
@click.option(
    "-c", "--config", "config_path",
    type=click.Path(exists=True, dir_okay=False),
    required=True,
    help="Path to configuration file (YAML or JSON)",
)
@click.option(
    "-d", "--daemon",
    is_flag=True,
    help="Run as daemon (background process)",
)
@click.option(
    "-v", "--verbose",
    is_flag=True,
    help="Enable verbose logging",
)
def run(config_path: str, daemon: bool, verbose: bool):
    """Start the warden daemon."""
    config_path = str(Path(config_path).resolve())
    config = _load(config_path)

    if verbose:
        config.log_level = "DEBUG"

    if daemon:
        config.daemon = True

    errors = config.validate()
    if errors:
        click.echo("Configuration errors:", err=True)
        for error in errors:
            click.echo(f"  - {error}", err=True)
        sys.exit(1)

    if config.daemon:
        _daemonize()

    warden = JobWarden(config, config_path=config_path)
    warden.run()


@main.command()
@click.option(
    "-c", "--config", "config_path",
    type=click.Path(exists=True, dir_okay=False),
    required=True,
    help="Path to configuration file (YAML or JSON)",
)
def validate(config_path: str):
    """Validate configuration file."""
    config = _load(config_path)
    errors = config.validate()

    for job_error in config.errors:
        click.echo(f"⚠️  {job_error} (job will be skipped)", err=True)

    if errors:
        click.echo("❌ Configuration has errors:", err=True)
        for error in errors:
            click.echo(f"  - {error}", err=True)
        sys.exit(1)

    click.echo("✅ Configuration is valid")
    click.echo(f"\nScheduled jobs: {len(config.schedule)}")
    schedule = config.to_dict()["schedule"]
    for name, entry in schedule.items():
        click.echo(f"  - {name} ({entry['when']})")
    click.echo(f"\nWatched jobs: {len(config.watch)}")
    for name in config.watch:
        click.echo(f"  - {name}")
    click.echo(f"\nNotifiers configured: {len(config.notifiers)}")
    for notif in config.notifiers:
        status = "enabled" if notif.enabled else "disabled"
        click.echo(f"  - {notif.type} ({status})")


SAMPLE_CONFIG = '''# Job Warden Configuration

# Daemon settings (log and pid are required when daemon is true)
daemon: false
log: /var/log/job-warden.log
pid: /var/run/job-warden.pid
log_level: INFO

# Milliseconds between dispatch ticks
check_interval: 5000

# Minimum seconds between restarts of the same watched job
rate_limit: 10

# Run "after" jobs even when their predecessor failed. A predecessor that
# could not be started at all never runs the jobs that follow it.
chain_on_failure: true

# Email alerts on non-zero exits and launch errors
admin: ops@example.com
notify_email: alerts@example.com
from_email: warden@example.com

# Jobs run on an interval, or after another job completes
schedule:
  fetch:
    cmd: ./bin/fetch --since
    when: every 30m
    args: [last_run]
    cwd: /opt/reports
    output: /var/log/reports/fetch.log
  report:
    cmd: ./bin/report "$REPORT_DIR"
    when: after fetch
    cwd: /opt/reports
    env:
      REPORT_DIR: /srv/reports

# Long-running processes restarted whenever they exit
watch:
  api:
    cmd: ./server --port 8080
    cwd: /opt/api
    output: /var/log/api.log
    env:
      APP_ENV: production

# Additional notification channels
notifiers:
  - type: slack
    enabled: false
    webhook_url: https://hooks.slack.com/services/XXX
  - type: webhook
    enabled: false
    url: https://your-webhook.com/alerts
    method: POST
'''


@main.command()
@click.option("-o", "--output", type=click.Path(), help="Output file path")
def init(output: str):
    """Generate a sample configuration file."""
    if output:
        Path(output).write_text(SAMPLE_CONFIG)
        click.echo(f"✅ Sample config written to: {output}")
    else:
        click.echo(SAMPLE_CONFIG)


def _daemonize():
    """Fork process to run as daemon."""
    # First fork
    try:
        pid = os.fork()
        if pid > 0:
            sys.exit(0)
    except OSError as e:
        sys.stderr.write(f"Fork #1 failed: {e}\n")
        sys.exit(1)

    # Decouple from parent environment
    os.chdir("/")
    os.setsid()
    os.umask(0o022)

    # Second fork
    try:
        pid = os.fork()
        if pid > 0:
            sys.exit(0)
    except OSError as e:
        sys.stderr.write(f"Fork #2 failed: {e}\n")
        sys.exit(1)

    # Redirect standard file descriptors
    sys.stdout.flush()
    sys.stderr.flush()

    with open("/dev/null", "r") as devnull:
        os.dup2(devnull.fileno(), sys.stdin.fileno())
    with open("/dev/null", "a+") as devnull:
        os.dup2(devnull.fileno(), sys.stdout.fileno())
        os.dup2(devnull.fileno(), sys.stderr.fileno())


if __name__ == "__main__":
    main()
