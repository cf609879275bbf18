"""CLI entry point for agent-watch."""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import click
from pydantic import ValidationError
from rich.console import Console, Group
from rich.live import Live
from rich.table import Table

from agent_watch.config import (
    Config,
    find_config_path,
    get_default_config_path,
    load_config,
    save_config,
)
from agent_watch.core.alerts import AlertChange, should_notify, should_play_sound
from agent_watch.core.dashboard import DashboardSession
from agent_watch.core.mutations import MutationClient, MutationRejected
from agent_watch.core.stream import TransportError
from agent_watch.models.alert import StuckStatus, format_stuck_duration
from agent_watch.models.base import ensure_utc
from agent_watch.models.detection import (
    DEFAULT_STUCK_CONFIG,
    ConfigValidationError,
    StuckDetectionConfig,
    validate_config,
)
from agent_watch.models.events import parse_event
from agent_watch.models.session import RepoSessionState

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"

console = Console()
logger = logging.getLogger(__name__)

STATUS_STYLES = {
    "idle": "[dim]idle[/dim]",
    "thinking": "[cyan]thinking[/cyan]",
    "writing": "[green]writing[/green]",
    "waiting_input": "[yellow]waiting input[/yellow]",
    "stuck": "[bold red]stuck[/bold red]",
    "paused": "[blue]paused[/blue]",
}

SEVERITY_STYLES = {
    "low": "[dim]low[/dim]",
    "medium": "[yellow]medium[/yellow]",
    "high": "[red]high[/red]",
    "critical": "[bold red]critical[/bold red]",
}

# Settings keys whose command-line value is a comma separated list
LIST_KEYS = {"excluded_repo_ids", "excludedRepoIds"}


@dataclass
class CliState:
    settings: Config
    config_path: Optional[str]

    @property
    def settings_path(self) -> Path:
        """File that config commands write to."""
        if self.config_path:
            return Path(self.config_path)
        return find_config_path() or get_default_config_path()


@click.group()
@click.version_option(package_name="agent-watch")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    help="Path to a settings file.",
)
@click.option(
    "-v",
    "--verbose",
    is_flag=True,
    help="Log debug output.",
)
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], verbose: bool) -> None:
    """agent-watch - live status and stuck alerts for coding-agent sessions.

    Follows the dashboard backend's event stream, tracks what every
    repository's agent is doing and raises escalating alerts when one
    stops making progress.
    """
    settings = load_config(config_path)
    logging.basicConfig(
        level="DEBUG" if verbose else settings.logging.level,
        format=LOG_FORMAT,
    )
    ctx.obj = CliState(settings=settings, config_path=config_path)


@main.command("watch")
@click.option(
    "--url",
    "base_url",
    help="Backend base URL (overrides the settings file).",
)
@click.option(
    "--refresh",
    type=float,
    default=1.0,
    show_default=True,
    help="Seconds between screen refreshes.",
)
@click.pass_obj
def watch(state: CliState, base_url: Optional[str], refresh: float) -> None:
    """Follow the event stream and show a live repository table.

    Example:
        awatch watch
        awatch watch --url http://dashboard.local:3000
    """
    settings = state.settings
    if base_url:
        settings = settings.model_copy(
            update={"stream": settings.stream.model_copy(update={"base_url": base_url})}
        )

    try:
        asyncio.run(_watch(settings, refresh))
    except KeyboardInterrupt:
        console.print("[dim]Stopped.[/dim]")


async def _watch(settings: Config, refresh: float) -> None:
    session = DashboardSession.from_settings(settings)

    with Live(console=console, refresh_per_second=4, transient=False) as live:

        def announce(change: AlertChange) -> None:
            if not should_notify(change, session.config):
                return
            alert = change.alert
            live.console.print(
                f"[bold]{change.kind.title()}:[/bold] {alert.repository_name} - "
                f"{alert.description} ({SEVERITY_STYLES[alert.severity.value]})"
            )
            if should_play_sound(change, session.config):
                live.console.bell()

        session.alerts.subscribe(announce)

        async with session:
            while True:
                live.update(_render_dashboard(session))
                await asyncio.sleep(refresh)


def _render_dashboard(session: DashboardSession) -> Group:
    status = session.stuck_status()
    if session.connected:
        header = "[green]connected[/green]"
    else:
        reason = session.connection.reason
        header = f"[yellow]{session.connection.status.value}[/yellow]"
        if reason:
            header += f" [dim]({reason})[/dim]"
    if session.stream is not None and session.stream.last_updated:
        header += f"  [dim]updated {session.stream.last_updated.strftime('%H:%M:%S')}[/dim]"

    return Group(
        header,
        _repositories_table(session.effective_states(), status),
        _alerts_table(status),
    )


def _repositories_table(states: list[RepoSessionState], status: StuckStatus) -> Table:
    alerts = {alert.repository_id: alert for alert in status.alerts}

    table = Table(title="Repositories", show_header=True, header_style="bold cyan")
    table.add_column("Repository", style="bold")
    table.add_column("Agent", justify="center")
    table.add_column("Session")
    table.add_column("Current Task")
    table.add_column("Elapsed", justify="right")
    table.add_column("Alert", justify="center")

    for repo in sorted(states, key=lambda s: (not s.needs_attention, s.repository_name)):
        task = repo.current_task
        task_display = task.prompt or task.id if task else "[dim]-[/dim]"
        if len(task_display) > 40:
            task_display = task_display[:37] + "..."

        alert = alerts.get(repo.repository_id)
        alert_display = "[dim]-[/dim]"
        if alert is not None:
            alert_display = SEVERITY_STYLES[alert.severity.value]
            if alert.acknowledged:
                alert_display += " [dim](ack)[/dim]"

        table.add_row(
            repo.repository_name or repo.repository_id,
            STATUS_STYLES.get(repo.claude_status.value, repo.claude_status.value),
            repo.session_status.value if repo.session_status else "[dim]none[/dim]",
            task_display,
            format_stuck_duration(repo.time_elapsed // 1000),
            alert_display,
        )

    return table


def _alerts_table(status: StuckStatus) -> Table:
    table = Table(
        title=f"Stuck: {status.total_stuck_count}",
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("Repository", style="bold")
    table.add_column("Reason")
    table.add_column("Severity", justify="center")
    table.add_column("Stuck For", justify="right")
    table.add_column("Suggested Action")

    for alert in status.alerts:
        name = alert.repository_name or alert.repository_id
        if alert.acknowledged:
            name = f"[dim]{name}[/dim]"
        table.add_row(
            name,
            alert.description,
            SEVERITY_STYLES[alert.severity.value],
            format_stuck_duration(alert.displayed_duration_seconds),
            f"[dim]{alert.suggested_action}[/dim]",
        )

    return table


@main.command("replay")
@click.argument("events_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--at",
    "at",
    type=click.DateTime(formats=["%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S"]),
    help="Re-evaluate every repository at this UTC time after replaying.",
)
@click.option(
    "--json",
    "as_json",
    is_flag=True,
    help="Output as JSON.",
)
@click.pass_obj
def replay(state: CliState, events_file: Path, at: Optional[datetime], as_json: bool) -> None:
    """Feed a JSON-lines event file through the engine without a network.

    Prints the final repository states and the stuck status.

    Example:
        awatch replay events.jsonl
        awatch replay events.jsonl --at 2026-01-01T12:10:00 --json
    """
    session = DashboardSession(config=state.settings.detection, timers=state.settings.timers)

    applied = skipped = 0
    with open(events_file, encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                event = parse_event(json.loads(line))
            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning("Skipping line %d of %s: %s", line_number, events_file, e)
                skipped += 1
                continue
            if session.handle_event(event) is not None:
                applied += 1

    if at is not None:
        session.sweep(ensure_utc(at))

    status = session.stuck_status(ensure_utc(at) if at else None)

    if as_json:
        payload = {
            "repositories": [repo.to_wire() for repo in session.effective_states()],
            "stuckStatus": status.to_wire(),
            "applied": applied,
            "skipped": skipped,
        }
        click.echo(json.dumps(payload, indent=2))
        return

    console.print()
    console.print(_repositories_table(session.effective_states(), status))
    console.print()
    console.print(_alerts_table(status))
    console.print()
    console.print(f"[bold]Events:[/bold] {applied} applied, {skipped} skipped")


def _run_mutation(state: CliState, intent: str, call) -> dict[str, Any]:
    async def run() -> Any:
        client = MutationClient(
            state.settings.stream.base_url,
            timeout=state.settings.stream.request_timeout_seconds,
        )
        try:
            return await call(client)
        finally:
            await client.aclose()

    try:
        return asyncio.run(run())
    except MutationRejected as e:
        raise click.ClickException(str(e)) from e
    except TransportError as e:
        raise click.ClickException(f"Could not reach backend for {intent}: {e}") from e


@main.command("pause")
@click.argument("repository_id")
@click.argument("session_id")
@click.pass_obj
def pause(state: CliState, repository_id: str, session_id: str) -> None:
    """Pause SESSION_ID of REPOSITORY_ID."""
    _run_mutation(state, "pause", lambda c: c.pause_session(repository_id, session_id))
    console.print(f"[green]Session paused:[/green] {session_id}")


@main.command("resume")
@click.argument("repository_id")
@click.argument("session_id")
@click.pass_obj
def resume(state: CliState, repository_id: str, session_id: str) -> None:
    """Resume SESSION_ID of REPOSITORY_ID."""
    _run_mutation(state, "resume", lambda c: c.resume_session(repository_id, session_id))
    console.print(f"[green]Session resumed:[/green] {session_id}")


@main.command("ack")
@click.argument("repository_id")
@click.pass_obj
def acknowledge(state: CliState, repository_id: str) -> None:
    """Acknowledge the active stuck alert of REPOSITORY_ID."""
    _run_mutation(state, "acknowledge", lambda c: c.acknowledge_alert(repository_id))
    console.print(f"[green]Alert acknowledged:[/green] {repository_id}")


@main.group("config")
def config_group() -> None:
    """Show or change stuck detection settings."""


@config_group.command("show")
@click.option(
    "--remote",
    is_flag=True,
    help="Show the configuration active on the backend instead.",
)
@click.option(
    "--json",
    "as_json",
    is_flag=True,
    help="Output as JSON.",
)
@click.pass_obj
def config_show(state: CliState, remote: bool, as_json: bool) -> None:
    """Show the stuck detection configuration."""
    if remote:
        detection = _run_mutation(state, "fetch config", lambda c: c.fetch_stuck_detection_config())
    else:
        detection = state.settings.detection

    if as_json:
        click.echo(json.dumps(detection.to_wire(), indent=2))
        return

    _print_detection(detection)


@config_group.command("set")
@click.argument("assignments", nargs=-1, required=True)
@click.option(
    "--push",
    is_flag=True,
    help="Also apply the configuration on the backend.",
)
@click.pass_obj
def config_set(state: CliState, assignments: tuple[str, ...], push: bool) -> None:
    """Set detection settings given as KEY=VALUE.

    Keys may be snake_case or camelCase. Lists are comma separated.

    Example:
        awatch config set sensitivity_level=high noOutputThresholdSeconds=45
        awatch config set excluded_repo_ids=repo-a,repo-b --push
    """
    changes = _parse_assignments(assignments)
    try:
        detection = validate_config(changes, base=state.settings.detection)
    except ConfigValidationError as e:
        raise click.ClickException(str(e)) from e

    if push:
        detection = _run_mutation(
            state, "update config", lambda c: c.update_stuck_detection_config(detection)
        )

    _save_detection(state, detection)
    _print_detection(detection)


@config_group.command("reset")
@click.option(
    "--push",
    is_flag=True,
    help="Also reset the configuration on the backend.",
)
@click.pass_obj
def config_reset(state: CliState, push: bool) -> None:
    """Restore the default detection settings."""
    detection = DEFAULT_STUCK_CONFIG
    if push:
        detection = _run_mutation(state, "reset config", lambda c: c.reset_stuck_detection_config())

    _save_detection(state, detection)
    console.print("[green]Detection settings reset to defaults.[/green]")


@config_group.command("path")
@click.pass_obj
def config_path(state: CliState) -> None:
    """Show which settings file is in use."""
    path = state.settings_path
    if path.is_file():
        click.echo(str(path))
    else:
        click.echo(f"{path} (not created)")


def _parse_assignments(assignments: tuple[str, ...]) -> dict[str, Any]:
    changes: dict[str, Any] = {}
    for assignment in assignments:
        key, sep, value = assignment.partition("=")
        key = key.strip()
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got '{assignment}'")
        if key in LIST_KEYS:
            changes[key] = [item.strip() for item in value.split(",") if item.strip()]
        else:
            changes[key] = value.strip()
    return changes


def _save_detection(state: CliState, detection: StuckDetectionConfig) -> None:
    settings = state.settings.model_copy(update={"detection": detection})
    path = state.settings_path
    save_config(settings, path)
    state.settings = settings
    console.print(f"[dim]Saved to {path}[/dim]")


def _print_detection(detection: StuckDetectionConfig) -> None:
    table = Table(title="Stuck Detection", show_header=True, header_style="bold cyan")
    table.add_column("Setting", style="bold")
    table.add_column("Value")

    for name, value in detection.model_dump(mode="json").items():
        if isinstance(value, list):
            value = ", ".join(value) or "[dim]none[/dim]"
        table.add_row(name, str(value))

    console.print(table)


if __name__ == "__main__":
    main()
