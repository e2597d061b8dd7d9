"""Command dispatcher and interactive shell for graphpipe."""

from __future__ import annotations

import asyncio
import atexit
import shlex
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ..core.config import AppConfig
from ..core.errors import GraphAPIError
from ..core.models import Assignment, AssignmentIntent, EntityType
from ..services.assignments import AssignmentReport
from ..services.container import ServiceContainer
from ..services.permissions import describe_error
from ..utils.logging import setup_logging

console = Console()

PROMPT = "graph> "

_REFRESHABLE = {
    "devices": EntityType.DEVICES,
    "apps": EntityType.APPLICATIONS,
    "applications": EntityType.APPLICATIONS,
    "groups": EntityType.GROUPS,
    "assignments": EntityType.ASSIGNMENTS,
}


class CommandError(Exception):
    """Raised when command parsing or validation fails."""


_GLOBAL_LOOP = asyncio.new_event_loop()
asyncio.set_event_loop(_GLOBAL_LOOP)


def _shutdown_loop() -> None:
    pending = [task for task in asyncio.all_tasks(_GLOBAL_LOOP) if not task.done()]
    for task in pending:
        task.cancel()
    if pending:
        _GLOBAL_LOOP.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
    _GLOBAL_LOOP.close()


atexit.register(_shutdown_loop)


def _run(coro):
    return _GLOBAL_LOOP.run_until_complete(coro)


def _timestamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _format_age(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.0f}s"
    if seconds < 3600:
        return f"{seconds / 60:.0f}m"
    return f"{seconds / 3600:.1f}h"


@dataclass(slots=True)
class CliSession:
    """Context manager owning the service container for one invocation."""

    services: ServiceContainer

    @classmethod
    def create(cls, overrides: Optional[dict] = None) -> "CliSession":
        config = AppConfig.load(overrides)
        setup_logging(config.log_level, config.log_file)
        return cls(services=ServiceContainer.build(config))

    def __enter__(self) -> "CliSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        _run(self.services.aclose())


class CommandDispatcher:
    """Parse and execute Graph commands."""

    def __init__(self, session: CliSession) -> None:
        self.session = session
        self.services = session.services

    def execute(self, tokens: Sequence[str]) -> int:
        if not tokens:
            return 0
        command = tokens[0].lower()
        handler = getattr(self, f"do_{command}", None)
        if handler is None:
            raise CommandError(f"Unknown command: {command}")
        return handler(tokens[1:]) or 0

    def do_help(self, _: Sequence[str]) -> int:
        console.print(
            "Available commands: devices [QUERY], apps, groups, assignments, refresh TYPE, "
            "assign APP_ID GROUP_ID [INTENT], cache [clear], limits, help, quit"
        )
        console.print(f"Refreshable types: {', '.join(sorted(_REFRESHABLE))}")
        return 0

    def do_devices(self, args: Sequence[str], *, force: bool = False) -> int:
        devices = _run(self.services.devices.fetch_devices(force))
        if args:
            devices = self.services.devices.search(" ".join(args))
        console.print(f"[{_timestamp()}] DEVICES ({len(devices)})")
        if not devices:
            console.print("None")
            return 0
        for device in devices:
            synced = device.last_sync.strftime("%Y-%m-%d %H:%M") if device.last_sync else "never"
            console.print(
                f"- {device.device_name} {device.operating_system} {device.os_version} "
                f"compliance={device.compliance_state or 'unknown'} user={device.user_principal_name or '-'} "
                f"synced={synced}"
            )
        return 0

    def do_apps(self, _: Sequence[str], *, force: bool = False) -> int:
        apps = _run(self.services.applications.fetch_applications(force))
        console.print(f"[{_timestamp()}] APPLICATIONS ({len(apps)})")
        if not apps:
            console.print("None")
            return 0
        for application in apps:
            marker = " (assigned)" if application.is_assigned else ""
            console.print(f"- {application.id}: {application.display_name} ({application.publisher or 'unknown'}){marker}")
        return 0

    def do_groups(self, _: Sequence[str], *, force: bool = False) -> int:
        groups = _run(self.services.groups.fetch_groups(force))
        console.print(f"[{_timestamp()}] GROUPS ({len(groups)})")
        if not groups:
            console.print("None")
            return 0
        for group in groups:
            kind = "dynamic" if group.is_dynamic else "assigned"
            console.print(f"- {group.id}: {group.display_name} ({kind})")
        return 0

    def do_assignments(self, _: Sequence[str], *, force: bool = False) -> int:
        apps = _run(self.services.applications.fetch_applications())
        assignments = _run(
            self.services.assignments.fetch_assignments([application.id for application in apps], force)
        )
        console.print(f"[{_timestamp()}] ASSIGNMENTS ({len(assignments)})")
        if not assignments:
            console.print("None")
            return 0
        for assignment in assignments:
            console.print(f"- {assignment.application_id} -> {assignment.group_id} ({assignment.intent.value})")
        return 0

    def do_refresh(self, args: Sequence[str]) -> int:
        if not args:
            raise CommandError("Usage: refresh TYPE")
        entity = _REFRESHABLE.get(args[0].lower())
        if entity is None:
            raise CommandError(f"Unknown type: {args[0]} (expected one of {', '.join(sorted(_REFRESHABLE))})")
        handlers = {
            EntityType.DEVICES: self.do_devices,
            EntityType.APPLICATIONS: self.do_apps,
            EntityType.GROUPS: self.do_groups,
            EntityType.ASSIGNMENTS: self.do_assignments,
        }
        return handlers[entity]([], force=True)

    def do_assign(self, args: Sequence[str]) -> int:
        if len(args) not in (2, 3):
            raise CommandError("Usage: assign APP_ID GROUP_ID [INTENT]")
        intent = self._parse_intent(args[2]) if len(args) == 3 else AssignmentIntent.REQUIRED
        request = Assignment(application_id=args[0], group_id=args[1], intent=intent)
        report = _run(self.services.assignments.create_assignments([request]))
        self._render_report(report)
        return 0 if report.ok else 1

    def do_cache(self, args: Sequence[str]) -> int:
        if args and args[0].lower() == "clear":
            self.services.clear_all_caches()
            console.print("Cache cleared.")
            return 0
        cache = self.services.cache
        now = cache.now()
        table = Table(title="Cache")
        table.add_column("Type")
        table.add_column("Records", justify="right")
        table.add_column("Age", justify="right")
        table.add_column("TTL left", justify="right")
        table.add_column("State")
        for metadata in cache.all_metadata():
            if metadata.is_stale:
                state = "stale"
            elif metadata.is_expired(now):
                state = "expired"
            else:
                state = "fresh"
            table.add_row(
                metadata.entity_type,
                str(metadata.record_count),
                _format_age(metadata.age(now)),
                _format_age(metadata.remaining_ttl(now)),
                state,
            )
        console.print(table)
        health = cache.health()
        stats = cache.statistics()
        console.print(
            f"Health: {health.value} ({health.description}); "
            f"{stats.total_records} records in {stats.cache_entries} entries"
        )
        return 0

    def do_limits(self, _: Sequence[str]) -> int:
        status = self.services.client.rate_limit_status()
        console.print(f"[{_timestamp()}] RATE LIMITS")
        console.print(f"Total: {status.total}/{status.max_total} ({status.total_utilization:.0%})")
        console.print(f"Write: {status.write}/{status.max_write} ({status.write_utilization:.0%})")
        if status.consecutive_rejections:
            console.print(f"[yellow]Consecutive rejections: {status.consecutive_rejections}[/yellow]")
        return 0

    def do_quit(self, _: Sequence[str]) -> int:
        raise SystemExit(0)

    # Parsing helpers -------------------------------------------------

    def _parse_intent(self, token: str) -> AssignmentIntent:
        for intent in AssignmentIntent:
            if intent.value.lower() == token.lower():
                return intent
        choices = ", ".join(intent.value for intent in AssignmentIntent)
        raise CommandError(f"Invalid intent; expected one of {choices}")

    def _render_report(self, report: AssignmentReport) -> None:
        console.print(
            f"[{_timestamp()}] ASSIGN created={len(report.succeeded)} "
            f"already_present={len(report.skipped)} failed={len(report.failed)}"
        )
        for failure in report.failed:
            reason = failure.message or failure.code or "no details"
            console.print(
                f"- {failure.assignment.application_id} -> {failure.assignment.group_id}: "
                f"HTTP {failure.status} {reason}"
            )


def _extract_overrides(argv: Sequence[str]) -> Tuple[dict, List[str]]:
    overrides: dict = {}
    remaining: List[str] = []
    for arg in argv:
        if arg in {"-v", "--verbose"}:
            overrides["log_level"] = "DEBUG"
            continue
        if arg in {"-h", "--help"}:
            return overrides, ["help"]
        remaining.append(arg)
    return overrides, remaining


def _report_failure(exc: BaseException) -> None:
    console.print(f"[red]Error[/red]: {escape(describe_error(exc))}")


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    argv = list(argv if argv is not None else sys.argv[1:])
    overrides, remaining = _extract_overrides(argv)

    if not remaining:
        return run_repl(overrides)

    with CliSession.create(overrides) as session:
        dispatcher = CommandDispatcher(session)
        try:
            return dispatcher.execute(remaining)
        except CommandError as exc:
            console.print(f"Error: {exc}")
            return 1
        except GraphAPIError as exc:
            _report_failure(exc)
            return 1


def run_repl(overrides: Optional[dict] = None) -> int:
    with CliSession.create(overrides) as session:
        dispatcher = CommandDispatcher(session)
        console.print("Type 'help' for available commands, 'quit' to exit.")
        while True:
            try:
                raw = input(PROMPT)
            except EOFError:
                console.print("\nExited.")
                return 0
            except KeyboardInterrupt:
                console.print("\nInterrupted. Type 'quit' to exit.")
                continue
            command_line = raw.strip()
            if not command_line:
                continue
            try:
                tokens = shlex.split(command_line)
            except ValueError as exc:
                console.print(f"Parse error: {exc}")
                continue
            if not tokens:
                continue
            if tokens[0].lower() in {"quit", "exit"}:
                console.print("Bye.")
                return 0
            try:
                dispatcher.execute(tokens)
            except CommandError as exc:
                console.print(f"Error: {exc}")
            except SystemExit:
                console.print("Bye.")
                return 0
            except GraphAPIError as exc:
                _report_failure(exc)
    return 0


__all__ = ["run_cli", "run_repl"]
