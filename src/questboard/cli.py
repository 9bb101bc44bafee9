"""Command-line entry point for the `questboard` orchestration core.

Every subcommand works against the state directory under ``--project-dir``
(``.questboard/``) and prints either a rich table or, with ``--json``,
machine-readable output.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .config import load_config
from .constants import GOAL_KIND, MEMBER_KIND, QUEST_KIND, QUESTLINE_KIND, TASK_KIND
from .domain.models import Goal, Member, Quest, Questline, Task
from .errors import ConflictError, OrchestrationError, QuestboardError, SprintPlanLockedError
from .events.bus import FactPublisher
from .io_utils import load_data_with_error
from .orchestrator.service import OrchestrationService
from .planning.sprint import compare_sprint_plans, week_bounds
from .storage.container import Container
from .utils import parse_iso, to_iso

_LOADERS = (
    ("goals", GOAL_KIND, Goal),
    ("questlines", QUESTLINE_KIND, Questline),
    ("quests", QUEST_KIND, Quest),
    ("tasks", TASK_KIND, Task),
    ("members", MEMBER_KIND, Member),
)


def _configure_logging(level: str = "WARNING") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan> "
            "{message}"
        ),
    )


def _base_parser(description: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=description)
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project directory holding .questboard/ (default: current directory)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print machine-readable JSON",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )
    return parser


def _build_run_parser() -> argparse.ArgumentParser:
    parser = _base_parser("Questboard - run unlock evaluation, assignment and deck generation for an org")
    parser.add_argument("--org", required=True, help="Organization id")
    parser.add_argument("--now", default=None, help="ISO timestamp to run at (default: current time)")
    return parser


def _build_deck_parser() -> argparse.ArgumentParser:
    parser = _base_parser("Questboard - show the stored daily deck for an org")
    parser.add_argument("--org", required=True, help="Organization id")
    parser.add_argument("--date", default=None, help="Deck date YYYY-MM-DD (default: today, UTC)")
    return parser


def _build_ready_parser() -> argparse.ArgumentParser:
    parser = _base_parser("Questboard - list locked quests that are close to unlocking")
    parser.add_argument("--org", required=True, help="Organization id")
    return parser


def _build_explain_parser() -> argparse.ArgumentParser:
    parser = _base_parser("Questboard - explain who would be assigned a task and why")
    parser.add_argument("--org", required=True, help="Organization id")
    parser.add_argument("task_id", help="Task id")
    return parser


def _build_complete_parser() -> argparse.ArgumentParser:
    parser = _base_parser("Questboard - mark a task done and propagate unlocks")
    parser.add_argument("task_id", help="Task id")
    parser.add_argument("--actor", default="cli", help="Who completed the task")
    parser.add_argument("--expected-version", type=int, default=None, help="Reject if the task changed since this version")
    return parser


def _build_approve_parser() -> argparse.ArgumentParser:
    parser = _base_parser("Questboard - approve a completed checkpoint task")
    parser.add_argument("task_id", help="Task id")
    parser.add_argument("--by", required=True, dest="approved_by", help="Approver id")
    parser.add_argument("--expected-version", type=int, default=None, help="Reject if the task changed since this version")
    return parser


def _build_sprint_parser() -> argparse.ArgumentParser:
    parser = _base_parser("Questboard - build or rebuild the draft sprint plan for a week")
    parser.add_argument("--org", required=True, help="Organization id")
    parser.add_argument("--week", default=None, help="Any date YYYY-MM-DD in the target week (default: today, UTC)")
    return parser


def _build_sprint_approve_parser() -> argparse.ArgumentParser:
    parser = _base_parser("Questboard - approve a draft sprint plan")
    parser.add_argument("plan_id", help="Sprint plan id (sprint-<org>-<week start>)")
    parser.add_argument("--by", required=True, dest="approved_by", help="Approver id")
    parser.add_argument("--expected-version", type=int, default=None, help="Reject if the plan changed since this version")
    return parser


def _build_load_parser() -> argparse.ArgumentParser:
    parser = _base_parser("Questboard - load goals, questlines, quests, tasks and members from a YAML file")
    parser.add_argument("file", type=Path, help="YAML file with top-level lists per record kind")
    parser.add_argument("--org", default=None, help="Organization id for records that do not set one")
    return parser


def _open_service(project_dir: Path) -> tuple[OrchestrationService, Optional[str]]:
    container = Container(project_dir)
    config, err = load_config(container.state_dir)
    if err:
        logger.warning("Ignoring invalid config: {}", err)
    publisher = FactPublisher(container.events)
    return OrchestrationService(container.records, publisher, config=config), err


def _write_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")


def _parse_now(raw: Optional[str]) -> Optional[datetime]:
    if raw is None:
        return datetime.now(timezone.utc)
    return parse_iso(raw)


def _run_command(project_dir: Path, org_id: str, now_raw: Optional[str], *, as_json: bool = False) -> int:
    now = _parse_now(now_raw)
    if now is None:
        sys.stderr.write(f"Invalid --now timestamp: {now_raw}\n")
        return 2
    service, _ = _open_service(project_dir)
    try:
        report = asyncio.run(service.run_orchestration(org_id, now))
    except OrchestrationError as exc:
        if as_json:
            _write_json({"ok": False, "stage": exc.stage, "error": str(exc.cause)})
        else:
            sys.stderr.write(f"Run failed at stage '{exc.stage}': {exc.cause}\n")
        return 1

    if as_json:
        _write_json({"ok": True, **report.to_dict()})
        return 0

    console = Console()
    table = Table(title=f"Orchestration run for {org_id}")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Quests unlocked", str(report.quests_unlocked))
    table.add_row("Quests completed", str(report.quests_completed))
    table.add_row("Tasks assigned", str(report.tasks_assigned))
    table.add_row("Deck size", str(report.deck_size))
    table.add_row("Tasks considered", str(report.tasks_considered))
    table.add_row("Stale tasks", str(report.stale_tasks))
    table.add_row("Member decks", str(report.member_decks))
    console.print(table)
    for warning in report.warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")
    return 0


def _deck_command(project_dir: Path, org_id: str, date: Optional[str], *, as_json: bool = False) -> int:
    date = date or datetime.now(timezone.utc).date().isoformat()
    service, _ = _open_service(project_dir)
    deck = asyncio.run(service.get_daily_deck(org_id, date))
    if deck is None:
        if as_json:
            _write_json({"deck": None})
        else:
            sys.stdout.write(f"No deck for {org_id} on {date}\n")
        return 0
    if as_json:
        _write_json({"deck": deck.to_dict()})
        return 0

    console = Console()
    table = Table(title=f"Daily deck {deck.date} ({deck.tasks_considered} considered)")
    table.add_column("#", justify="right")
    table.add_column("Task")
    table.add_column("Quest")
    table.add_column("Owner")
    table.add_column("Priority")
    table.add_column("Min", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Why")
    for idx, item in enumerate(deck.items, start=1):
        table.add_row(
            str(idx),
            item.task_title or item.task_id,
            item.quest_title or "-",
            item.owner_label or item.owner or "-",
            item.priority,
            str(item.estimated_minutes),
            str(item.score),
            item.reason,
        )
    console.print(table)
    for cap in deck.team_capacity:
        console.print(f"{cap.member_label}: {cap.planned_minutes}/{cap.capacity_minutes} min ({cap.utilization_percent}%)")
    for warning in deck.warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")
    return 0


def _ready_command(project_dir: Path, org_id: str, *, as_json: bool = False) -> int:
    service, _ = _open_service(project_dir)
    quests = asyncio.run(service.ready_to_unlock(org_id))
    if as_json:
        _write_json({"ready": [q.to_dict() for q in quests]})
        return 0
    if not quests:
        sys.stdout.write("No locked quests are close to unlocking\n")
        return 0
    for quest in quests:
        sys.stdout.write(f"{quest.id}  {quest.title}\n")
    return 0


def _explain_command(project_dir: Path, org_id: str, task_id: str, *, as_json: bool = False) -> int:
    service, _ = _open_service(project_dir)
    explanation = asyncio.run(service.explain_assignment(org_id, task_id))
    if explanation is None:
        sys.stderr.write(f"Task not found: {task_id}\n")
        return 1
    if as_json:
        _write_json(explanation.to_dict())
        return 0

    console = Console()
    console.print(f"Task {task_id} classified as [bold]{explanation.tag.value}[/bold]")
    console.print(f"Assigned to: {explanation.assigned_member_id or '-'} ({explanation.reason})")
    table = Table()
    table.add_column("Member")
    table.add_column("Top", justify="right")
    table.add_column("Competency", justify="right")
    table.add_column("Frustration", justify="right")
    table.add_column("Workload", justify="right")
    table.add_column("Total", justify="right")
    for score in explanation.scores:
        table.add_row(
            score.member_id,
            str(score.top_match),
            str(score.competency_match),
            f"-{score.frustration_penalty}",
            f"-{score.workload_penalty}",
            str(score.total),
        )
    console.print(table)
    return 0


def _report_conflict(exc: ConflictError, *, as_json: bool) -> int:
    if as_json:
        _write_json({"ok": False, "conflict": exc.to_dict()})
    else:
        sys.stderr.write(f"{exc}\n")
    return 3


def _complete_command(
    project_dir: Path,
    task_id: str,
    actor: str,
    expected_version: Optional[int],
    *,
    as_json: bool = False,
) -> int:
    service, _ = _open_service(project_dir)
    try:
        task = asyncio.run(service.complete_task(task_id, actor=actor, expected_version=expected_version))
    except ConflictError as exc:
        return _report_conflict(exc, as_json=as_json)
    except QuestboardError as exc:
        sys.stderr.write(f"{exc}\n")
        return 1
    if as_json:
        _write_json({"ok": True, "task": task.to_dict()})
    else:
        suffix = " (awaiting approval)" if not task.is_truly_complete else ""
        sys.stdout.write(f"Completed {task.id}{suffix}\n")
    return 0


def _approve_command(
    project_dir: Path,
    task_id: str,
    approved_by: str,
    expected_version: Optional[int],
    *,
    as_json: bool = False,
) -> int:
    service, _ = _open_service(project_dir)
    try:
        task = asyncio.run(service.approve_task(task_id, approved_by, expected_version=expected_version))
    except ConflictError as exc:
        return _report_conflict(exc, as_json=as_json)
    except QuestboardError as exc:
        sys.stderr.write(f"{exc}\n")
        return 1
    if as_json:
        _write_json({"ok": True, "task": task.to_dict()})
    else:
        sys.stdout.write(f"Approved {task.id} by {task.approved_by}\n")
    return 0


def _sprint_command(project_dir: Path, org_id: str, week: Optional[str], *, as_json: bool = False) -> int:
    if week is None:
        week_of = datetime.now(timezone.utc).date()
    else:
        try:
            week_of = datetime.fromisoformat(week).date()
        except ValueError:
            sys.stderr.write(f"Invalid --week date: {week}\n")
            return 2
    service, _ = _open_service(project_dir)
    week_start, _ = week_bounds(week_of)
    previous = asyncio.run(service.get_sprint_plan(org_id, week_start.isoformat()))
    try:
        plan = asyncio.run(service.generate_sprint_plan(org_id, week_of))
    except SprintPlanLockedError as exc:
        sys.stderr.write(f"{exc}\n")
        return 1
    except ConflictError as exc:
        return _report_conflict(exc, as_json=as_json)
    diff = compare_sprint_plans(previous, plan) if previous is not None else None

    if as_json:
        _write_json({"plan": plan.to_dict(), "changes": diff.to_dict() if diff is not None else None})
        return 0

    console = Console()
    table = Table(title=f"Sprint plan {plan.week_start} to {plan.week_end} ({plan.status})")
    table.add_column("Member")
    table.add_column("Quests", justify="right")
    table.add_column("Tasks", justify="right")
    table.add_column("Allocated", justify="right")
    table.add_column("Capacity", justify="right")
    table.add_column("Use", justify="right")
    for member_plan in plan.member_plans:
        table.add_row(
            member_plan.member_label,
            str(len(member_plan.quests)),
            str(len(member_plan.tasks)),
            str(member_plan.allocated_minutes),
            str(member_plan.capacity_minutes),
            f"{member_plan.utilization_percent}%",
        )
    console.print(table)
    if diff is not None and not diff.is_empty:
        for change in diff.changed:
            console.print(
                f"{change.member_id}: {change.old_allocated_minutes} -> {change.new_allocated_minutes} min, "
                f"{change.old_task_count} -> {change.new_task_count} task(s)"
            )
        for added in diff.added:
            console.print(f"[green]added:[/green] {added.member_id}")
        for removed in diff.removed:
            console.print(f"[red]removed:[/red] {removed.member_id}")
    return 0


def _sprint_approve_command(
    project_dir: Path,
    plan_id: str,
    approved_by: str,
    expected_version: Optional[int],
    *,
    as_json: bool = False,
) -> int:
    service, _ = _open_service(project_dir)
    try:
        plan = asyncio.run(service.approve_sprint_plan(plan_id, approved_by, expected_version=expected_version))
    except ConflictError as exc:
        return _report_conflict(exc, as_json=as_json)
    except QuestboardError as exc:
        sys.stderr.write(f"{exc}\n")
        return 1
    if as_json:
        _write_json({"ok": True, "plan": plan.to_dict()})
    else:
        sys.stdout.write(f"Approved {plan.id} by {plan.approved_by}\n")
    return 0


async def _load_records(container: Container, data: dict[str, Any], org_id: Optional[str]) -> dict[str, int]:
    counts: dict[str, int] = {}
    now = to_iso(datetime.now(timezone.utc))
    for key, kind, model in _LOADERS:
        rows = data.get(key) or []
        if not isinstance(rows, list):
            logger.warning("Skipping '{}': expected a list", key)
            continue
        loaded = 0
        for row in rows:
            if not isinstance(row, dict):
                continue
            if org_id and not row.get("org_id"):
                row = {**row, "org_id": org_id}
            record = model.from_dict(row)
            if isinstance(record, Quest) and not record.unlock_conditions and record.state == "locked":
                record.state = "unlocked"
                record.unlocked_at = now
            await container.records.upsert(kind, record.to_dict())
            loaded += 1
        counts[key] = loaded
    return counts


def _load_command(project_dir: Path, file: Path, org_id: Optional[str], *, as_json: bool = False) -> int:
    if not file.exists():
        sys.stderr.write(f"File not found: {file}\n")
        return 2
    data, err = load_data_with_error(file, {})
    if err:
        sys.stderr.write(f"Cannot load {file}: {err}\n")
        return 2
    container = Container(project_dir)
    counts = asyncio.run(_load_records(container, data, org_id))
    if as_json:
        _write_json({"loaded": counts})
    else:
        sys.stdout.write(", ".join(f"{count} {key}" for key, count in counts.items()) + " loaded\n")
    return 0


_USAGE = (
    "usage: questboard {run,deck,ready,explain,complete,approve,sprint,sprint-approve,load} [options]\n"
    "Run `questboard <command> --help` for command options.\n"
)


def main(argv: list[str] | None = None) -> None:
    """Run the `questboard` CLI.

    Args:
        argv: Optional argument list (excluding the executable name). When omitted,
            uses `sys.argv[1:]`.

    Raises:
        SystemExit: Always; carries the command's exit code.
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv or argv[0] in {"-h", "--help"}:
        sys.stdout.write(_USAGE)
        raise SystemExit(0 if argv else 2)

    command, rest = argv[0], argv[1:]
    if command == "run":
        args = _build_run_parser().parse_args(rest)
        _configure_logging(args.log_level)
        raise SystemExit(_run_command(args.project_dir, args.org, args.now, as_json=bool(args.json)))
    if command == "deck":
        args = _build_deck_parser().parse_args(rest)
        _configure_logging(args.log_level)
        raise SystemExit(_deck_command(args.project_dir, args.org, args.date, as_json=bool(args.json)))
    if command == "ready":
        args = _build_ready_parser().parse_args(rest)
        _configure_logging(args.log_level)
        raise SystemExit(_ready_command(args.project_dir, args.org, as_json=bool(args.json)))
    if command == "explain":
        args = _build_explain_parser().parse_args(rest)
        _configure_logging(args.log_level)
        raise SystemExit(_explain_command(args.project_dir, args.org, args.task_id, as_json=bool(args.json)))
    if command == "complete":
        args = _build_complete_parser().parse_args(rest)
        _configure_logging(args.log_level)
        raise SystemExit(
            _complete_command(
                args.project_dir,
                args.task_id,
                args.actor,
                args.expected_version,
                as_json=bool(args.json),
            )
        )
    if command == "approve":
        args = _build_approve_parser().parse_args(rest)
        _configure_logging(args.log_level)
        raise SystemExit(
            _approve_command(
                args.project_dir,
                args.task_id,
                args.approved_by,
                args.expected_version,
                as_json=bool(args.json),
            )
        )
    if command == "sprint":
        args = _build_sprint_parser().parse_args(rest)
        _configure_logging(args.log_level)
        raise SystemExit(_sprint_command(args.project_dir, args.org, args.week, as_json=bool(args.json)))
    if command == "sprint-approve":
        args = _build_sprint_approve_parser().parse_args(rest)
        _configure_logging(args.log_level)
        raise SystemExit(
            _sprint_approve_command(
                args.project_dir,
                args.plan_id,
                args.approved_by,
                args.expected_version,
                as_json=bool(args.json),
            )
        )
    if command == "load":
        args = _build_load_parser().parse_args(rest)
        _configure_logging(args.log_level)
        raise SystemExit(_load_command(args.project_dir, args.file, args.org, as_json=bool(args.json)))

    sys.stderr.write(f"Unknown command: {command}\n" + _USAGE)
    raise SystemExit(2)


if __name__ == "__main__":
    main()
