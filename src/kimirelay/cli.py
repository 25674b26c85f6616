from __future__ import annotations

import argparse
from dataclasses import asdict, dataclass
import json
from pathlib import Path
import sys
from typing import TextIO

from kimirelay.agent_adapter import AgentSpawnError
from kimirelay.cli_agent import CliAgentAdapter, agent_version
from kimirelay.config import AppConfig, load_config
from kimirelay.context import ContextTracker
from kimirelay.github_gateway import GitHubGateway
from kimirelay.models import Task, TaskValidationError, parse_task
from kimirelay.notifier import Notifier, NullNotifier, TelegramNotifier
from kimirelay.observability import configure_logging
from kimirelay.orchestrator import TaskOrchestrator
from kimirelay.retry_policy import RetryPolicy
from kimirelay.scheduler import TaskOutcome, TaskScheduler
from kimirelay.shell import CommandError
from kimirelay.workspace import WorkspaceManager


TaskOutcomeSink = list[TaskOutcome]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kimirelay")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser(
        "init", help="Create workspace and session directories and check the agent"
    )
    _add_common_arguments(init_parser)

    run_parser = subparsers.add_parser(
        "run", help="Process line-delimited JSON tasks until the queue is idle"
    )
    _add_common_arguments(run_parser)
    run_parser.add_argument(
        "--tasks",
        type=str,
        required=True,
        help="Path to a file with one JSON task per line, or - for stdin",
    )

    workspace_parser = subparsers.add_parser("workspace", help="Inspect or sync a repo workspace")
    _add_common_arguments(workspace_parser)
    workspace_subparsers = workspace_parser.add_subparsers(
        dest="workspace_command", required=True
    )
    for name, help_text in (
        ("status", "Show branch and uncommitted changes of a workspace"),
        ("sync", "Clone if needed and pull the latest remote state"),
    ):
        sub = workspace_subparsers.add_parser(name, help=help_text)
        sub.add_argument("repository", help="Repository as OWNER/NAME")

    sessions_parser = subparsers.add_parser("sessions", help="Inspect or prune agent sessions")
    _add_common_arguments(sessions_parser)
    sessions_subparsers = sessions_parser.add_subparsers(dest="sessions_command", required=True)
    stats_parser = sessions_subparsers.add_parser("stats", help="Show token usage of a session")
    stats_parser.add_argument("session_id")
    cleanup_parser = sessions_subparsers.add_parser(
        "cleanup", help="Delete sessions not modified recently"
    )
    cleanup_parser.add_argument(
        "--days",
        type=int,
        default=None,
        help="Retention window in days (defaults to context.retention_days)",
    )

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("kimirelay.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose runtime logging to stderr",
    )


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)
    verbose = bool(getattr(args, "verbose", False))

    if args.command == "init":
        configure_logging(verbose)
        _cmd_init(config)
        return
    if args.command == "run":
        configure_logging(verbose, state_dir=config.runtime.base_dir)
        if not _cmd_run(config, tasks=str(args.tasks)):
            raise SystemExit(1)
        return
    if args.command == "workspace":
        configure_logging(verbose)
        _cmd_workspace(config, args)
        return
    if args.command == "sessions":
        configure_logging(verbose)
        _cmd_sessions(config, args)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


@dataclass(frozen=True)
class Runtime:
    workspace: WorkspaceManager
    context: ContextTracker
    notifier: Notifier
    orchestrator: TaskOrchestrator
    scheduler: TaskScheduler


def build_notifier(config: AppConfig) -> Notifier:
    telegram = config.telegram
    if telegram.enabled and telegram.bot_token and telegram.chat_id is not None:
        return TelegramNotifier(
            bot_token=telegram.bot_token,
            chat_id=telegram.chat_id,
            max_attempts=config.retry.max_attempts,
        )
    return NullNotifier(max_attempts=config.retry.max_attempts)


def build_context_tracker(config: AppConfig) -> ContextTracker:
    return ContextTracker(
        config.runtime.sessions_dir,
        max_tokens=config.context.max_tokens,
        summarization_threshold=config.context.summarization_threshold,
    )


def build_workspace(config: AppConfig) -> WorkspaceManager:
    return WorkspaceManager(config.runtime.workspaces_dir, token=config.github.token)


def build_runtime(
    config: AppConfig,
    *,
    on_outcome: TaskOutcomeSink | None = None,
) -> Runtime:
    workspace = build_workspace(config)
    context = build_context_tracker(config)
    notifier = build_notifier(config)
    orchestrator = TaskOrchestrator(
        config,
        workspace=workspace,
        agent=CliAgentAdapter(config.agent, context),
        github=GitHubGateway(token=config.github.token),
        notifier=notifier,
    )
    scheduler = TaskScheduler(
        orchestrator,
        retry_policy=RetryPolicy(config.retry),
        notifier=notifier,
        on_outcome=on_outcome.append if on_outcome is not None else None,
    )
    return Runtime(
        workspace=workspace,
        context=context,
        notifier=notifier,
        orchestrator=orchestrator,
        scheduler=scheduler,
    )


def _cmd_init(config: AppConfig) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    build_workspace(config).ensure_layout()
    config.runtime.sessions_dir.mkdir(parents=True, exist_ok=True)

    print(f"Initialized kimirelay base dir: {config.runtime.base_dir}")
    print(f"Workspaces: {config.runtime.workspaces_dir}")
    print(f"Sessions: {config.runtime.sessions_dir}")
    try:
        version = agent_version(config.agent)
    except (AgentSpawnError, CommandError) as exc:
        print(f"Agent: {config.agent.executable} unavailable ({exc})")
        return
    print(f"Agent: {config.agent.executable} {version}")


def _cmd_run(config: AppConfig, *, tasks: str, stdin: TextIO | None = None) -> bool:
    """Run every task from the source and print a JSON summary.

    Returns False when any line was rejected or any task failed terminally.
    """
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    outcomes: TaskOutcomeSink = []
    runtime = build_runtime(config, on_outcome=outcomes)
    runtime.workspace.ensure_layout()

    if tasks == "-":
        parsed, rejected = _read_tasks(stdin or sys.stdin)
    else:
        with Path(tasks).open("r", encoding="utf-8") as fh:
            parsed, rejected = _read_tasks(fh)

    try:
        for task in parsed:
            runtime.scheduler.enqueue(task)
        runtime.scheduler.wait_until_idle()
    finally:
        runtime.scheduler.shutdown()

    summary = _render_run_summary(outcomes, rejected)
    print(json.dumps(summary, indent=2))
    return not rejected and all(outcome.status == "succeeded" for outcome in outcomes)


def _read_tasks(source: TextIO) -> tuple[list[Task], list[dict[str, object]]]:
    parsed: list[Task] = []
    rejected: list[dict[str, object]] = []
    for line_number, raw_line in enumerate(source, start=1):
        line = raw_line.strip()
        if not line:
            continue
        try:
            parsed.append(parse_task(json.loads(line)))
        except (json.JSONDecodeError, TaskValidationError) as exc:
            rejected.append({"line": line_number, "error": str(exc)})
    return parsed, rejected


def _render_run_summary(
    outcomes: list[TaskOutcome], rejected: list[dict[str, object]]
) -> dict[str, object]:
    succeeded = sum(1 for outcome in outcomes if outcome.status == "succeeded")
    return {
        "succeeded": succeeded,
        "failed": len(outcomes) - succeeded,
        "rejected": rejected,
        "outcomes": [asdict(outcome) for outcome in outcomes],
    }


def _cmd_workspace(config: AppConfig, args: argparse.Namespace) -> None:
    workspace = build_workspace(config)
    repository = str(args.repository)
    if args.workspace_command == "status":
        status = workspace.status(repository)
        print(f"repository={repository} cloned={str(status.cloned).lower()}")
        print(f"path={workspace.repo_path(repository)}")
        print(f"remote={workspace.describe_remote(repository)}")
        if status.cloned:
            print(f"branch={status.branch}")
            print(f"has_changes={str(status.has_changes).lower()}")
            if status.changes:
                print(status.changes)
        return
    if args.workspace_command == "sync":
        workspace.ensure_layout()
        path = workspace.clone_if_needed(repository)
        workspace.sync(repository)
        print(f"Synced {repository} at {path}")
        return
    raise RuntimeError(f"Unknown workspace command: {args.workspace_command}")


def _cmd_sessions(config: AppConfig, args: argparse.Namespace) -> None:
    context = build_context_tracker(config)
    if args.sessions_command == "stats":
        print(json.dumps(asdict(context.stats(str(args.session_id))), indent=2))
        return
    if args.sessions_command == "cleanup":
        days = args.days if args.days is not None else config.context.retention_days
        if days < 1:
            raise RuntimeError("--days must be >= 1")
        removed = context.cleanup_old_sessions(days)
        print(f"Removed {removed} session(s) older than {days} day(s).")
        return
    raise RuntimeError(f"Unknown sessions command: {args.sessions_command}")
