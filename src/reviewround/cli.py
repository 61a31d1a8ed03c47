from __future__ import annotations

import argparse
import json
from pathlib import Path

from reviewround.config import AppConfig, load_config
from reviewround.github_gateway import GitHubGateway
from reviewround.models import FeedbackItem, ReviewRound
from reviewround.observability import configure_logging
from reviewround.orchestrator import ReviewRoundOrchestrator
from reviewround.state import StateStore, format_optional_timestamp, format_timestamp


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("reviewround.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose runtime logging to stderr",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="reviewround")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Initialize the base dir and state DB")
    _add_common_arguments(init_parser)

    run_parser = subparsers.add_parser(
        "run", help="Poll registered workspaces and reconcile reviewer feedback"
    )
    _add_common_arguments(run_parser)
    run_parser.add_argument("--once", action="store_true", help="Run a single poll cycle")

    sweep_parser = subparsers.add_parser("sweep", help="Process review rounds whose fetch is due")
    _add_common_arguments(sweep_parser)

    workspace_parser = subparsers.add_parser("workspace", help="Manage polled workspaces")
    _add_common_arguments(workspace_parser)
    workspace_subparsers = workspace_parser.add_subparsers(
        dest="workspace_command", required=True
    )

    workspace_add_parser = workspace_subparsers.add_parser(
        "add", help="Register a local checkout to poll"
    )
    workspace_add_parser.add_argument("--repo", type=str, required=True, help="Configured repo id")
    workspace_add_parser.add_argument("--id", type=str, required=True, help="Workspace id")
    workspace_add_parser.add_argument("--path", type=Path, required=True, help="Checkout path")

    workspace_list_parser = workspace_subparsers.add_parser(
        "list", help="List registered workspaces"
    )
    workspace_list_parser.add_argument(
        "--json", action="store_true", help="Print workspaces as JSON"
    )

    workspace_remove_parser = workspace_subparsers.add_parser(
        "remove", help="Unregister a workspace"
    )
    workspace_remove_parser.add_argument("--id", type=str, required=True, help="Workspace id")

    rounds_parser = subparsers.add_parser("rounds", help="Inspect review rounds")
    _add_common_arguments(rounds_parser)
    rounds_subparsers = rounds_parser.add_subparsers(dest="rounds_command", required=True)

    rounds_list_parser = rounds_subparsers.add_parser("list", help="List review rounds")
    rounds_list_parser.add_argument("--repo", type=str, help="Optional repo id filter")
    rounds_list_parser.add_argument("--json", action="store_true", help="Print rounds as JSON")

    rounds_items_parser = rounds_subparsers.add_parser(
        "items", help="List actionable items stored for a round"
    )
    rounds_items_parser.add_argument("--round", type=int, required=True, help="Round id")
    rounds_items_parser.add_argument("--json", action="store_true", help="Print items as JSON")

    rounds_cleanup_parser = rounds_subparsers.add_parser(
        "cleanup", help="Apply the repo retention policy to a closed pull request"
    )
    rounds_cleanup_parser.add_argument("--repo", type=str, required=True, help="Repo id")
    rounds_cleanup_parser.add_argument("--pr", type=int, required=True, help="Pull request number")

    return parser


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)
    # Only the long-running poll loop keeps a daily log file under the base dir.
    state_dir = config.runtime.base_dir if args.command == "run" else None
    configure_logging(bool(getattr(args, "verbose", False)), state_dir=state_dir)

    if args.command == "init":
        _cmd_init(config)
        return
    if args.command == "run":
        _cmd_run(config, once=bool(args.once))
        return
    if args.command == "sweep":
        _cmd_sweep(config)
        return
    if args.command == "workspace":
        _cmd_workspace(config, args)
        return
    if args.command == "rounds":
        _cmd_rounds(config, args)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_init(config: AppConfig) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    StateStore(config.runtime.state_db_path)
    print(f"Initialized reviewround base dir: {config.runtime.base_dir}")
    print(f"State DB: {config.runtime.state_db_path}")
    for repo in config.repos:
        print(f"Repo: {repo.repo_id} ({repo.full_name})")


def _cmd_run(config: AppConfig, *, once: bool) -> None:
    _build_orchestrator(config).run(once=once)


def _cmd_sweep(config: AppConfig) -> None:
    processed = _build_orchestrator(config).process_due_rounds()
    print(f"Processed {len(processed)} due round(s).")


def _cmd_workspace(config: AppConfig, args: argparse.Namespace) -> None:
    state = StateStore(config.runtime.state_db_path)
    if args.workspace_command == "add":
        repo = config.repo_by_id(str(args.repo))
        workspace = state.register_workspace(
            workspace_id=str(args.id),
            repo_id=repo.repo_id,
            path=Path(args.path).expanduser().resolve(),
        )
        print(f"Registered workspace {workspace.workspace_id} -> {workspace.path}")
        return
    if args.workspace_command == "list":
        workspaces = state.list_workspaces()
        if bool(args.json):
            payload = [
                {
                    "workspace_id": workspace.workspace_id,
                    "repo_id": workspace.repo_id,
                    "path": str(workspace.path),
                }
                for workspace in workspaces
            ]
            print(json.dumps(payload, indent=2))
            return
        if not workspaces:
            print("No registered workspaces.")
            return
        for workspace in workspaces:
            print(
                f"workspace_id={workspace.workspace_id} repo_id={workspace.repo_id} "
                f"path={workspace.path}"
            )
        return
    if args.workspace_command == "remove":
        if state.remove_workspace(str(args.id)):
            print(f"Removed workspace {args.id}")
        else:
            print(f"No workspace registered with id {args.id}")
        return
    raise RuntimeError(f"Unknown workspace command: {args.workspace_command}")


def _cmd_rounds(config: AppConfig, args: argparse.Namespace) -> None:
    state = StateStore(config.runtime.state_db_path)
    if args.rounds_command == "list":
        repo_id = config.repo_by_id(str(args.repo)).repo_id if args.repo is not None else None
        _cmd_rounds_list(state, repo_id=repo_id, as_json=bool(args.json))
        return
    if args.rounds_command == "items":
        _cmd_rounds_items(state, round_id=int(args.round), as_json=bool(args.json))
        return
    if args.rounds_command == "cleanup":
        orchestrator = ReviewRoundOrchestrator(
            config, state=state, github=GitHubGateway(config.runtime.fetch_timeout_seconds)
        )
        repo_id = config.repo_by_id(str(args.repo)).repo_id
        if orchestrator.cleanup_rounds_if_needed(repo_id, int(args.pr)):
            print(f"Deleted review rounds for {repo_id} PR #{args.pr}.")
        else:
            print(f"Retention policy for {repo_id} keeps review rounds.")
        return
    raise RuntimeError(f"Unknown rounds command: {args.rounds_command}")


def _cmd_rounds_list(state: StateStore, *, repo_id: str | None, as_json: bool) -> None:
    rounds = state.list_rounds(repo_id=repo_id)
    if as_json:
        print(json.dumps([_round_to_json(round_) for round_ in rounds], indent=2))
        return

    if not rounds:
        print("No review rounds.")
        return

    for round_ in rounds:
        print(
            f"round_id={round_.round_id} repo_id={round_.repo_id} pr_number={round_.pr_number} "
            f"head_sha={round_.head_sha} status={round_.status} "
            f"attempts={round_.attempt_count} actionable={round_.actionable_count}"
        )


def _cmd_rounds_items(state: StateStore, *, round_id: int, as_json: bool) -> None:
    if state.get_round(round_id) is None:
        raise RuntimeError(f"Unknown round id: {round_id}")
    items = state.list_items_for_round(round_id)
    if as_json:
        print(json.dumps([_item_to_json(item) for item in items], indent=2))
        return

    if not items:
        print("No actionable items.")
        return

    for item in items:
        location = item.file_path or "<pr>"
        if item.line is not None:
            location = f"{location}:{item.line}"
        print(
            f"comment_id={item.comment_id} category={item.category} "
            f"severity={item.severity or '<none>'} location={location}"
        )
        print(f"url={item.html_url}")
        print()


def _round_to_json(round_: ReviewRound) -> dict[str, object]:
    return {
        "round_id": round_.round_id,
        "repo_id": round_.repo_id,
        "pr_number": round_.pr_number,
        "head_sha": round_.head_sha,
        "check_started_at": round_.check_started_at,
        "workspace_id": round_.workspace_id,
        "check_state": round_.check_state,
        "status": round_.status,
        "attempt_count": round_.attempt_count,
        "actionable_count": round_.actionable_count,
        "next_fetch_at": format_optional_timestamp(round_.next_fetch_at),
        "completed_at": format_optional_timestamp(round_.completed_at),
    }


def _item_to_json(item: FeedbackItem) -> dict[str, object]:
    return {
        "round_id": item.round_id,
        "comment_id": item.comment_id,
        "source": item.source,
        "category": item.category,
        "severity": item.severity,
        "file_path": item.file_path,
        "line": item.line,
        "original_line": item.original_line,
        "html_url": item.html_url,
        "body": item.body,
        "instruction": item.instruction,
        "created_at": format_timestamp(item.created_at),
    }


def _build_orchestrator(config: AppConfig) -> ReviewRoundOrchestrator:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    state = StateStore(config.runtime.state_db_path)
    github = GitHubGateway(config.runtime.fetch_timeout_seconds)
    return ReviewRoundOrchestrator(config, state=state, github=github)
