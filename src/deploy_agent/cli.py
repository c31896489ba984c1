"""Command-line interface for deploy-agent."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Optional

from .config import load_config
from .errors import (
    ConfigurationError,
    DeployAgentError,
    TriggerError,
)
from .orchestrator import DeploymentOrchestrator
from .paths import LOGS_DIR
from .triggers import TriggerEvent
from .utils.logging import get_logger

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deploy-agent",
        description="Stage, activate and roll back releases on remote hosts over SSH.",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a JSON config file (default: config/deploy_agent.json).",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    deploy_parser = subparsers.add_parser(
        "deploy", help="Deploy a revision to the selected targets"
    )
    source = deploy_parser.add_mutually_exclusive_group()
    source.add_argument("--revision", "-r", help="Commit SHA or tag to deploy")
    source.add_argument("--ref", help="Branch or tag, resolved against repo_url")
    source.add_argument(
        "--event", type=str, default=None,
        help="Path to a push webhook payload (JSON)",
    )
    deploy_parser.add_argument(
        "--targets", "-t", default=None,
        help="Comma-separated target names or groups (default: branch mapping or default_targets)",
    )
    deploy_parser.add_argument("--repo", default=None, help="Override repo_url")

    rollback_parser = subparsers.add_parser(
        "rollback", help="Re-activate the previously active release"
    )
    rollback_parser.add_argument("--targets", "-t", default=None)

    releases_parser = subparsers.add_parser(
        "releases", help="List releases known on each target"
    )
    releases_parser.add_argument("--targets", "-t", default=None)

    unlock_parser = subparsers.add_parser(
        "unlock", help="Remove a stale activation lock left by a crashed run"
    )
    unlock_parser.add_argument("--targets", "-t", default=None)

    # logs 子命令 - 查看部署日志
    logs_parser = subparsers.add_parser(
        "logs", help="View deployment run logs"
    )
    logs_parser.add_argument(
        "--list", "-l", action="store_true", dest="list_logs",
        help="List all available logs"
    )
    logs_parser.add_argument(
        "--latest", action="store_true",
        help="Show the latest run log"
    )
    logs_parser.add_argument(
        "--file", "-f", type=str,
        help="Show a specific log file"
    )
    logs_parser.add_argument(
        "--summary", "-s", action="store_true",
        help="Show summary only (not command output)"
    )
    logs_parser.add_argument(
        "--log-dir", type=str, default=None,
        help="Directory holding run logs (default: .deploy-agent/logs)"
    )

    return parser


def _trigger_from_args(args: argparse.Namespace) -> TriggerEvent:
    if args.event:
        event = TriggerEvent.from_event_file(args.event, selector=args.targets)
    elif args.revision or args.ref:
        event = TriggerEvent(revision=args.revision, ref=args.ref, selector=args.targets)
    else:
        event = TriggerEvent.from_environment(selector=args.targets)
    if args.repo:
        event.repo_url = args.repo
    return event


def handle_deploy_command(args: argparse.Namespace, orchestrator: DeploymentOrchestrator) -> int:
    report = orchestrator.deploy(_trigger_from_args(args))
    return report.exit_code


def handle_rollback_command(args: argparse.Namespace, orchestrator: DeploymentOrchestrator) -> int:
    report = orchestrator.rollback(args.targets)
    return report.exit_code


def handle_releases_command(args: argparse.Namespace, orchestrator: DeploymentOrchestrator) -> int:
    listing = orchestrator.list_releases(args.targets)
    for target_name, (releases, current) in listing.items():
        print(f"\n🖥️  {target_name}  (current -> {current or 'none'})")
        if not releases:
            print("    no releases")
            continue
        print(f"    {'Release':<24} {'Status':<10} {'Created':<20} {'Revision'}")
        for release in releases:
            marker = "*" if release.path == current else " "
            created = release.created_at[:19].replace("T", " ")
            print(
                f"  {marker} {release.release_id:<24} {release.status.value:<10} "
                f"{created:<20} {release.revision}"
            )
    print()
    return EXIT_OK


def handle_unlock_command(args: argparse.Namespace, orchestrator: DeploymentOrchestrator) -> int:
    for name in orchestrator.unlock(args.targets):
        print(f"🔓 Unlocked {name}")
    return EXIT_OK


def handle_logs_command(args: argparse.Namespace) -> int:
    """Handle the logs subcommand."""
    log_dir = Path(args.log_dir) if args.log_dir else LOGS_DIR

    if not log_dir.exists():
        print("📁 No run logs found. Run a deployment first.")
        return EXIT_OK

    log_files = sorted(log_dir.glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True)

    if not log_files:
        print("📁 No run logs found.")
        return EXIT_OK

    if args.list_logs:
        print(f"📁 Run logs in: {log_dir}\n")
        print(f"{'#':<4} {'State':<12} {'Target':<20} {'Revision':<14} {'Time':<20} {'File'}")
        print("-" * 100)
        for i, log_file in enumerate(log_files, 1):
            try:
                with open(log_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, ValueError):
                print(f"{i:<4} ❓ {'error':<10} {'?':<20} {'?':<14} {'?':<20} {log_file.name}")
                continue
            state = data.get("state", "unknown")
            target = data.get("target", "?")
            revision = (data.get("revision") or "")[:12]
            start_time = (data.get("started_at") or "")[:19].replace("T", " ")
            print(
                f"{i:<4} {_STATE_EMOJI.get(state, '❓')} {state:<10} {target:<20} "
                f"{revision:<14} {start_time:<20} {log_file.name}"
            )
        return EXIT_OK

    if args.file:
        target_file = Path(args.file)
        if not target_file.exists():
            target_file = log_dir / args.file
        if not target_file.exists():
            print(f"❌ Log file not found: {args.file}")
            return EXIT_FAILED
    else:
        target_file = log_files[0]

    show_log_file(target_file, summary_only=args.summary)
    return EXIT_OK


_STATE_EMOJI = {
    "active": "✅",
    "failed": "❌",
    "triggered": "🔄",
    "staged": "🔄",
    "activating": "🔄",
}

_STEP_EMOJI = {"applied": "✓", "skipped": "⏭️", "failed": "✗"}


def show_log_file(log_file: Path, summary_only: bool = False) -> None:
    """Display a run log file."""
    with open(log_file, "r", encoding="utf-8") as f:
        data = json.load(f)

    state = data.get("state", "unknown")

    print(f"\n{'='*60}")
    print(f"📄 Run Log: {log_file.name}")
    print(f"{'='*60}")
    print(f"🔗 Repository: {data.get('repo_url') or 'N/A'}")
    print(f"🖥️  Target:     {data.get('target', 'N/A')}")
    print(f"📦 Release:    {data.get('release_id') or 'N/A'} ({data.get('revision', 'N/A')})")
    print(f"⏰ Started:    {data.get('started_at', 'N/A')}")
    print(f"⏱️  Ended:      {data.get('finished_at') or 'N/A'}")
    print(f"{_STATE_EMOJI.get(state, '❓')} State:      {state}")
    if data.get("error"):
        print(f"⚠️  Error:      {data['error']}")
    print(f"📊 Steps:      {len(data.get('steps', []))}")
    print(f"{'='*60}\n")

    for index, step in enumerate(data.get("steps", []), 1):
        status = step.get("status", "?")
        print(f"[{index}] {_STEP_EMOJI.get(status, '•')} {step.get('name', '?')} ({step.get('phase', '?')}, {status})")
        if step.get("reason"):
            print(f"    📝 {step['reason']}")
        if step.get("error"):
            print(f"    ❌ {step['error']}")

        if summary_only:
            continue
        for command in step.get("commands", []):
            print(f"    $ {command.get('command', '')}")
            print(f"    Exit: {command.get('exit_code', '')}")
            stdout = (command.get("stdout") or "").strip()
            if stdout:
                lines = stdout.split("\n")
                for line in lines[:10]:
                    print(f"    │ {line[:100]}")
                if len(lines) > 10:
                    print(f"    │ ... ({len(lines)} lines total)")
            stderr = (command.get("stderr") or "").strip()
            if stderr and not command.get("success"):
                print("    ⚠️ stderr:")
                for line in stderr.split("\n")[:5]:
                    print(f"    │ {line[:100]}")
        print()

    print(f"{'='*60}")
    print(f"📄 Full log: {log_file}")
    print(f"{'='*60}\n")


_HANDLERS = {
    "deploy": handle_deploy_command,
    "rollback": handle_rollback_command,
    "releases": handle_releases_command,
    "unlock": handle_unlock_command,
}


def dispatch_command(args: argparse.Namespace) -> int:
    if args.command == "logs":
        return handle_logs_command(args)

    handler = _HANDLERS.get(args.command)
    if handler is None:
        raise ValueError(f"Unsupported command: {args.command}")

    config = load_config(args.config)
    orchestrator = DeploymentOrchestrator(config)
    return handler(args, orchestrator)


def run_cli(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    get_logger(verbose=args.verbose)
    try:
        return dispatch_command(args)
    except (ConfigurationError, TriggerError) as exc:
        logger.error("❌ %s", exc)
        return EXIT_USAGE
    except DeployAgentError as exc:
        logger.error("❌ %s", exc)
        return EXIT_FAILED
