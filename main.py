"""TaskMirror operator command line."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from core.priorities import priority_label
from core.settings import LOG_DIR, SYNC
from services.comments import CommentResolver
from services.errors import AuthError, NotFound, TaskMirrorError
from services.merge import MergeAction, MergeDecision, MergeResolver
from services.sync_mode import SyncModeService
from services.sync_scheduler import SyncScheduler
from services.sync_service import SyncOrchestrator
from services.tasks import TaskService
from services.todoist_client import TodoistClient
from storage.config import SYNC_MODES
from storage.db import dispose_engine, init_db, session_factory
from storage.queries import TaskQuery
from storage.store import MirrorStore


LOG_PATH = LOG_DIR / "taskmirror.log"


def _setup_logging(log_path: Path, verbose: bool = False) -> None:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        filename=str(log_path),
        filemode="a",
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="taskmirror", description=__doc__ or "")
    parser.add_argument(
        "--log",
        type=Path,
        default=LOG_PATH,
        help="Path to a log file (default: %(default)s)",
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("sync", help="Run one incremental sync")
    sub.add_parser("resync", help="Clear the checkpoint and run a full sync")
    sub.add_parser("status", help="Show sync status")

    listing = sub.add_parser("list", help="List mirrored tasks")
    listing.add_argument("--project", dest="project_id")
    listing.add_argument("--category")
    listing.add_argument("--all", action="store_true", help="Include completed tasks")
    listing.add_argument("--limit", type=int)

    add = sub.add_parser("add", help="Create a task")
    add.add_argument("content")
    add.add_argument("--project", dest="project_id")
    add.add_argument("--priority", type=int)
    add.add_argument("--label", dest="labels", action="append", default=[])
    add.add_argument("--due", dest="due_string")

    for name, help_text in (
        ("done", "Complete a task"),
        ("reopen", "Reopen a completed task"),
        ("delete", "Delete a task"),
    ):
        sub.add_parser(name, help=help_text).add_argument("task_id")

    comment = sub.add_parser("comment", help="Add a comment to a remote task")
    comment.add_argument("task_id")
    comment.add_argument("text")

    comments = sub.add_parser("comments", help="Show comments for mirrored tasks")
    comments.add_argument("task_ids", nargs="*", metavar="TASK_ID")
    comments.add_argument("--sync", action="store_true", help="Sync first so comments come from the snapshot")

    watch = sub.add_parser("watch", help="Keep syncing on an interval until interrupted")
    watch.add_argument("--interval", type=float, default=SYNC.interval_sec)

    mode = sub.add_parser("mode", help="Show or change the sync mode")
    mode.add_argument("mode", nargs="?", choices=SYNC_MODES)

    orphans = sub.add_parser("orphans", help="List orphans and apply merge decisions")
    orphans.add_argument("--import", dest="imports", nargs="*", default=[], metavar="TASK_ID")
    orphans.add_argument("--push", dest="pushes", nargs="*", default=[], metavar="TASK_ID")
    orphans.add_argument("--ignore", dest="ignores", nargs="*", default=[], metavar="TASK_ID")
    return parser


def _decisions(args: argparse.Namespace) -> List[MergeDecision]:
    decisions = [MergeDecision(task_id, MergeAction.IMPORT_TO_LOCAL) for task_id in args.imports]
    decisions += [MergeDecision(task_id, MergeAction.PUSH_TO_REMOTE) for task_id in args.pushes]
    decisions += [MergeDecision(task_id, MergeAction.IGNORE) for task_id in args.ignores]
    return decisions


def _task_line(task) -> str:
    mark = "x" if task.is_completed else " "
    return f"[{mark}] {task.id}\t{priority_label(task.priority, short=True)}\t{task.content}"


async def _watch(orchestrator: SyncOrchestrator, interval: float) -> int:
    scheduler = SyncScheduler(orchestrator, interval_sec=interval)
    scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        await scheduler.stop()
    return 0


async def _show_comments(args, store: MirrorStore, orchestrator: SyncOrchestrator, client) -> int:
    if args.sync:
        result = await orchestrator.sync_now()
        if not result.success:
            _print(result.as_dict())
            return 1
    if args.task_ids:
        tasks = await store.get_tasks(args.task_ids)
        missing = sorted(set(args.task_ids) - {task.id for task in tasks})
        if missing:
            raise NotFound(f"Not in the mirror: {', '.join(missing)}")
    else:
        tasks = await store.list_tasks(TaskQuery(completed=False))
    resolver = CommentResolver(client, orchestrator.comment_cache)
    resolved = await resolver.fetch_comments_for_tasks(tasks)
    _print(
        {
            "tasks": [
                {"id": item.task.id, "comments": [comment.model_dump() for comment in item.comments]}
                for item in resolved
            ],
            "stats": resolver.stats.as_dict(),
        }
    )
    return 0 if resolver.stats.failed == 0 else 1


async def _edit_task(args, tasks: TaskService) -> int:
    if args.command == "add":
        task = await tasks.add(
            args.content,
            project_id=args.project_id,
            priority=args.priority,
            labels=args.labels,
            due_string=args.due_string,
        )
    elif args.command == "done":
        task = await tasks.complete(args.task_id)
    elif args.command == "reopen":
        task = await tasks.reopen(args.task_id)
    elif args.command == "delete":
        await tasks.delete(args.task_id)
        print(f"Deleted {args.task_id}")
        return 0
    else:
        comment = await tasks.add_comment(args.task_id, args.text)
        print(f"Comment {comment.id} added to {args.task_id}")
        return 0
    print(_task_line(task))
    return 0


async def run(args: argparse.Namespace) -> int:
    engine = await init_db()
    store = MirrorStore(session_factory(engine))
    client = TodoistClient()
    try:
        resolver = MergeResolver(client, client, store)
        modes = SyncModeService(resolver)
        orchestrator = SyncOrchestrator(client, store)

        if args.command == "list":
            query = TaskQuery(
                project_id=args.project_id,
                category=args.category,
                completed=None if args.all else False,
                limit=args.limit,
            )
            for task in await store.list_tasks(query):
                print(_task_line(task))
            return 0

        if args.command in ("add", "done", "reopen", "delete", "comment"):
            return await _edit_task(args, TaskService(store, client))

        if args.command == "comments":
            return await _show_comments(args, store, orchestrator, client)

        if args.command == "mode":
            if args.mode is None:
                _print(modes.get_sync_mode().as_dict())
                return 0
            report = await modes.set_sync_mode(args.mode)
            _print({"mode": args.mode, "orphans": report.as_dict() if report else None})
            return 0

        if args.command == "orphans":
            report = await resolver.detect_orphans()
            decisions = _decisions(args)
            outcomes = await resolver.apply_merge_decisions(decisions) if decisions else []
            _print({"report": report.as_dict(), "outcomes": [vars(o) for o in outcomes]})
            return 0 if all(o.success for o in outcomes) else 1

        if args.command == "watch":
            return await _watch(orchestrator, args.interval)
        if args.command == "status":
            _print(await orchestrator.status())
            return 0
        if args.command == "resync":
            result = await orchestrator.full_resync()
        else:
            result = await orchestrator.sync_now()
        _print(result.as_dict())
        return 0 if result.success else 1
    finally:
        await client.aclose()
        await dispose_engine()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    _setup_logging(args.log, args.verbose)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 0
    except AuthError as exc:
        print(f"Authentication failed: {exc}", file=sys.stderr)
        return 2
    except (TaskMirrorError, ValueError) as exc:
        logging.exception("Command %s failed", args.command)
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
