"""
TaskFlow command line.

    taskflow list [--status todo] [--search text] [--sort dueDate-asc]
    taskflow add "Write report" --priority High --due 2024-06-01
    taskflow move <id> inProgress
    taskflow edit <id> --title "..." --category work
    taskflow delete <id>
    taskflow sync
    taskflow stats
    taskflow export backup.json | import backup.json | restore backup.json
    taskflow serve --port 3001

Mutations are written to the local store first, then pushed to the server
when it is reachable. Offline changes go up with the next `taskflow sync`.
"""
import argparse
import json
import logging
import sys
from typing import List, Optional

from .board import SORT_KEYS, TaskBoard
from .client import TaskflowClient
from .config import Config, ConfigError
from .schema import Task, TaskStatus, ValidationError
from .store import TaskStore
from .sync import SyncManager

logger = logging.getLogger(__name__)

STATUS_LABELS = {
    TaskStatus.TODO: "To Do",
    TaskStatus.IN_PROGRESS: "In Progress",
    TaskStatus.DONE: "Done",
}


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s [taskflow] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )


def format_task(task: Task) -> str:
    due = f"  due {task.due_date.date().isoformat()}" if task.due_date else ""
    cat = f"  [{task.category}]" if task.category else ""
    return f"{task.id}  {task.priority.value:<6}  {task.title}{cat}{due}"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="taskflow", description="TaskFlow task board")
    parser.add_argument("--config", help="Path to taskflow.yaml")
    parser.add_argument("--db", help="Local task database (overrides TASKFLOW_DB)")
    parser.add_argument("--api-url", help="Server API base URL")
    parser.add_argument("--offline", action="store_true", help="Do not contact the server")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("list", help="Show the board")
    p.add_argument("--status")
    p.add_argument("--category")
    p.add_argument("--priority")
    p.add_argument("--search")
    p.add_argument("--sort", choices=SORT_KEYS)

    p = sub.add_parser("add", help="Create a task")
    p.add_argument("title")
    p.add_argument("--description")
    p.add_argument("--category")
    p.add_argument("--priority", default="Medium")
    p.add_argument("--status", default="todo")
    p.add_argument("--due", dest="due_date")

    p = sub.add_parser("edit", help="Edit a task")
    p.add_argument("task_id")
    p.add_argument("--title")
    p.add_argument("--description")
    p.add_argument("--category")
    p.add_argument("--priority")
    p.add_argument("--status")
    p.add_argument("--due", dest="due_date")

    p = sub.add_parser("move", help="Move a task to another column")
    p.add_argument("task_id")
    p.add_argument("status", help="todo | inProgress | done")

    p = sub.add_parser("delete", help="Delete a task")
    p.add_argument("task_id")

    sub.add_parser("sync", help="Reconcile with the server")
    sub.add_parser("stats", help="Board statistics")

    p = sub.add_parser("export", help="Write a JSON backup")
    p.add_argument("path")

    p = sub.add_parser("import", help="Add the tasks of a JSON export that are not on the board")
    p.add_argument("path")

    p = sub.add_parser("restore", help="Replace the board with a JSON backup")
    p.add_argument("path")

    p = sub.add_parser("serve", help="Run the TaskFlow server")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=3001)
    p.add_argument("--server-db", help="Server database path")

    return parser


def _print_board(tasks: List[Task], grouped: bool) -> None:
    if not grouped:
        for task in tasks:
            print(format_task(task))
        return
    for status, label in STATUS_LABELS.items():
        column = [t for t in tasks if t.status == status]
        print(f"── {label} ({len(column)}) " + "─" * 30)
        for task in column:
            print("  " + format_task(task))


def _push(manager: Optional[SyncManager]) -> None:
    if manager is None:
        return
    report = manager.flush()
    if report.failed:
        print(f"Saved locally; {len(report.failed)} change(s) will sync later.", file=sys.stderr)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        cfg = Config.load(args.config)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2
    if args.db:
        cfg.db_path = args.db
    if args.api_url:
        cfg.api_url = args.api_url
    setup_logging(cfg.log_level)

    if args.command == "serve":
        from taskflow_server import run
        run(host=args.host, port=args.port, db_path=args.server_db)
        return 0

    store = TaskStore(cfg.db_path)
    board = TaskBoard(store)
    board.load()

    manager = None
    if not args.offline:
        client = TaskflowClient(
            base_url=cfg.api_url,
            token=cfg.api_token,
            api_key=cfg.api_key,
            timeout=cfg.request_timeout,
            max_retries=cfg.max_retries,
            retry_base_delay=cfg.retry_base_delay,
            retry_max_delay=cfg.retry_max_delay,
        )
        manager = SyncManager(board, client, workers=cfg.push_workers)

    try:
        if args.command == "list":
            tasks = board.filter(args.status, args.category, args.priority, args.search)
            if args.sort:
                tasks = board.sort(tasks, args.sort)
            _print_board(tasks, grouped=not args.status)

        elif args.command == "add":
            task = board.create_task(
                args.title,
                description=args.description,
                category=args.category,
                priority=args.priority,
                status=args.status,
                due_date=args.due_date,
            )
            print(f"Created {task.id}")
            _push(manager)

        elif args.command == "edit":
            changes = {
                k: getattr(args, k)
                for k in ("title", "description", "category", "priority", "status", "due_date")
                if getattr(args, k) is not None
            }
            if not changes:
                print("Nothing to change.", file=sys.stderr)
                return 1
            task = board.update_task(args.task_id, **changes)
            print(f"Updated {task.id}")
            _push(manager)

        elif args.command == "move":
            task = board.move_task(args.task_id, args.status)
            print(f"Moved {task.id} to {STATUS_LABELS[task.status]}")
            _push(manager)

        elif args.command == "delete":
            task = board.delete_task(args.task_id)
            print(f"Deleted {task.id}")
            _push(manager)

        elif args.command == "sync":
            if manager is None:
                print("Cannot sync with --offline.", file=sys.stderr)
                return 1
            report = manager.sync()
            print(report.summary())
            for task_id, error in report.failed.items():
                print(f"  sync failed for {task_id}: {error}", file=sys.stderr)
            return 0 if report.ok else 1

        elif args.command == "stats":
            print(json.dumps(board.stats(), indent=2))

        elif args.command == "export":
            with open(args.path, "w", encoding="utf-8") as f:
                json.dump(store.create_backup(), f, indent=2, ensure_ascii=False)
            print(f"Exported {len(board.tasks)} tasks to {args.path}")

        elif args.command == "import":
            with open(args.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            result = board.import_tasks(data)
            print(f"Imported {result['imported']} tasks ({result['skipped']} already present)")
            _push(manager)

        elif args.command == "restore":
            with open(args.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            result = store.restore_from_backup(data)
            board.load()
            print(f"Restored {result['restored']} tasks ({result['skipped']} skipped)")

    except KeyError as e:
        print(f"Error: {e.args[0]}", file=sys.stderr)
        return 1
    except ValidationError as e:
        print(f"Invalid task: {e}", file=sys.stderr)
        return 1
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
