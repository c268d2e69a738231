#!/usr/bin/env python3
"""
Task Bins command line.

Usage:
    taskbins add "Write project brief" --note "one pager"
    taskbins list
    taskbins move 3f2a done            # id prefix is enough
    taskbins move 3f2a todo --index 0  # reorder inside a column
    taskbins delete 3f2a
    taskbins watch                     # redraw on every snapshot
    taskbins serve --port 3000         # board server for --remote clients

Store selection: local SQLite (--db / TASKBINS_DB) unless --remote URL is
given, in which case the board server at URL is used.
"""
import argparse
import asyncio
import logging
import sys
from typing import Dict, List, Optional

from .config import Config, ConfigError
from .remote import HttpRecordStore
from .replica import Replica, partition_by_column
from .schema import COLUMNS, Column, Task
from .server import create_app
from .store import RecordStore, SQLiteRecordStore, StoreUnavailable
from .sync import SyncEngine, SyncError, ValidationError

logger = logging.getLogger("taskbins")

COLUMN_EMOJI: Dict[Column, str] = {
    Column.TODO: "📋",
    Column.DOING: "🚀",
    Column.DONE: "✅",
}


def build_store(cfg: Config) -> RecordStore:
    """Local SQLite store, or the board server when remote_url is set."""
    if cfg.remote_url:
        return HttpRecordStore(
            cfg.remote_url,
            cfg.user_id,
            api_key=cfg.api_key or None,
            poll_interval=cfg.poll_interval,
            timeout=cfg.request_timeout,
        )
    return SQLiteRecordStore(cfg.db_path, user_id=cfg.user_id)


def render_board(replica: Replica) -> str:
    lines = []
    for column, tasks in partition_by_column(replica).items():
        lines.append(f"{COLUMN_EMOJI[column]} {column.label} ({len(tasks)})")
        if not tasks:
            lines.append("   Drop a task here")
        for task in tasks:
            lines.append(f"   {task.id[:8]}  {task.title}")
            if task.note:
                lines.append(f"             {task.note}")
    return "\n".join(lines)


def resolve_task_id(replica: Replica, prefix: str) -> Optional[str]:
    """Exact id, or a unique id prefix. None if unknown or ambiguous."""
    if prefix in replica:
        return prefix
    matches: List[Task] = [t for t in replica if t.id.startswith(prefix)]
    if len(matches) == 1:
        return matches[0].id
    if len(matches) > 1:
        print(f"Ambiguous id prefix '{prefix}': {', '.join(t.id[:8] for t in matches)}", file=sys.stderr)
    return None


async def open_board(store: RecordStore, timeout: Optional[float] = None) -> SyncEngine:
    """
    Start an engine and wait for its first snapshot.

    Raises StoreUnavailable if no snapshot arrives within `timeout` seconds.
    """
    engine = SyncEngine(store)
    ready = asyncio.Event()
    engine.subscribe_replica(lambda _replica: ready.set())
    engine.on_error(lambda e: print(f"❌ {e}", file=sys.stderr))
    engine.start()
    try:
        await asyncio.wait_for(ready.wait(), timeout)
    except asyncio.TimeoutError:
        engine.close()
        raise StoreUnavailable(f"No response from the task store within {timeout}s")
    return engine


async def run_command(args, cfg: Config) -> int:
    store = build_store(cfg)
    try:
        # One failed fetch plus one poll retry before giving up.
        engine = await open_board(store, timeout=cfg.request_timeout + cfg.poll_interval)
    except StoreUnavailable as e:
        print(f"❌ {e}", file=sys.stderr)
        await store.close()
        return 1
    failures: List[SyncError] = []
    engine.on_error(failures.append)
    try:
        if args.command == "list":
            print(render_board(engine.replica))
            return 0

        if args.command == "watch":
            engine.subscribe_replica(lambda replica: print(render_board(replica) + "\n"))
            print(render_board(engine.replica) + "\n")
            await asyncio.Event().wait()
            return 0

        if args.command == "add":
            engine.create_task(args.title, args.note)

        elif args.command in ("move", "delete"):
            task_id = resolve_task_id(engine.replica, args.id)
            if task_id is None:
                print(f"No task matching '{args.id}'", file=sys.stderr)
                return 1
            if args.command == "delete":
                engine.delete_task(task_id)
            elif engine.move_task(task_id, args.column, args.index) is None:
                print("Nothing to move")

        await engine.wait_idle()
        return 1 if failures else 0
    except ValidationError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 2
    finally:
        engine.close()
        await store.close()


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="taskbins", description="Task bins with drag & drop ordering")
    ap.add_argument("--config", help="Path to config.yaml")
    ap.add_argument("--db", help="SQLite database path (overrides TASKBINS_DB)")
    ap.add_argument("--user", help="User id whose board to open")
    ap.add_argument("--remote", help="Board server URL; use the HTTP store instead of SQLite")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = ap.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add", help="Add a task to To Do")
    add.add_argument("title")
    add.add_argument("--note", default="")

    sub.add_parser("list", help="Print the board")
    sub.add_parser("watch", help="Print the board on every change")

    move = sub.add_parser("move", help="Move a task to a column / position")
    move.add_argument("id", help="Task id or unique prefix")
    move.add_argument("column", choices=[c.value for c in COLUMNS])
    move.add_argument("--index", type=int, default=None, help="Target position inside the column")

    delete = sub.add_parser("delete", help="Delete a task")
    delete.add_argument("id", help="Task id or unique prefix")

    serve = sub.add_parser("serve", help="Run the board server")
    serve.add_argument("--host", help="Bind address (use 0.0.0.0 to expose on network)")
    serve.add_argument("--port", type=int)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        cfg = Config.load(args.config)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2
    if args.db:
        cfg.db_path = args.db
        cfg.resolve_paths()
    if args.user:
        cfg.user_id = args.user
    if args.remote:
        cfg.remote_url = args.remote

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else getattr(logging, cfg.log_level.upper(), logging.INFO),
        format="%(asctime)s [taskbins] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    if args.command == "serve":
        host = args.host or cfg.host
        port = args.port or cfg.port
        logger.info(f"Serving board on http://{host}:{port} (db={cfg.db_path})")
        create_app(cfg.db_path, api_secret=cfg.api_key).run(
            host=host, port=port, debug=False, threaded=True
        )
        return 0

    try:
        return asyncio.run(run_command(args, cfg))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
