#!/usr/bin/env python3
"""CLI entry point for workspace pool operations.

Usage:
    python manage.py [--repo PATH] <command> [options]

Commands that return records print JSON. The listing commands print a
column-aligned table unless ``--json`` is given.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import asdict
from datetime import UTC, datetime, timedelta
from pathlib import Path

# Add parent dir to path so `from wspool import ...` works
sys.path.insert(0, str(Path(__file__).parent))

from wspool.errors import WspoolError
from wspool.ids import unique_prefix_lengths
from wspool.jobs import JobManager
from wspool.models import age, duration
from wspool.opencode import OpencodeDaemonTracker, OpencodeSessionTracker
from wspool.overview import build_overview
from wspool.paths import PoolOptions
from wspool.pool import AcquireOptions, Pool
from wspool.sessions import SessionTracker
from wspool.validation import parse_duration

logger = logging.getLogger("wspool")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="jj workspace pool")
    parser.add_argument("--state-dir", help="Directory holding state.json (default: ~/.local/state/wspool)")
    parser.add_argument("--workspaces-dir", help="Directory holding workspaces")
    parser.add_argument("--repo", help="Repository or workspace path (default: current directory)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    # --- Workspace commands ---
    p = sub.add_parser("acquire", help="Lease a workspace")
    p.add_argument("--purpose", required=True, help="What the workspace is for (single line)")
    p.add_argument("--rev", default="@", help="Revision to check out (default: @)")
    p.add_argument("--ttl", help="Lease duration, e.g. 30m, 1h30m (default: until released)")
    p.add_argument("--new-change-message", default="", help="Description when --rev is immutable")

    p = sub.add_parser("release", help="Return a workspace to the pool")
    p.add_argument("name", nargs="?", help="Workspace name (default: the current workspace)")
    p.add_argument("--path", help="Workspace path instead of name")

    p = sub.add_parser("renew", help="Restart the lease clock of a workspace")
    p.add_argument("name", nargs="?", help="Workspace name (default: the current workspace)")
    p.add_argument("--path", help="Workspace path instead of name")

    p = sub.add_parser("list", help="List workspaces of the repo")
    p.add_argument("--json", action="store_true")

    sub.add_parser("destroy-all", help="Delete every workspace of the repo")
    sub.add_parser("repo-root", help="Print the source repo root for a path")

    # --- Tracker queries ---
    p = sub.add_parser("sessions", help="List todo sessions")
    p.add_argument("--json", action="store_true")

    p = sub.add_parser("opencode-sessions", help="List opencode sessions")
    p.add_argument("--json", action="store_true")

    sub.add_parser("opencode-daemon", help="Show the opencode daemon")

    p = sub.add_parser("jobs", help="List jobs (active only by default)")
    p.add_argument("--status", help="Only jobs with this status")
    p.add_argument("--all", action="store_true", help="Include finished jobs")
    p.add_argument("--json", action="store_true")

    # --- Overview ---
    sub.add_parser("overview", help="Every repo with its workspaces and sessions")

    # --- Web server ---
    p = sub.add_parser("serve", help="Start the read-only web view")
    p.add_argument("--port", type=int, default=9000)
    p.add_argument("--host", default="127.0.0.1")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    options = PoolOptions(
        state_dir=Path(args.state_dir) if args.state_dir else None,
        workspaces_dir=Path(args.workspaces_dir) if args.workspaces_dir else None,
    )

    try:
        result = _dispatch(args, options)
    except WspoolError as e:
        logger.debug("command %s failed", args.command, exc_info=True)
        print(json.dumps({"error": str(e), "type": type(e).__name__}, indent=2))
        return 1

    if isinstance(result, str):
        print(result)
    else:
        print(json.dumps(result, indent=2, ensure_ascii=False))
    return 0


def _dispatch(args: argparse.Namespace, options: PoolOptions) -> dict | list | str:
    cmd = args.command
    pool = Pool(options)
    cwd = args.repo or os.getcwd()

    if cmd == "overview":
        return build_overview(pool.store)

    if cmd == "serve":
        _serve(options, args.host, args.port)
        return {}  # never reached; uvicorn runs until interrupted

    repo = pool.repo_root_from_path(cwd)

    if cmd == "repo-root":
        return {"repo_root": repo}

    if cmd == "acquire":
        ws = pool.acquire(
            repo,
            AcquireOptions(
                purpose=args.purpose,
                rev=args.rev,
                ttl=parse_duration(args.ttl) if args.ttl else None,
                new_change_message=args.new_change_message,
            ),
        )
        return asdict(ws)

    if cmd in ("release", "renew"):
        if args.path:
            target = args.path
        elif args.name:
            target = None
        else:
            target = pool.jj.workspace_root(cwd)
        if cmd == "release":
            ws = pool.release(target) if target else pool.release_by_name(repo, args.name)
        else:
            ws = pool.renew(target) if target else pool.renew_by_name(repo, args.name)
        return asdict(ws)

    if cmd == "list":
        items = pool.list(repo)
        if args.json:
            return [i.to_dict() for i in items]
        return _format_table(
            ["NAME", "STATUS", "PURPOSE", "REV", "TTL", "PATH"],
            [
                [i.name, i.status, i.purpose or "-", i.rev or "-", _format_duration(i.ttl_remaining), i.path]
                for i in items
            ],
        )

    if cmd == "destroy-all":
        destroyed = pool.destroy_all(repo)
        return {"destroyed": destroyed}

    if cmd == "sessions":
        sessions = SessionTracker(pool.store).list(repo)
        if args.json:
            return [asdict(s) for s in sessions]
        now = datetime.now(UTC)
        short = _short_ids([s.id for s in sessions])
        return _format_table(
            ["ID", "STATUS", "TODO", "WORKSPACE", "AGE", "DURATION", "TOPIC"],
            [
                [
                    short[s.id],
                    s.status,
                    s.todo_id,
                    s.workspace_name or "-",
                    _format_duration(age(s.started_at, now)),
                    _format_duration(duration(s, now)),
                    s.topic,
                ]
                for s in sessions
            ],
        )

    if cmd == "opencode-sessions":
        sessions = OpencodeSessionTracker(pool.store).list(repo)
        if args.json:
            return [asdict(s) for s in sessions]
        now = datetime.now(UTC)
        short = _short_ids([s.id for s in sessions])
        return _format_table(
            ["ID", "STATUS", "AGE", "DURATION", "PROMPT"],
            [
                [
                    short[s.id],
                    s.status,
                    _format_duration(age(s.started_at, now)),
                    _format_duration(duration(s, now)),
                    _first_line(s.prompt),
                ]
                for s in sessions
            ],
        )

    if cmd == "opencode-daemon":
        return asdict(OpencodeDaemonTracker(pool.store).find(repo))

    if cmd == "jobs":
        manager = JobManager(pool.store, repo)
        jobs = manager.list(status=args.status, include_all=args.all)
        if args.json:
            return [asdict(j) for j in jobs]
        now = datetime.now(UTC)
        # find() matches prefixes against finished jobs too
        short = _short_ids([j.id for j in manager.list(include_all=True)])
        return _format_table(
            ["ID", "STATUS", "STAGE", "TODO", "AGE", "DURATION"],
            [
                [
                    short.get(j.id, j.id),
                    j.status,
                    j.stage,
                    j.todo_id,
                    _format_duration(age(j.started_at, now)),
                    _format_duration(duration(j, now)),
                ]
                for j in jobs
            ],
        )

    return {"error": f"Unknown command: {cmd}"}


# ---------------------------------------------------------------------------
# Table output
# ---------------------------------------------------------------------------


def _format_table(headers: list[str], rows: list[list]) -> str:
    """Left-aligned columns separated by two spaces."""
    cells = [headers] + [[str(c) for c in row] for row in rows]
    widths = [max(len(row[i]) for row in cells) for i in range(len(headers))]
    lines = ["  ".join(c.ljust(w) for c, w in zip(row, widths)).rstrip() for row in cells]
    return "\n".join(lines)


MIN_ID_DISPLAY = 4


def _short_ids(ids: list[str]) -> dict[str, str]:
    """Map each ID to its shortest unique prefix, never shorter than MIN_ID_DISPLAY."""
    lengths = unique_prefix_lengths(ids)
    return {i: i[: max(lengths.get(i.lower(), len(i)), MIN_ID_DISPLAY)] for i in ids}


def _format_duration(value: timedelta | None) -> str:
    if value is None:
        return "-"
    total = max(int(value.total_seconds()), 0)
    days, rest = divmod(total, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, seconds = divmod(rest, 60)
    if days:
        return f"{days}d{hours:02d}h"
    if hours:
        return f"{hours}h{minutes:02d}m"
    if minutes:
        return f"{minutes}m{seconds:02d}s"
    return f"{seconds}s"


def _first_line(text: str, limit: int = 60) -> str:
    line = text.strip().splitlines()[0] if text.strip() else ""
    return line if len(line) <= limit else line[: limit - 3] + "..."


def _serve(options: PoolOptions, host: str, port: int) -> None:
    """Start the web view via uvicorn."""
    import uvicorn

    from web.app import create_app

    print(f"Web view: http://{host}:{port}")
    uvicorn.run(create_app(options), host=host, port=port, log_level="warning")


if __name__ == "__main__":
    sys.exit(main())
