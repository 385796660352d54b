#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
signstore admin CLI (SQLite)

Commands:
  init                Create the database file, tables and operation log
  status              Print connection info and row counts
  recent              List the most recent transfers
  show ID             Print one transfer with its documents and recipients
  delete ID           Delete a transfer and everything attached to it
  logs                Print recent operation log entries

The database path comes from --db, then SIGNSTORE_DB_PATH, then config.yaml.
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Optional, Sequence

from .config import get_config, get_db_path
from .db import Database
from .logs import ensure_log_schema, search_logs
from .services.workflow_svc import WorkflowManager

logger = logging.getLogger("signstore.cli")


def _print_json(obj) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, default=str))


def cmd_init(db: Database, wf: WorkflowManager, args) -> int:
    ensure_log_schema(db)
    print(f"Initialized {db.path}")
    return 0


def cmd_status(db: Database, wf: WorkflowManager, args) -> int:
    _print_json(db.status())
    return 0


def cmd_recent(db: Database, wf: WorkflowManager, args) -> int:
    for t in wf.transfers.find_recent(args.limit):
        print(f"{t.id}\t{t.type.value}\t{t.status.value}\t{t.created_at.isoformat()}")
    return 0


def cmd_show(db: Database, wf: WorkflowManager, args) -> int:
    bundle = wf.get_transfer_bundle(args.id)
    if bundle is None:
        print(f"transfer not found: {args.id}", file=sys.stderr)
        return 1
    _print_json(bundle.model_dump(mode="json", by_alias=True))
    return 0


def cmd_delete(db: Database, wf: WorkflowManager, args) -> int:
    if not wf.delete_transfer_and_related_data(args.id):
        print(f"transfer not found: {args.id}", file=sys.stderr)
        return 1
    print(f"Deleted {args.id}")
    return 0


def cmd_logs(db: Database, wf: WorkflowManager, args) -> int:
    ensure_log_schema(db)
    total, rows = search_logs(db, q=args.q, action=args.action, page=1, size=args.limit)
    print(f"{total} entries")
    for r in rows:
        print(f"{r['ts']}\t{r['action']}\t{r['entity_id'] or ''}\t{r['result']}\t{r['err_msg'] or ''}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="signstore", description="Transfer store admin (SQLite)")
    parser.add_argument("--config", default=None, help="path to config.yaml")
    parser.add_argument("--db", default=None, help="database path (overrides config)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_init = sub.add_parser("init", help="create tables")
    p_init.set_defaults(func=cmd_init)

    p_status = sub.add_parser("status", help="connection info and row counts")
    p_status.set_defaults(func=cmd_status)

    p_recent = sub.add_parser("recent", help="list recent transfers")
    p_recent.add_argument("--limit", type=int, default=10)
    p_recent.set_defaults(func=cmd_recent)

    p_show = sub.add_parser("show", help="show one transfer")
    p_show.add_argument("id")
    p_show.set_defaults(func=cmd_show)

    p_delete = sub.add_parser("delete", help="delete a transfer and its children")
    p_delete.add_argument("id")
    p_delete.set_defaults(func=cmd_delete)

    p_logs = sub.add_parser("logs", help="operation log")
    p_logs.add_argument("--action", default=None)
    p_logs.add_argument("--q", default=None)
    p_logs.add_argument("--limit", type=int, default=20)
    p_logs.set_defaults(func=cmd_logs)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    cfg = get_config(args.config)
    logging.basicConfig(
        level=getattr(logging, cfg["log_level"], logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    path = args.db or get_db_path(args.config)
    if not path:
        print("no database path: pass --db, set SIGNSTORE_DB_PATH or db_path in config.yaml", file=sys.stderr)
        return 1

    db = Database.from_config(cfg, path=path)
    try:
        wf = WorkflowManager(db, audit=cfg["audit_log"])
        return args.func(db, wf, args)
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
