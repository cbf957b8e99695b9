#!/usr/bin/env python3
"""Command line entry point for manifest sync operations."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, List, Optional

from depsera.db import session_scope

PACKAGE_ROOT = Path(__file__).resolve().parent


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _flag_payload(item) -> dict:
    flag = item.flag
    return {
        "id": flag.id,
        "service_id": flag.service_id,
        "service_name": item.service_name,
        "manifest_key": item.manifest_key,
        "drift_type": flag.drift_type,
        "field_name": flag.field_name,
        "manifest_value": flag.manifest_value,
        "current_value": flag.current_value,
        "status": flag.status,
        "first_detected_at": flag.first_detected_at,
        "last_detected_at": flag.last_detected_at,
        "resolved_at": flag.resolved_at,
        "resolved_by": flag.resolved_by,
        "resolved_by_name": item.resolved_by_name,
    }


def _cmd_sync(ns: argparse.Namespace) -> int:
    from depsera.manifest.sync import ManifestSyncOrchestrator

    with session_scope() as session:
        result = ManifestSyncOrchestrator(session).sync_team(
            ns.team, trigger_type=ns.trigger, triggered_by=ns.user
        )
    _emit(result.model_dump(mode="json"))
    return 1 if result.status == "failed" else 0


def _cmd_test(ns: argparse.Namespace) -> int:
    from depsera.manifest.fetcher import ManifestFetcher
    from depsera.manifest.validator import validate_manifest
    from depsera.errors import FetchFailure

    try:
        fetched = ManifestFetcher().fetch(ns.url)
    except FetchFailure as exc:
        _emit({"valid": False, "errors": [{"severity": "error", "path": "", "message": str(exc)}]})
        return 1
    result = validate_manifest(fetched.data)
    _emit(result.model_dump(mode="json"))
    return 0 if result.valid else 1


def _cmd_drift_list(ns: argparse.Namespace) -> int:
    from depsera.stores.drift_flags import DriftFlagStore

    with session_scope() as session:
        page = DriftFlagStore(session).find_by_team_id(
            ns.team,
            status=ns.status,
            drift_type=ns.type,
            service_id=ns.service,
            limit=ns.limit,
            offset=ns.offset,
        )
        payload = {
            "flags": [_flag_payload(item) for item in page.flags],
            "total": page.total,
        }
    _emit(payload)
    return 0


def _cmd_drift_summary(ns: argparse.Namespace) -> int:
    from dataclasses import asdict

    from depsera.stores.drift_flags import DriftFlagStore

    with session_scope() as session:
        summary = DriftFlagStore(session).count_by_team_id(ns.team)
    _emit(asdict(summary))
    return 0


def _cmd_drift_review(ns: argparse.Namespace) -> int:
    from dataclasses import asdict

    from depsera.manifest.review import DriftReviewService

    with session_scope() as session:
        review = DriftReviewService(session)
        if ns.review_action == "accept":
            result = review.bulk_accept(ns.team, ns.flags, ns.user)
        else:
            result = review.bulk_dismiss(ns.team, ns.flags, ns.user)
    _emit(asdict(result))
    return 0 if result.failed == 0 else 1


def _cmd_history(ns: argparse.Namespace) -> int:
    from depsera.stores.sync_history import (
        SyncHistoryRecorder,
        history_errors,
        history_summary,
        history_warnings,
    )

    with session_scope() as session:
        page = SyncHistoryRecorder(session).find_by_team_id(
            ns.team, limit=ns.limit, offset=ns.offset
        )
        entries = []
        for entry in page.entries:
            summary = history_summary(entry)
            entries.append(
                {
                    "id": entry.id,
                    "trigger_type": entry.trigger_type,
                    "triggered_by": entry.triggered_by,
                    "manifest_url": entry.manifest_url,
                    "status": entry.status,
                    "summary": summary.model_dump() if summary else None,
                    "errors": history_errors(entry),
                    "warnings": history_warnings(entry),
                    "duration_ms": entry.duration_ms,
                    "created_at": entry.created_at,
                }
            )
    _emit({"entries": entries, "total": page.total})
    return 0


def _cmd_config_set(ns: argparse.Namespace) -> int:
    from depsera.stores.manifest_config import ManifestConfigStore, config_policy

    policy = json.loads(ns.policy) if ns.policy else None
    with session_scope() as session:
        config = ManifestConfigStore(session).create(
            ns.team, ns.url, is_enabled=not ns.disabled, sync_policy=policy
        )
        payload = {
            "team_id": config.team_id,
            "manifest_url": config.manifest_url,
            "is_enabled": config.is_enabled,
            "sync_policy": config_policy(config).model_dump(),
        }
    _emit(payload)
    return 0


def _cmd_config_delete(ns: argparse.Namespace) -> int:
    from depsera.stores.manifest_config import ManifestConfigStore

    with session_scope() as session:
        deleted = ManifestConfigStore(session).delete(ns.team)
    _emit({"deleted": deleted})
    return 0 if deleted else 1


def _cmd_retention(ns: argparse.Namespace) -> int:
    from depsera.retention import run_manifest_retention

    with session_scope() as session:
        result = run_manifest_retention(
            session, drift_days=ns.drift_days, history_days=ns.history_days
        )
    _emit(result.as_dict())
    return 0


def _cmd_db_upgrade(ns: argparse.Namespace) -> int:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(PACKAGE_ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(PACKAGE_ROOT / "alembic"))
    command.upgrade(cfg, ns.revision)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="depsera-manifest",
        description="Sync team manifests into the service catalog and review drift.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (DEBUG, INFO, WARNING). Defaults to env LOG_LEVEL or INFO.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # ---- sync ----
    sync = sub.add_parser("sync", help="Run a manifest sync for one team.")
    sync.add_argument("--team", required=True, help="Team id.")
    sync.add_argument("--user", default=None, help="Id of the triggering user.")
    sync.add_argument(
        "--trigger",
        choices=("manual", "scheduled"),
        default="manual",
        help="Trigger type recorded in history (default: manual).",
    )
    sync.set_defaults(func=_cmd_sync)

    # ---- test ----
    test = sub.add_parser("test", help="Fetch and validate a manifest without syncing.")
    test.add_argument("--url", required=True)
    test.set_defaults(func=_cmd_test)

    # ---- drift ----
    drift = sub.add_parser("drift", help="Inspect and review drift flags.")
    drift_sub = drift.add_subparsers(dest="drift_command", required=True)

    drift_list = drift_sub.add_parser("list", help="List a team's drift flags.")
    drift_list.add_argument("--team", required=True)
    drift_list.add_argument(
        "--status", choices=("pending", "dismissed", "accepted", "resolved")
    )
    drift_list.add_argument("--type", choices=("field_change", "service_removal"))
    drift_list.add_argument("--service", default=None, help="Service id.")
    drift_list.add_argument("--limit", type=int, default=50)
    drift_list.add_argument("--offset", type=int, default=0)
    drift_list.set_defaults(func=_cmd_drift_list)

    drift_summary = drift_sub.add_parser("summary", help="Count a team's open flags.")
    drift_summary.add_argument("--team", required=True)
    drift_summary.set_defaults(func=_cmd_drift_summary)

    for action in ("accept", "dismiss"):
        review = drift_sub.add_parser(action, help=f"{action.capitalize()} drift flags.")
        review.add_argument("--team", required=True)
        review.add_argument("--user", default=None)
        review.add_argument("flags", nargs="+", help="Drift flag ids.")
        review.set_defaults(func=_cmd_drift_review, review_action=action)

    # ---- history ----
    history = sub.add_parser("history", help="Show a team's sync history.")
    history.add_argument("--team", required=True)
    history.add_argument("--limit", type=int, default=20)
    history.add_argument("--offset", type=int, default=0)
    history.set_defaults(func=_cmd_history)

    # ---- config ----
    config = sub.add_parser("config", help="Manage a team's manifest config.")
    config_sub = config.add_subparsers(dest="config_command", required=True)
    config_set = config_sub.add_parser("set", help="Create or replace the config.")
    config_set.add_argument("--team", required=True)
    config_set.add_argument("--url", required=True)
    config_set.add_argument("--disabled", action="store_true")
    config_set.add_argument("--policy", default=None, help="Sync policy as a JSON object.")
    config_set.set_defaults(func=_cmd_config_set)
    config_delete = config_sub.add_parser("delete", help="Remove the config.")
    config_delete.add_argument("--team", required=True)
    config_delete.set_defaults(func=_cmd_config_delete)

    # ---- retention ----
    retention = sub.add_parser("retention", help="Purge old drift flags and history.")
    retention.add_argument("--drift-days", type=int, default=None)
    retention.add_argument("--history-days", type=int, default=None)
    retention.set_defaults(func=_cmd_retention)

    # ---- db ----
    db = sub.add_parser("db", help="Database schema management.")
    db_sub = db.add_subparsers(dest="db_command", required=True)
    db_upgrade = db_sub.add_parser("upgrade", help="Apply alembic migrations.")
    db_upgrade.add_argument("--revision", default="head")
    db_upgrade.set_defaults(func=_cmd_db_upgrade)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    ns = parser.parse_args(argv)

    level_name = str(getattr(ns, "log_level", "") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    func = getattr(ns, "func", None)
    if func is None:
        parser.print_help()
        return 2
    return int(func(ns))


if __name__ == "__main__":
    raise SystemExit(main())
