from __future__ import annotations

import argparse
import json
import logging
import os

from .config import (
    ConfigError,
    get_settings,
    get_state_db_path,
    load_seed_file,
    settings_as_dict,
    update_settings,
)
from .db import connect_db
from .service import (
    build_relay,
    get_diagnostics,
    immediate_schedule_ids,
    process_all_active_feeds,
    process_feed,
    run_schedule,
)
from .storage import upsert_feed, upsert_schedule, upsert_target, upsert_template
from .utils import configure_logging, log_event
from .watchdog import expire_stale_locks, reclaim_stuck_obligations, run_retention


def _setup_logging() -> logging.Logger:
    return configure_logging("feedrelay.cli")


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _cmd_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        data = load_seed_file(args.path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "seed_import_error", path=args.path, error=str(exc))
        return 1

    conn = connect_db(get_state_db_path())
    counts = {"feeds": 0, "targets": 0, "templates": 0, "schedules": 0, "settings": 0}
    try:
        for feed in data.get("feeds") or []:
            upsert_feed(conn, feed)
            counts["feeds"] += 1
        for target in data.get("targets") or []:
            upsert_target(conn, target)
            counts["targets"] += 1
        for template in data.get("templates") or []:
            upsert_template(conn, template)
            counts["templates"] += 1
        for schedule in data.get("schedules") or []:
            upsert_schedule(conn, schedule)
            counts["schedules"] += 1
        if data.get("settings"):
            update_settings(conn, data["settings"])
            counts["settings"] = len(data["settings"])
    except (ConfigError, ValueError, KeyError) as exc:
        log_event(logger, logging.ERROR, "seed_import_error", path=args.path, error=str(exc))
        return 1
    finally:
        conn.close()

    log_event(logger, logging.INFO, "seed_imported", path=args.path, **counts)
    _print_json(counts)
    return 0


def _cmd_feeds_process(args: argparse.Namespace, logger: logging.Logger) -> int:
    relay = build_relay(logger=logger)
    try:
        if args.feed_id:
            result = process_feed(relay, args.feed_id)
            results = [result]
            if (result.items or result.queued) and args.run_immediate:
                for schedule_id in immediate_schedule_ids(relay, args.feed_id):
                    run_schedule(relay, schedule_id)
        else:
            results = process_all_active_feeds(relay)
    finally:
        relay.conn.close()
    _print_json([result.as_dict() for result in results])
    return 1 if any(result.status in ("error", "not_found") for result in results) else 0


def _cmd_schedules_run(args: argparse.Namespace, logger: logging.Logger) -> int:
    relay = build_relay(logger=logger)
    try:
        result = run_schedule(relay, args.schedule_id)
    finally:
        relay.conn.close()
    _print_json(result.as_dict())
    return 1 if result.reason == "schedule not found" else 0


def _cmd_schedules_diagnostics(args: argparse.Namespace, logger: logging.Logger) -> int:
    relay = build_relay(logger=logger)
    try:
        report = get_diagnostics(relay, args.schedule_id)
    finally:
        relay.conn.close()
    _print_json(report)
    return 0


def _cmd_watchdog(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = connect_db(get_state_db_path())
    try:
        settings = get_settings(conn)
        reclaimed = reclaim_stuck_obligations(conn, settings, logger=logger)
        expired = expire_stale_locks(conn, logger=logger)
    finally:
        conn.close()
    _print_json({"reclaimed": reclaimed, "expired_locks": expired})
    return 0


def _cmd_retention(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = connect_db(get_state_db_path())
    try:
        settings = get_settings(conn)
        report = run_retention(conn, settings, logger=logger)
    finally:
        conn.close()
    _print_json(report)
    return 0


def _cmd_settings_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = connect_db(get_state_db_path())
    try:
        settings = get_settings(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    finally:
        conn.close()
    _print_json(settings_as_dict(settings))
    return 0


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = connect_db(get_state_db_path())
    backend = conn.backend
    conn.close()
    log_event(logger, logging.INFO, "db_migrated", backend=backend)
    return 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    import uvicorn

    uvicorn.run("feedrelay.admin:app", host=args.host, port=args.port, proxy_headers=True)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="feedrelay")
    subparsers = parser.add_subparsers(dest="command", required=True)

    import_parser = subparsers.add_parser(
        "import", help="Import feeds, targets, templates, schedules and settings from YAML"
    )
    import_parser.add_argument("path", help="Path to the seed YAML file")
    import_parser.set_defaults(func=_cmd_import)

    feeds_parser = subparsers.add_parser("feeds", help="Feed commands")
    feeds_subparsers = feeds_parser.add_subparsers(dest="feeds_command", required=True)
    feeds_process = feeds_subparsers.add_parser("process", help="Fetch and ingest feeds now")
    feeds_process.add_argument("--feed-id", help="Only process this feed")
    feeds_process.add_argument(
        "--run-immediate",
        action="store_true",
        help="Also run the feed's immediate schedules when new items arrive",
    )
    feeds_process.set_defaults(func=_cmd_feeds_process)

    schedules_parser = subparsers.add_parser("schedules", help="Schedule commands")
    schedules_subparsers = schedules_parser.add_subparsers(
        dest="schedules_command", required=True
    )
    schedules_run = schedules_subparsers.add_parser("run", help="Deliver pending items now")
    schedules_run.add_argument("schedule_id")
    schedules_run.set_defaults(func=_cmd_schedules_run)
    schedules_diag = schedules_subparsers.add_parser(
        "diagnostics", help="Explain why a schedule is or is not sending"
    )
    schedules_diag.add_argument("schedule_id")
    schedules_diag.set_defaults(func=_cmd_schedules_diagnostics)

    watchdog_parser = subparsers.add_parser(
        "watchdog", help="Reclaim stuck obligations and expire stale locks"
    )
    watchdog_parser.set_defaults(func=_cmd_watchdog)

    retention_parser = subparsers.add_parser("retention", help="Prune old rows")
    retention_parser.set_defaults(func=_cmd_retention)

    settings_parser = subparsers.add_parser("settings", help="Runtime settings")
    settings_subparsers = settings_parser.add_subparsers(dest="settings_command", required=True)
    settings_show = settings_subparsers.add_parser("show", help="Print effective settings")
    settings_show.set_defaults(func=_cmd_settings_show)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    serve_parser = subparsers.add_parser("serve", help="Run the admin API")
    serve_parser.add_argument("--host", default=os.environ.get("FR_ADMIN_HOST", "0.0.0.0"))
    serve_parser.add_argument(
        "--port", type=int, default=int(os.environ.get("FR_ADMIN_PORT", "8080"))
    )
    serve_parser.set_defaults(func=_cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
