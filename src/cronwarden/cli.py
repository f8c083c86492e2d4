from __future__ import annotations

import argparse
import json
import logging

import uvicorn

from .clock import SystemClock
from .config import (
    Config,
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    load_config,
    load_runtime_config,
)
from .health import check_daily_health
from .ledger import (
    IssueNotFoundError,
    IssueStateError,
    count_issues_by_status,
    force_retry,
    get_issue,
    list_issues,
    mark_resolved,
    reset_issue,
)
from .monitor import run_monitor
from .recorder import list_executions
from .storage import init_db
from .utils import configure_logging, json_dumps, log_event


def _open(args: argparse.Namespace) -> tuple[object, Config]:
    """Open the state DB and the config that applies to it.

    An explicit ``--config`` file wins over the config stored in the DB.
    """
    if args.config:
        config = load_config(args.config)
        conn = init_db(config.paths.state_db)
        return conn, config
    conn = init_db()
    bootstrap_runtime_config(conn)
    return conn, load_runtime_config(conn)


def _print_json(value: object) -> None:
    print(json.dumps(json.loads(json_dumps(value)), indent=2, sort_keys=True))


def _cmd_monitor_run(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        conn, config = _open(args)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    result = run_monitor(conn, config, triggered_by="cli")
    _print_json(result.to_dict())
    return 0 if result.success else 1


def _cmd_health_check(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        conn, config = _open(args)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    report = check_daily_health(
        conn,
        config,
        triggered_by="cli",
        admin_email=args.to,
        send_report=args.send,
    )
    if args.text:
        print(report.report_text, end="")
    else:
        _print_json(report.to_dict())
    return 0 if report.success else 1


def _cmd_issues_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        conn, _ = _open(args)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    issues = list_issues(conn, status=args.status, issue_type=args.type, limit=args.limit)
    for issue in issues:
        log_event(
            logger,
            logging.INFO,
            "issue",
            issue_id=issue.id,
            issue_type=issue.issue_type.value,
            status=issue.status.value,
            retries=f"{issue.retry_count}/{issue.max_retries}",
            subject_ref=issue.subject_ref,
            scope_ref=issue.scope_ref,
        )
    log_event(logger, logging.INFO, "issues_listed", count=len(issues), **count_issues_by_status(conn))
    return 0


def _cmd_issues_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        conn, _ = _open(args)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    issue = get_issue(conn, args.issue_id)
    if issue is None:
        log_event(logger, logging.ERROR, "issue_not_found", issue_id=args.issue_id)
        return 1
    _print_json(issue)
    return 0


def _manual(args: argparse.Namespace, logger: logging.Logger, operation) -> int:
    try:
        conn, _ = _open(args)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    try:
        issue = operation(conn, SystemClock().now())
    except IssueNotFoundError:
        log_event(logger, logging.ERROR, "issue_not_found", issue_id=args.issue_id)
        return 1
    except IssueStateError as exc:
        log_event(logger, logging.ERROR, "issue_state_error", issue_id=args.issue_id, error=str(exc))
        return 1
    log_event(
        logger,
        logging.INFO,
        "issue_updated",
        issue_id=issue.id,
        status=issue.status.value,
        retries=f"{issue.retry_count}/{issue.max_retries}",
    )
    return 0


def _cmd_issues_reset(args: argparse.Namespace, logger: logging.Logger) -> int:
    return _manual(
        args,
        logger,
        lambda conn, now: reset_issue(conn, args.issue_id, args.reset_retries, now),
    )


def _cmd_issues_resolve(args: argparse.Namespace, logger: logging.Logger) -> int:
    return _manual(
        args,
        logger,
        lambda conn, now: mark_resolved(conn, args.issue_id, now, args.resolution),
    )


def _cmd_issues_retry(args: argparse.Namespace, logger: logging.Logger) -> int:
    return _manual(args, logger, lambda conn, now: force_retry(conn, args.issue_id, now))


def _cmd_executions_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        conn, _ = _open(args)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    for record in list_executions(conn, job_name=args.job, limit=args.limit):
        log_event(
            logger,
            logging.INFO,
            "execution",
            execution_id=record.id,
            job=record.job_name,
            started_at=record.started_at.isoformat(),
            completed_at=record.completed_at.isoformat() if record.completed_at else None,
            success=record.success,
            triggered_by=record.triggered_by,
            errors=len(record.errors),
        )
    return 0


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        conn, config = _open(args)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    conn.close()
    log_event(logger, logging.INFO, "db_migrated", path=config.paths.state_db if args.config else "default")
    return 0


def _cmd_config_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    if args.config:
        try:
            _print_json(load_config(args.config))
        except ConfigError as exc:
            log_event(logger, logging.ERROR, "config_error", error=str(exc))
            return 1
        return 0

    conn = init_db()
    try:
        _print_json(get_runtime_config(conn))
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    return 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    log_event(logger, logging.INFO, "api_starting", host=args.host, port=args.port)
    uvicorn.run("cronwarden.api:app", host=args.host, port=args.port, proxy_headers=True)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cronwarden", description="cronwarden CLI")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to config.yml (defaults to the config stored in the state DB)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    monitor_parser = subparsers.add_parser("monitor", help="Monitor and fix")
    monitor_subparsers = monitor_parser.add_subparsers(dest="monitor_command", required=True)
    monitor_run = monitor_subparsers.add_parser("run", help="Run one detect/fix pass now")
    monitor_run.set_defaults(func=_cmd_monitor_run)

    health_parser = subparsers.add_parser("health", help="Daily health report")
    health_subparsers = health_parser.add_subparsers(dest="health_command", required=True)
    health_check = health_subparsers.add_parser("check", help="Run the daily health checks")
    health_check.add_argument("--send", action="store_true", help="Mail the report to the admin")
    health_check.add_argument("--to", default=None, help="Report recipient (defaults to CW_ADMIN_EMAIL)")
    health_check.add_argument("--text", action="store_true", help="Print the plain-text report")
    health_check.set_defaults(func=_cmd_health_check)

    issues_parser = subparsers.add_parser("issues", help="Inspect and manage issues")
    issues_subparsers = issues_parser.add_subparsers(dest="issues_command", required=True)

    issues_list = issues_subparsers.add_parser("list", help="List issues")
    issues_list.add_argument(
        "--status",
        choices=["open", "retrying", "resolved", "needs_manual"],
        help="Filter by status",
    )
    issues_list.add_argument("--type", help="Filter by issue type")
    issues_list.add_argument("--limit", type=int, default=50, help="Number of issues to show")
    issues_list.set_defaults(func=_cmd_issues_list)

    issues_show = issues_subparsers.add_parser("show", help="Show one issue")
    issues_show.add_argument("issue_id", help="Issue id")
    issues_show.set_defaults(func=_cmd_issues_show)

    issues_reset = issues_subparsers.add_parser("reset", help="Reopen a needs_manual issue")
    issues_reset.add_argument("issue_id", help="Issue id")
    issues_reset.add_argument(
        "--reset-retries",
        action="store_true",
        help="Zero the retry count instead of granting one more attempt",
    )
    issues_reset.set_defaults(func=_cmd_issues_reset)

    issues_resolve = issues_subparsers.add_parser("resolve", help="Mark an issue resolved")
    issues_resolve.add_argument("issue_id", help="Issue id")
    issues_resolve.add_argument("--resolution", default="Manually resolved", help="Resolution note")
    issues_resolve.set_defaults(func=_cmd_issues_resolve)

    issues_retry = issues_subparsers.add_parser("retry", help="Make an issue due on the next run")
    issues_retry.add_argument("issue_id", help="Issue id")
    issues_retry.set_defaults(func=_cmd_issues_retry)

    executions_parser = subparsers.add_parser("executions", help="Job execution history")
    executions_subparsers = executions_parser.add_subparsers(dest="executions_command", required=True)
    executions_list = executions_subparsers.add_parser("list", help="List recent executions")
    executions_list.add_argument("--job", default=None, help="Filter by job name")
    executions_list.add_argument("--limit", type=int, default=20, help="Number of executions to show")
    executions_list.set_defaults(func=_cmd_executions_list)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    config_parser = subparsers.add_parser("config", help="Configuration")
    config_subparsers = config_parser.add_subparsers(dest="config_command", required=True)
    config_show = config_subparsers.add_parser("show", help="Print the effective config")
    config_show.set_defaults(func=_cmd_config_show)

    serve_parser = subparsers.add_parser("serve", help="Run the trigger and admin API")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8000, help="Bind port")
    serve_parser.set_defaults(func=_cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = configure_logging("cronwarden")
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
