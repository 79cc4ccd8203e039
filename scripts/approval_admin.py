#!/usr/bin/env python3
"""
Operator commands for the approval kernel.

Commands:
  init-db               Create all tables in the configured database.
  load-templates PATH   Validate and save every template in a YAML file.
  stats                 Print request counts overall, per category and
                        per template.
  add-user NAME EMAIL   Register a user (--role, --department).
  approvers             List users whose role matches the configured
                        approver role keywords.
  create-request        Open a request on a template; priority falls back
                        to the configured default.

Settings come from approval_config.get_active_config() (defaults.yaml,
APPROVAL_CONFIG_PATH, DATABASE_URL).

Usage:
  python3 scripts/approval_admin.py [--config PATH] [--db-url URL] init-db
  python3 scripts/approval_admin.py load-templates approval_config/templates/standard.yaml
  python3 scripts/approval_admin.py stats
  python3 scripts/approval_admin.py create-request --template ID --title "New laptop" \
      --requester ID
"""

import argparse
import logging
import sys
from datetime import date
from pathlib import Path
from uuid import UUID

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Approval kernel administration")
    p.add_argument("--config", default=None, help="Settings override YAML file")
    p.add_argument("--db-url", default=None, help="Database URL (overrides settings)")
    sub = p.add_subparsers(dest="command", required=True)
    sub.add_parser("init-db", help="Create all tables")
    load = sub.add_parser("load-templates", help="Load template definitions from YAML")
    load.add_argument("path", help="YAML file with a 'templates' list")
    sub.add_parser("stats", help="Print request statistics")
    user = sub.add_parser("add-user", help="Register a user")
    user.add_argument("name")
    user.add_argument("email")
    user.add_argument("--role", default="")
    user.add_argument("--department", default="")
    sub.add_parser("approvers", help="List approver candidates")
    req = sub.add_parser("create-request", help="Open an approval request")
    req.add_argument("--template", required=True, type=UUID, help="Template id")
    req.add_argument("--title", required=True)
    req.add_argument("--requester", required=True, type=UUID, help="Requester user id")
    req.add_argument("--priority", default=None, choices=["low", "medium", "high"],
                     help="Defaults to requests.default_priority")
    req.add_argument("--due-date", default=None, type=date.fromisoformat)
    return p.parse_args(argv)


def _build_repository(args: argparse.Namespace):
    from approval_config import get_active_config
    from approval_kernel.db.engine import get_session_factory, init_engine_from_url
    from approval_kernel.db.repository import SqlWorkflowRepository
    from approval_kernel.logging_config import configure_logging

    settings = get_active_config(args.config)
    configure_logging(level=settings.log_level)

    db = settings.database
    init_engine_from_url(
        args.db_url or db.url,
        echo=db.echo,
        pool_size=db.pool_size,
        max_overflow=db.max_overflow,
        pool_timeout=db.pool_timeout,
    )
    repo = SqlWorkflowRepository(
        get_session_factory(), lock_timeout=settings.locking.timeout_seconds,
    )
    return settings, repo


def _cmd_init_db(args: argparse.Namespace) -> int:
    from approval_kernel.db.engine import create_tables

    _build_repository(args)
    create_tables()
    print("  Tables created.")
    return 0


def _cmd_load_templates(args: argparse.Namespace) -> int:
    from approval_config import load_template_definitions
    from approval_kernel.services.template_service import TemplateService

    _, repo = _build_repository(args)
    definitions = load_template_definitions(args.path)
    created = TemplateService(repo).load_definitions(definitions)
    for template in created:
        print(f"  {template.template_id}  {template.name} (v{template.version})")
    print(f"  Loaded {len(created)} template(s).")
    return 0


def _cmd_stats(args: argparse.Namespace) -> int:
    from approval_kernel.selectors.request_selector import RequestSelector

    _, repo = _build_repository(args)
    selector = RequestSelector(repo)

    stats = selector.get_stats()
    print()
    print(f"  Requests: {stats.total}  pending={stats.pending}  in-progress={stats.in_progress}"
          f"  approved={stats.approved}  rejected={stats.rejected}")

    print()
    print("  By category:")
    for row in selector.get_category_stats():
        s = row.stats
        print(f"    {row.category or '(none)':<20} total={s.total:<5} approved={s.approved:<5}"
              f" rejected={s.rejected:<5} in-progress={s.in_progress}")

    print()
    print("  By template:")
    for row in selector.get_template_stats():
        avg = (f"{row.average_completion_seconds / 3600:.1f}h"
               if row.average_completion_seconds is not None else "-")
        print(f"    {row.template_name:<30} used={row.usage_count:<5}"
              f" approval_rate={row.approval_rate:.0%}  avg_completion={avg}")
    print()
    return 0


def _user_service(settings, repo):
    from approval_kernel.services.user_service import UserService

    return UserService(repo, approver_role_keywords=settings.approver_role_keywords)


def _cmd_add_user(args: argparse.Namespace) -> int:
    settings, repo = _build_repository(args)
    user = _user_service(settings, repo).create_user(
        args.name, args.email, role=args.role, department=args.department,
    )
    print(f"  {user.user_id}  {user.name} <{user.email}>")
    return 0


def _cmd_approvers(args: argparse.Namespace) -> int:
    settings, repo = _build_repository(args)
    approvers = _user_service(settings, repo).list_approvers()
    for user in approvers:
        print(f"  {user.user_id}  {user.name:<24} {user.role}")
    print(f"  {len(approvers)} approver(s) for roles: "
          f"{', '.join(settings.approver_role_keywords) or '(none)'}")
    return 0


def _cmd_create_request(args: argparse.Namespace) -> int:
    from approval_kernel.domain.dtos import CreateRequestCommand
    from approval_kernel.services.workflow_engine import WorkflowEngine

    settings, repo = _build_repository(args)
    engine = WorkflowEngine(repo, default_priority=settings.default_priority)
    snapshot = engine.create_request(
        CreateRequestCommand(
            template_id=args.template,
            title=args.title,
            priority=args.priority,
            due_date=args.due_date,
        ),
        args.requester,
    )
    request = snapshot.request
    print(f"  {request.request_id}  {request.title}  priority={request.priority.value}"
          f"  step {request.current_step}/{request.total_steps}")
    return 0


_COMMANDS = {
    "init-db": _cmd_init_db,
    "load-templates": _cmd_load_templates,
    "stats": _cmd_stats,
    "add-user": _cmd_add_user,
    "approvers": _cmd_approvers,
    "create-request": _cmd_create_request,
}


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    from approval_kernel.exceptions import ApprovalKernelError

    try:
        return _COMMANDS[args.command](args)
    except ApprovalKernelError as exc:
        logging.getLogger("approval_kernel.scripts").error(
            "admin_command_failed", extra={"command": args.command, "error_code": exc.code},
        )
        print(f"  ERROR [{exc.code}]: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
