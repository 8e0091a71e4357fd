#!/usr/bin/env python3
"""
Helpdesk operator CLI -- account bootstrap, SLA defaults, conversion repair.

Usage:
  python main.py create-admin --username admin@example.com --name "Ada Admin"
  python main.py create-user --username agent@example.com --role support_agent --branch HQ
  python main.py list-users
  python main.py seed-sla
  python main.py reconcile
  python main.py reconcile --apply

Passwords are prompted for when --password is omitted.

Environment variables (or .env):
  DATABASE_URL        Desk database (tickets, incidents, SLA, audit).
  AUTH_DATABASE_URL   Account database.
  DEBUG=true          Allows running without SECRET_KEY.
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.store import UserStore
from auth.tokens import hash_password
from cache.store import BranchDirectory
from core.config import get_settings
from core.errors import DeskError
from core.models import Actor, Priority, Role, SlaRule
from desk.conversion import ConversionCoordinator
from desk.dispatcher import Dispatcher, MutationEvent
from desk.numbering import NumberingService
from desk.store import DeskStore

# (priority, response minutes, resolution hours)
_DEFAULT_SLA = (
    (Priority.URGENT, 60, 4),
    (Priority.HIGH, 120, 8),
    (Priority.MEDIUM, 240, 12),
    (Priority.LOW, 480, 24),
)


def _password(given: Optional[str]) -> str:
    if given:
        return given
    first = getpass.getpass("Password: ")
    if first != getpass.getpass("Repeat password: "):
        print("  [!] Passwords do not match.")
        sys.exit(1)
    return first


def _create(
    users: UserStore,
    store: DeskStore,
    username: str,
    name: str,
    role: Role,
    branches: list[str],
    password: Optional[str],
) -> None:
    secret = _password(password)
    if len(secret) < 8:
        print("  [!] Password must be at least 8 characters.")
        sys.exit(1)
    try:
        user_id = users.create_user(
            Actor(
                username=username,
                name=name,
                role=role,
                branches=frozenset(b.upper() for b in branches),
                hashed_password=hash_password(secret),
            )
        )
    except DeskError as exc:
        print(f"  [!] {exc.message}")
        sys.exit(1)
    # The CLI has no signed-in actor; the first administrator is recorded as creating itself.
    actor_id = user_id if role == Role.ADMINISTRATOR else None
    Dispatcher(store).on_mutation(
        MutationEvent(
            actor_id=actor_id,
            action="CREATE_USER",
            resource_type="user",
            resource_id=user_id,
            details={"username": username, "role": role.value, "branches": sorted(b.upper() for b in branches), "via": "cli"},
        )
    )
    print(f"  Created {role.value} '{username}' (id {user_id}).")


def cmd_create_admin(args: argparse.Namespace, users: UserStore, store: DeskStore) -> None:
    _create(users, store, args.username, args.name, Role.ADMINISTRATOR, ["ALL"], args.password)


def cmd_create_user(args: argparse.Namespace, users: UserStore, store: DeskStore) -> None:
    role = Role(args.role)
    if role == Role.ADMINISTRATOR:
        print("  [!] Use create-admin for the administrator account.")
        sys.exit(1)
    _create(users, store, args.username, args.name, role, args.branch or [], args.password)


def cmd_list_users(args: argparse.Namespace, users: UserStore, store: DeskStore) -> None:
    accounts = users.list_users()
    if not accounts:
        print("  No users. Run `python main.py create-admin` first.")
        return
    print(f"  {'ID':>4}  {'USERNAME':<32} {'ROLE':<18} {'STATUS':<9} BRANCHES")
    for a in accounts:
        print(f"  {a.id:>4}  {a.username:<32} {a.role.value:<18} {a.status.value:<9} {','.join(sorted(a.branches))}")


def cmd_seed_sla(args: argparse.Namespace, users: UserStore, store: DeskStore) -> None:
    dispatcher = Dispatcher(store)
    for priority, response, resolution in _DEFAULT_SLA:
        if store.active_sla_rule(priority) is not None:
            print(f"  {priority.value:<7} already has an active rule, skipped.")
            continue
        rule_id = store.insert_sla_rule(SlaRule(priority, response, resolution))
        dispatcher.on_mutation(
            MutationEvent(
                actor_id=None,
                action="CREATE_SLA_RULE",
                resource_type="sla_rule",
                resource_id=rule_id,
                details={
                    "priority": priority.value,
                    "response_time_minutes": response,
                    "resolution_time_hours": resolution,
                    "is_active": True,
                    "via": "cli",
                },
            )
        )
        print(f"  {priority.value:<7} response {response} min, resolution {resolution} h.")


def cmd_reconcile(args: argparse.Namespace, users: UserStore, store: DeskStore) -> None:
    pending = store.list_unfrozen_conversions()
    if not pending:
        print("  All conversions are complete.")
        return
    for incident in pending:
        print(f"  ticket {incident.source_ticket_id} -> {incident.incident_number} (ticket not frozen)")
    if not args.apply:
        print(f"\n  {len(pending)} conversion(s) need reconciling. Re-run with --apply to freeze the tickets.")
        return

    admin = next((u for u in users.list_users() if u.role == Role.ADMINISTRATOR and u.is_active), None)
    if admin is None:
        print("  [!] No active administrator; reconciliation is recorded against one.")
        sys.exit(1)
    settings = get_settings()
    branches = BranchDirectory(store.list_branch_acronyms, fallback=settings.default_branches)
    coordinator = ConversionCoordinator(store, users, NumberingService(store, branches), Dispatcher(store))
    failed = 0
    for incident in pending:
        try:
            coordinator.reconcile(admin, incident.source_ticket_id)
            print(f"  reconciled ticket {incident.source_ticket_id}")
        except DeskError as exc:
            failed += 1
            print(f"  [!] ticket {incident.source_ticket_id}: {exc.message}")
    if failed:
        sys.exit(1)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="helpdesk",
        description="Operator commands for the helpdesk and incident tracker.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin --username admin@example.com
  python main.py create-user --username sec@example.com --role security_officer --branch ALL
  python main.py seed-sla
  python main.py reconcile --apply
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("create-admin", help="Create the single administrator account")
    p.add_argument("--username", required=True, help="Login name (usually an email address)")
    p.add_argument("--name", default="", help="Display name")
    p.add_argument("--password", help="Password (prompted when omitted)")
    p.set_defaults(func=cmd_create_admin)

    p = sub.add_parser("create-user", help="Create an end user, support agent, or security officer")
    p.add_argument("--username", required=True, help="Login name (usually an email address)")
    p.add_argument("--name", default="", help="Display name")
    p.add_argument(
        "--role",
        choices=[r.value for r in Role if r != Role.ADMINISTRATOR],
        default=Role.END_USER.value,
        help="Account role (default: end_user)",
    )
    p.add_argument("--branch", action="append", metavar="ACRONYM", help="Branch acronym; repeat for several, ALL for every branch")
    p.add_argument("--password", help="Password (prompted when omitted)")
    p.set_defaults(func=cmd_create_user)

    p = sub.add_parser("list-users", help="List all accounts")
    p.set_defaults(func=cmd_list_users)

    p = sub.add_parser("seed-sla", help="Insert the default SLA rule for every priority that has none")
    p.set_defaults(func=cmd_seed_sla)

    p = sub.add_parser("reconcile", help="Find conversions whose ticket was never frozen")
    p.add_argument("--apply", action="store_true", help="Freeze the tickets instead of only listing them")
    p.set_defaults(func=cmd_reconcile)

    args = parser.parse_args()
    if not getattr(args, "func", None):
        parser.print_help()
        return

    settings = get_settings()
    users = UserStore(settings.auth_database_url)
    store = DeskStore(settings.database_url)
    try:
        args.func(args, users, store)
    finally:
        users.close()
        store.close()


if __name__ == "__main__":
    main()
