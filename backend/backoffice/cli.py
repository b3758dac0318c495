# Overview: Flask CLI command groups for bootstrap, admin accounts, groups and billing.

# backend/backoffice/cli.py
# Commands Legend (run from the repository root):
# Prereqs:
# - Activate your virtualenv and `pip install -e .`
# - Set FLASK_APP=backoffice (PowerShell: $env:FLASK_APP="backoffice").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create any missing tables (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Admin accounts:
# - python -m flask admins create --email owner@shop.test --password "Password123" --role owner
# - python -m flask admins list
#
# Groups:
# - python -m flask groups create --notes "March bulk run"
# - python -m flask groups list [--status Draft]
# - python -m flask groups repack GRP-0007
#   Renumber member positions and card numbers to 1..N.
#
# Billing:
# - python -m flask billing assemble --email customer@example.com [--no-drafts]
# - python -m flask billing assemble --submission PSA-1001 --submission PSA-1002
# - python -m flask billing send 42 [--to someone@example.com]

import click
from flask.cli import with_appcontext

from .errors import BackofficeError
from .extensions import db
from .models import AdminUser
from .services import billing_service, group_lifecycle, invoice_service
from .services.admin_session_service import ADMIN_ROLES, create_admin
from .services.concurrency import commit_with_retry, lock_group
from .services.membership_service import repack_card_order, repack_member_positions


def _fail(message: str) -> None:
    db.session.rollback()
    click.echo(f"FAIL {message}")
    raise SystemExit(1)


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Tables created.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask admins create' to add an owner.")


@click.group('admins')
def admins_group():
    """Admin portal accounts."""


@admins_group.command('create')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--name', default=None, help='Display name')
@click.option('--role', type=click.Choice(list(ADMIN_ROLES)), default='staff', show_default=True)
@with_appcontext
def create_admin_cli(email, password, name, role):
    """
    Create an admin account.

    Password must be at least 8 characters; it is stored as a bcrypt hash.
    """
    try:
        user = create_admin(email, password, name=name, role=role)
        commit_with_retry()
    except BackofficeError as e:
        _fail(e.message)

    click.echo(f"PASS Created admin: {user.email} ({user.role})")
    click.echo("SECURITY Password securely hashed with bcrypt")


@admins_group.command('list')
@with_appcontext
def list_admins_cli():
    users = db.session.query(AdminUser).order_by(AdminUser.id).all()
    if not users:
        click.echo("No admins. Run 'python -m flask admins create'.")
        return
    for user in users:
        state = "active" if user.is_active else "disabled"
        click.echo(f"{user.id:>4}  {user.email:<32} {user.role:<6} {state}")


@click.group('groups')
def groups_group():
    """PSA group inspection and maintenance."""


@groups_group.command('create')
@click.option('--notes', default=None, help='Free-form notes')
@with_appcontext
def create_group_cli(notes):
    try:
        group = group_lifecycle.create_group(notes)
        commit_with_retry()
    except BackofficeError as e:
        _fail(e.message)
    click.echo(f"PASS Created group {group.code} (id {group.id})")


@groups_group.command('list')
@click.option('--status', default=None, help='Draft, ReadyToShip, AtPSA, Returned or Closed')
@click.option('--limit', default=50, show_default=True, type=int)
@with_appcontext
def list_groups_cli(status, limit):
    try:
        page = group_lifecycle.list_groups(status=status, limit=limit)
    except BackofficeError as e:
        _fail(e.message)

    if not page["groups"]:
        click.echo("No groups.")
        return
    for g in page["groups"]:
        hold = " (reopened)" if g.get("reopen_hold") else ""
        click.echo(
            f"{g['code']:<10} {g['status']:<12} "
            f"{g['submission_count']:>3} submissions  {g['card_count']:>4} cards{hold}"
        )
    if page["has_more"]:
        click.echo(f"... more than {limit} groups; raise --limit")


@groups_group.command('repack')
@click.argument('group_ref')
@with_appcontext
def repack_group_cli(group_ref):
    """Renumber a group's member positions and card numbers to 1..N."""
    try:
        group = group_lifecycle.resolve_group(group_ref)
        lock_group(group.id)
        members = repack_member_positions(group.id)
        cards = repack_card_order(group.id)
        commit_with_retry()
    except BackofficeError as e:
        _fail(e.message)
    click.echo(f"PASS {group.code}: {members} submissions, {cards} cards renumbered")


@click.group('billing')
def billing_group():
    """Billing invoices and processor drafts."""


@billing_group.command('assemble')
@click.option('--email', default=None, help='Bill every returned submission of this customer')
@click.option('--submission', 'submissions', multiple=True, help='Submission code or id (repeatable)')
@click.option('--rate-cents', type=int, default=None, help='Override BILLING_RATE_CENTS')
@click.option('--no-drafts', is_flag=True, help='Stage invoices locally without creating drafts')
@with_appcontext
def assemble_cli(email, submissions, rate_cents, no_drafts):
    try:
        results = billing_service.assemble_billing_drafts(
            email,
            list(submissions) or None,
            rate_cents=rate_cents,
            create_drafts=not no_drafts,
        )
        commit_with_retry()
    except BackofficeError as e:
        _fail(e.message)

    for inv in results:
        line = (
            f"invoice {inv['invoice_id']}: {len(inv['submissions'])} submission(s), "
            f"total {inv['total_cents']} cents, status {inv['status']}"
        )
        if inv.get("draft_error"):
            line += f"  WARN draft failed: {inv['draft_error']}"
        click.echo(line)
    click.echo(f"PASS {len(results)} invoice(s) assembled")


@billing_group.command('send')
@click.argument('invoice_id', type=int)
@click.option('--to', 'to_email', default=None, help='Override the destination email')
@with_appcontext
def send_cli(invoice_id, to_email):
    try:
        result = invoice_service.send_invoice(invoice_id, to_email=to_email)
    except BackofficeError as e:
        _fail(e.message)
    click.echo(f"PASS Invoice {result['invoice_id']} sent to {result['sent_to']}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(admins_group)
    app.cli.add_command(groups_group)
    app.cli.add_command(billing_group)
