# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/posledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init [--opening-main 0] [--opening-petty 0]
#   Idempotent bootstrap: creates tables, default loyalty rule and optional opening balances.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system set-return-window 30
#   Override the return window (days) in the settings table.
#
# Loyalty:
# - python -m flask loyalty show
#   Show the active earn rule.
# - python -m flask loyalty set-rule --bps 10000 [--min-purchase-cents 0] [--name "Standard"]
#   Publish a new earn rule version (deactivates the previous one).
#
# Cash ledger:
# - python -m flask ledger balance [--fund main] [--as-of 2026-01-31T23:59:59Z]
#   Print fund balances.
# - python -m flask ledger reconcile
#   Read-only report of ledger / customer divergence. Exits 1 when issues are found.
#
# BNPL:
# - python -m flask bnpl overdue [--as-of ...]
#   List unpaid BNPL balances past their due date.

import json

import click
from flask.cli import with_appcontext

from .errors import LedgerError
from .extensions import db
from .services import bnpl_service, ledger_service, loyalty_service, reconciliation_service, settings_service
from .time_utils import parse_iso_datetime, to_utc_z


def _parse_as_of(value):
    try:
        return parse_iso_datetime(value)
    except ValueError:
        raise click.BadParameter("must be an ISO-8601 datetime", param_hint="--as-of")


def _money(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    cents = abs(cents)
    return f"{sign}{cents // 100}.{cents % 100:02d}"


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--opening-main', default=0, type=int, help='Opening balance for the main fund (cents)')
@click.option('--opening-petty', default=0, type=int, help='Opening balance for the petty fund (cents)')
@with_appcontext
def init_system(opening_main, opening_petty):
    """
    Initialize the ledger: schema, default loyalty rule, opening balances.

    Safe to run repeatedly.
    """
    click.echo("START Initializing ledger...")

    db.create_all()
    click.echo("PASS Schema ready")

    rule = loyalty_service.get_active_rule()
    if rule is None:
        rule = loyalty_service.set_active_rule(points_per_currency_bps=10000, rule_name="Standard")
        click.echo(f"PASS Created loyalty rule v{rule.version} ({rule.points_per_currency_bps} bps)")
    else:
        click.echo(f"PASS Using loyalty rule v{rule.version} ({rule.points_per_currency_bps} bps)")

    for fund, amount in (("main", opening_main), ("petty", opening_petty)):
        if amount > 0:
            entry = ledger_service.record_opening_balance(fund, amount)
            click.echo(f"PASS Opening balance {fund}: {_money(entry.amount_cents)}")

    click.echo("DONE Ledger initialized.")


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

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


@system_group.command('set-return-window')
@click.argument('days', type=int)
@with_appcontext
def set_return_window(days):
    """Override the return window in days."""
    try:
        settings_service.set_return_window_days(days)
    except LedgerError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS Return window set to {settings_service.get_return_window_days()} days")


@click.group('loyalty')
def loyalty_group():
    """Loyalty earn rule commands."""


@loyalty_group.command('show')
@with_appcontext
def show_rule():
    rule = loyalty_service.get_active_rule()
    if rule is None:
        click.echo("No active loyalty rule (no points are awarded).")
        return
    click.echo(
        f"v{rule.version} {rule.rule_name}: {rule.points_per_currency_bps} bps, "
        f"min purchase {_money(rule.min_purchase_cents)}"
    )


@loyalty_group.command('set-rule')
@click.option('--bps', 'points_per_currency_bps', required=True, type=int,
              help='Points per currency unit in basis points (10000 = 1 point)')
@click.option('--min-purchase-cents', default=0, type=int, help='Minimum purchase to earn points')
@click.option('--name', 'rule_name', default=None, help='Rule name')
@with_appcontext
def set_rule(points_per_currency_bps, min_purchase_cents, rule_name):
    try:
        rule = loyalty_service.set_active_rule(
            points_per_currency_bps=points_per_currency_bps,
            min_purchase_cents=min_purchase_cents,
            rule_name=rule_name,
        )
    except LedgerError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS Published loyalty rule v{rule.version}")


@click.group('ledger')
def ledger_group():
    """Cash ledger inspection commands."""


@ledger_group.command('balance')
@click.option('--fund', type=click.Choice(list(ledger_service.FUNDS)), default=None)
@click.option('--as-of', 'as_of', default=None, help='ISO-8601 datetime (inclusive)')
@with_appcontext
def ledger_balance(fund, as_of):
    as_of_dt = _parse_as_of(as_of)
    if fund:
        click.echo(f"{fund}: {_money(ledger_service.get_cash_balance(as_of=as_of_dt, fund=fund))}")
        return
    for name, cents in ledger_service.get_fund_balances(as_of=as_of_dt).items():
        click.echo(f"{name}: {_money(cents)}")


@ledger_group.command('reconcile')
@click.option('--json', 'as_json', is_flag=True, help='Print the full report as JSON')
@with_appcontext
def ledger_reconcile(as_json):
    """
    Report ledger and customer divergence. Read-only: nothing is repaired.
    """
    report = reconciliation_service.reconcile()
    if as_json:
        click.echo(json.dumps(report, indent=2, default=str))
    else:
        for section, issues in report.items():
            if section == "ok":
                continue
            status = "PASS" if not issues else "FAIL"
            click.echo(f"{status} {section}: {len(issues)} issue(s)")
            for issue in issues:
                click.echo(f"     {issue}")

    if not report["ok"]:
        raise SystemExit(1)


@click.group('bnpl')
def bnpl_group():
    """BNPL inspection commands."""


@bnpl_group.command('overdue')
@click.option('--as-of', 'as_of', default=None, help='ISO-8601 datetime (default now)')
@with_appcontext
def bnpl_overdue(as_of):
    as_of_dt = _parse_as_of(as_of)
    trackers = bnpl_service.list_overdue(as_of_dt)
    if not trackers:
        click.echo("No overdue BNPL balances.")
        return
    for t in trackers:
        click.echo(
            f"BNPL {t.id} sale {t.sale_id} customer {t.customer_id}: "
            f"{_money(t.amount_due_cents)} due {to_utc_z(t.due_date)}"
        )
    click.echo(f"Total overdue: {_money(sum(t.amount_due_cents for t in trackers))}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(loyalty_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(bnpl_group)
