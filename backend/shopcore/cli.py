# Overview: Flask CLI command groups for closings, reconciliation and webhook maintenance.

# backend/shopcore/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System:
# - python -m flask system init-db
#   Create all tables (development; production uses `flask db upgrade`).
#
# Finance:
# - python -m flask finance close-day --date 2024-05-01 [--notes "..."]
#   Write the immutable cash closing for a date (defaults to today).
#
# Inventory / credit reconciliation:
# - python -m flask inventory verify
#   List variants whose cached stock differs from the movement ledger.
# - python -m flask inventory rebuild --variant-id 3 | --all
#   Overwrite cached stock with the ledger sum.
# - python -m flask credit verify
#   List profiles whose cached store credit differs from their history.
#
# Webhooks:
# - python -m flask webhooks failed [--limit 50]
#   List failed deliveries.
# - python -m flask webhooks redeliver 17 [--url https://...]
#   Re-send one delivery.
#
# Settings:
# - python -m flask settings set-rate 36.5
#   Set the current USD -> local exchange rate.

import click
from flask.cli import with_appcontext

from .extensions import db, webhooks
from .models.webhooks import DELIVERY_STATUS_FAILED, DELIVERY_STATUS_SENT
from .services import cash_closing_service, credit_service, settings_service, stock_service
from .services.errors import OrderCoreError
from .time_utils import local_now


def _fail(message: str) -> None:
    click.echo(f"FAIL {message}")
    raise SystemExit(1)


# =============================================================================
# SYSTEM
# =============================================================================

@click.group('system')
def system_group():
    """System bootstrap commands."""
    pass


@system_group.command('init-db')
@with_appcontext
def init_db_cli():
    """Create all tables from the current models."""
    db.create_all()
    click.echo("PASS Tables created")


# =============================================================================
# FINANCE
# =============================================================================

@click.group('finance')
def finance_group():
    """Finance commands."""
    pass


@finance_group.command('close-day')
@click.option('--date', 'close_date', default=None, help='YYYY-MM-DD (default: today, local time)')
@click.option('--notes', default=None, help='Free-text notes stored on the closing')
@with_appcontext
def close_day_cli(close_date, notes):
    """Write the cash closing for one day."""
    close_date = close_date or local_now().date().isoformat()
    try:
        closing = cash_closing_service.close_day(close_date, notes=notes)
    except OrderCoreError as e:
        _fail(str(e))

    click.echo(f"PASS Closed {closing.close_date.isoformat()}")
    click.echo(f"     Transactions: {closing.summary_json.get('transaction_count', 0)}")
    click.echo(f"     Orders:       {closing.total_orders}")
    click.echo(f"     Income  USD {closing.total_income_usd} / local {closing.total_income_local}")
    click.echo(f"     Expense USD {closing.total_expense_usd} / local {closing.total_expense_local}")


# =============================================================================
# INVENTORY
# =============================================================================

@click.group('inventory')
def inventory_group():
    """Stock ledger reconciliation."""
    pass


@inventory_group.command('verify')
@with_appcontext
def inventory_verify_cli():
    mismatches = stock_service.verify_stock_counters()
    if not mismatches:
        click.echo("PASS All variant counters match the ledger")
        return
    for row in mismatches:
        click.echo(
            f"WARN  variant {row['variant_id']}: cached={row['cached_stock']} ledger={row['ledger_stock']}"
        )
    raise SystemExit(1)


@inventory_group.command('rebuild')
@click.option('--variant-id', type=int, default=None)
@click.option('--all', 'rebuild_all', is_flag=True, help='Rebuild every mismatched variant')
@with_appcontext
def inventory_rebuild_cli(variant_id, rebuild_all):
    if variant_id is None and not rebuild_all:
        _fail("Pass --variant-id or --all")

    ids = [variant_id] if variant_id is not None else [
        row["variant_id"] for row in stock_service.verify_stock_counters()
    ]
    for vid in ids:
        try:
            variant = stock_service.rebuild_stock_counter(vid)
        except OrderCoreError as e:
            _fail(str(e))
        click.echo(f"PASS variant {vid}: stock={variant.stock}")
    if not ids:
        click.echo("PASS Nothing to rebuild")


# =============================================================================
# CREDIT
# =============================================================================

@click.group('credit')
def credit_group():
    """Store-credit ledger reconciliation."""
    pass


@credit_group.command('verify')
@with_appcontext
def credit_verify_cli():
    mismatches = credit_service.verify_credit_balances()
    if not mismatches:
        click.echo("PASS All profile balances match their history")
        return
    for row in mismatches:
        click.echo(
            f"WARN  profile {row['profile_id']}: cached={row['cached_balance']} ledger={row['ledger_balance']}"
        )
    raise SystemExit(1)


# =============================================================================
# WEBHOOKS
# =============================================================================

@click.group('webhooks')
def webhooks_group():
    """Outbound webhook delivery log."""
    pass


@webhooks_group.command('failed')
@click.option('--limit', type=int, default=50)
@with_appcontext
def webhooks_failed_cli(limit):
    deliveries = webhooks.list_deliveries(status=DELIVERY_STATUS_FAILED, limit=limit)
    if not deliveries:
        click.echo("PASS No failed deliveries")
        return
    for d in deliveries:
        click.echo(f"{d.id:>6}  {d.idempotency_key:<40} attempts={d.attempts} error={d.last_error}")


@webhooks_group.command('redeliver')
@click.argument('delivery_id', type=int)
@click.option('--url', default=None, help='Send to this URL instead of the recorded one')
@with_appcontext
def webhooks_redeliver_cli(delivery_id, url):
    delivery = webhooks.redeliver(delivery_id, url=url)
    if delivery is None:
        _fail(f"Delivery {delivery_id} not found")
    if delivery.status == DELIVERY_STATUS_SENT:
        click.echo(f"PASS {delivery.idempotency_key} sent ({delivery.response_status})")
    else:
        _fail(f"{delivery.idempotency_key} {delivery.status}: {delivery.last_error}")


# =============================================================================
# SETTINGS
# =============================================================================

@click.group('settings')
def settings_group():
    """Store settings."""
    pass


@settings_group.command('set-rate')
@click.argument('rate')
@with_appcontext
def set_rate_cli(rate):
    """Set the USD -> local exchange rate (operator action, admin capability)."""
    try:
        row = settings_service.set_exchange_rate(rate, is_admin=True)
    except OrderCoreError as e:
        _fail(str(e))
    click.echo(f"PASS Exchange rate set to {row.exchange_rate} {row.local_currency}/USD")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(finance_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(credit_group)
    app.cli.add_command(webhooks_group)
    app.cli.add_command(settings_group)
