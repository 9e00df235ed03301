# Overview: Flask CLI command groups for bootstrap, agents, stock maintenance and the print queue.

# backend/canteen/cli.py
# Commands Legend (run from the backend directory, FLASK_APP=wsgi.py):
#
# System bootstrap:
# - python -m flask system init --username ops --password "Password123"
#   Create tables (if missing) and the cross-theater operator account.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables.
#
# Theaters:
# - python -m flask theaters list
# - python -m flask theaters create --name "Screen City" --admin-username sc-admin --admin-password "..."
#
# Agents:
# - python -m flask agents supervise
#   Run the agent supervisor in the foreground for every enabled entry of the
#   agent config file. SIGTERM/SIGINT shut down; SIGHUP reloads settings.
#
# Stock ledger maintenance:
# - python -m flask stock repair-chain --theater 1 --product 5 --ledger cafe --from 2024-01
# - python -m flask stock expire
#
# Print queue:
# - python -m flask print drain [--theater 1]
# - python -m flask print failed [--theater 1]
# - python -m flask print retry 42

import signal
import threading

import click
from flask import current_app
from flask.cli import with_appcontext

from .agents import EXTENSION_KEY as AGENTS_KEY, AgentCredentials, AgentSupervisor, get_supervisor
from .agents.config_file import load_agent_config
from .errors import ApiError
from .extensions import db
from .models.stock import LEDGER_KINDS, LEDGER_THEATER
from .services import auth_service, print_service, settings_service, stock_ledger_service, theater_service
from .services.store_service import get_gate


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--username', default='operator', show_default=True, help='Operator username')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True)
@with_appcontext
def init_system(username, password):
    """Create missing tables and a cross-theater operator account (idempotent)."""
    db.create_all()
    click.echo("PASS Tables ready")
    if auth_service.username_taken(username):
        click.echo(f"PASS Operator '{username}' already exists")
        return
    try:
        auth_service.create_user(username, password, theater_id=None, is_super_admin=True)
    except ApiError as exc:
        raise click.ClickException(exc.message)
    click.echo(f"PASS Created operator '{username}'")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Confirm destructive reset')
@with_appcontext
def reset_db(yes):
    """DEV/TEST only: drop and recreate all tables."""
    if not yes:
        raise click.ClickException("Refusing to reset without --yes")
    db.drop_all()
    db.create_all()
    click.echo("PASS Database reset")


@click.group('theaters')
def theaters_group():
    """Theater (tenant) management."""


@theaters_group.command('list')
@with_appcontext
def list_theaters():
    theaters = theater_service.list_theaters(include_inactive=True)
    if not theaters:
        click.echo("No theaters found.")
        return
    for t in theaters:
        status = "active" if t.is_active else "inactive"
        click.echo(f"{t.id:>4}  {t.name:<32} {t.code or '-':<10} prefix={t.order_prefix:<6} {status}")


@theaters_group.command('create')
@click.option('--name', required=True)
@click.option('--code', default=None)
@click.option('--order-prefix', default='ORD', show_default=True)
@click.option('--admin-username', default=None)
@click.option('--admin-password', default=None)
@click.option('--agent-username', default=None)
@click.option('--agent-password', default=None)
@with_appcontext
def create_theater_cli(name, code, order_prefix, admin_username, admin_password, agent_username, agent_password):
    try:
        theater = theater_service.create_theater(
            name,
            code=code,
            order_prefix=order_prefix,
            admin_username=admin_username,
            admin_password=admin_password,
            agent_username=agent_username,
            agent_password=agent_password,
        )
    except ApiError as exc:
        raise click.ClickException(exc.message)
    click.echo(f"PASS Created theater {theater.name} (ID: {theater.id})")


@click.group('agents')
def agents_group():
    """POS agent supervision."""


@agents_group.command('supervise')
@with_appcontext
def supervise_agents():
    """
    Start an agent for every enabled entry in the agent config file and
    supervise them, with the print worker, until SIGTERM/SIGINT.
    """
    app = current_app._get_current_object()
    if not get_gate().wait_until_ready():
        raise click.ClickException(f"Data store not reachable: {get_gate().last_error}")
    supervisor = get_supervisor()
    if supervisor is None:
        supervisor = AgentSupervisor.from_config(app)
        app.extensions[AGENTS_KEY] = supervisor
        supervisor.start_monitor()
    dispatcher = print_service.get_dispatcher()
    dispatcher.start()

    config = load_agent_config(supervisor.config_path)
    entries = [e for e in config["agents"] if e.get("enabled", True)]
    for entry in entries:
        credentials = AgentCredentials(
            theater_id=int(entry["theaterId"]),
            username=entry["username"],
            password=entry["password"],
            pin=entry.get("pin"),
            label=entry.get("label"),
        )
        try:
            result = supervisor.start(credentials.theater_id, credentials)
        except ApiError as exc:
            click.echo(f"FAIL theater {credentials.theater_id}: {exc.message}", err=True)
            continue
        click.echo(f"{result:<16} theater {credentials.theater_id} ({credentials.display_label})")

    stop = threading.Event()

    def _terminate(signum, _frame):
        click.echo(f"Received signal {signum}, shutting down agents...")
        stop.set()

    def _reload(_signum, _frame):
        with app.app_context():
            settings_service.reload_settings()
        click.echo("Settings reloaded")

    signal.signal(signal.SIGTERM, _terminate)
    signal.signal(signal.SIGINT, _terminate)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, _reload)

    click.echo(f"Supervising {len(entries)} agent(s). Press Ctrl+C to stop.")
    while not stop.wait(1.0):
        pass
    dispatcher.stop()
    supervisor.shutdown()


@agents_group.command('status')
@with_appcontext
def agents_status():
    supervisor = get_supervisor()
    if supervisor is None:
        click.echo("Agent supervisor is not enabled in this process.")
        return
    for row in supervisor.status():
        state = "healthy" if row["healthy"] else "UNHEALTHY"
        click.echo(f"{row['theater_id']:>4}  pid={row['pid']}  up={row['uptime']:.0f}s  {state}  {row['label']}")


@click.group('stock')
def stock_group():
    """Monthly stock ledger maintenance."""


@stock_group.command('repair-chain')
@click.option('--theater', 'theater_id', type=int, required=True)
@click.option('--product', 'product_id', type=int, required=True)
@click.option('--ledger', type=click.Choice(LEDGER_KINDS), default=LEDGER_THEATER, show_default=True)
@click.option('--from', 'from_period', required=True, help='First month to repair, YYYY-MM')
@with_appcontext
def repair_chain_cli(theater_id, product_id, ledger, from_period):
    """Rewrite carry-in balances from the given month forward."""
    try:
        year, month = (int(part) for part in from_period.split("-", 1))
    except ValueError:
        raise click.BadParameter("expected YYYY-MM", param_hint="--from")
    repaired = stock_ledger_service.repair_chain(
        theater_id, product_id, ledger=ledger, from_year=year, from_month=month,
    )
    click.echo(f"Repaired {repaired} month document(s).")


@stock_group.command('expire')
@with_appcontext
def expire_cli():
    """Post EXPIRED entries for batches past their expiry date."""
    posted = stock_ledger_service.auto_expire_all()
    click.echo(f"Posted {posted} expiry entr{'y' if posted == 1 else 'ies'}.")


@click.group('print')
def print_group():
    """Print queue inspection and draining."""


@print_group.command('drain')
@click.option('--theater', 'theater_id', type=int, default=None)
@with_appcontext
def drain_cli(theater_id):
    """Deliver due jobs once (needs an agent supervisor in this process)."""
    if theater_id is not None:
        outcomes = {theater_id: print_service.drain_theater(theater_id)}
    else:
        outcomes = print_service.run_once()
    if not outcomes:
        click.echo("Nothing to deliver.")
    for tid, results in sorted(outcomes.items()):
        click.echo(f"theater {tid}: {', '.join(results) or 'idle'}")


@print_group.command('failed')
@click.option('--theater', 'theater_id', type=int, default=None)
@click.option('--limit', type=int, default=50, show_default=True)
@with_appcontext
def failed_cli(theater_id, limit):
    jobs = print_service.list_jobs(theater_id=theater_id, status="FAILED", limit=limit)
    if not jobs:
        click.echo("No failed jobs.")
        return
    for job in jobs:
        order = job["metadata"].get("orderNumber") or "-"
        click.echo(f"{job['id']:>6}  theater={job['theater_id']:<4} order={order:<20} attempts={job['attempts']}  {job['last_error'] or ''}")


@print_group.command('retry')
@click.argument('job_id', type=int)
@with_appcontext
def retry_cli(job_id):
    try:
        job = print_service.retry_job(job_id)
    except ApiError as exc:
        raise click.ClickException(exc.message)
    click.echo(f"Re-queued job {job.id} for theater {job.theater_id}.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(theaters_group)
    app.cli.add_command(agents_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(print_group)
