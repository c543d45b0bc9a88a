"""CLI for GrantKeeper account administration."""
import asyncio
import json
import sys

import click

from grantkeeper.dependencies import get_services
from grantkeeper.domain.errors import AccountNotFoundError, GrantKeeperError
from grantkeeper.domain.models import ADMIN_CREATED_REQUESTER, Account
from grantkeeper.jobs.telemetry import ingest_status_file
from grantkeeper.logging_hardening import setup_logging_redaction
from grantkeeper.settings import settings

CLI_ACTOR = "cli"


def _run(coro):
    """Run a coroutine, turning domain errors into a non-zero exit."""
    try:
        return asyncio.run(coro)
    except GrantKeeperError as e:
        click.echo(f"Error [{e.code}]: {e.message}", err=True)
        sys.exit(1)


async def _resolve(ref: str) -> Account:
    """Look an account up by id, then by name."""
    orchestrator = get_services().orchestrator
    try:
        return await orchestrator.get_account(ref)
    except AccountNotFoundError:
        account = await orchestrator.get_by_name(ref)
        if account is None:
            raise
        return account


def _echo_account(account: Account) -> None:
    click.echo(json.dumps(account.public_view(), indent=2))


@click.group()
def cli():
    """GrantKeeper CLI."""
    setup_logging_redaction()


@cli.group()
def accounts():
    """Manage VPN accounts."""
    pass


@accounts.command("list")
@click.option("--format", "fmt", type=click.Choice(["table", "json"]), default="table")
def list_accounts(fmt: str):
    """List all accounts."""
    items = _run(get_services().orchestrator.list_accounts())

    if fmt == "json":
        click.echo(json.dumps([a.public_view() for a in items], indent=2))
        return

    click.echo(f"\n{'Name':<20} {'Status':<10} {'Expires':<12} {'Days':>5} {'Provisioning':<18} {'ID':<36}")
    click.echo("-" * 106)
    for a in items:
        status = "active" if a.active else "disabled"
        click.echo(
            f"{a.name:<20} {status:<10} {a.expires_at.date().isoformat():<12} "
            f"{a.days_until_expiry():>5} {a.provisioning_state.value:<18} {a.id:<36}"
        )


@accounts.command("create")
@click.argument("name")
@click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True, help="Account password")
@click.option("--requester-id", default=ADMIN_CREATED_REQUESTER, type=int, help="Owning requester (0 = admin-created)")
@click.option("--notes", default=None, help="Free-form notes")
def create_account(name: str, password: str, requester_id: int, notes: str):
    """Create and provision an account."""
    account = _run(get_services().orchestrator.create(requester_id, name, password, actor_id=CLI_ACTOR, notes=notes))
    click.echo(f"✓ Account '{account.name}' created, expires {account.expires_at.date().isoformat()}")
    _echo_account(account)


@accounts.command("delete")
@click.argument("account")
@click.confirmation_option(prompt="Delete this account and its credential?")
def delete_account(account: str):
    """Delete an account by id or name."""
    async def _delete():
        target = await _resolve(account)
        return target, await get_services().orchestrator.delete(target.id, CLI_ACTOR)

    target, cleanup_complete = _run(_delete())
    click.echo(f"✓ Account '{target.name}' deleted")
    if not cleanup_complete:
        click.echo("Warning: credential or profile cleanup was incomplete, check the logs", err=True)


def _toggle(account: str, desired: bool) -> Account:
    async def _set():
        target = await _resolve(account)
        return await get_services().orchestrator.set_active(target.id, desired, CLI_ACTOR)
    return _run(_set())


@accounts.command("enable")
@click.argument("account")
def enable_account(account: str):
    """Enable an account."""
    updated = _toggle(account, True)
    click.echo(f"✓ Account '{updated.name}' enabled")


@accounts.command("disable")
@click.argument("account")
def disable_account(account: str):
    """Disable an account."""
    updated = _toggle(account, False)
    click.echo(f"✓ Account '{updated.name}' disabled")


@accounts.command("regenerate")
@click.argument("account")
def regenerate_profile(account: str):
    """Generate a fresh connection profile."""
    async def _regenerate():
        target = await _resolve(account)
        return await get_services().orchestrator.regenerate(target.id, CLI_ACTOR)

    result = _run(_regenerate())
    click.echo(f"✓ Profile regenerated: {result.account.profile_artifact_ref}")
    if result.previous_artifact_ref:
        click.echo(f"  previous: {result.previous_artifact_ref}")


@accounts.command("finish")
@click.argument("account")
@click.option("--password", default=None, help="Required when the credential step failed")
def finish_provisioning(account: str, password: str):
    """Retry the failed provisioning steps of an account."""
    async def _finish():
        target = await _resolve(account)
        return await get_services().orchestrator.finish_provisioning(target.id, password, CLI_ACTOR)

    updated = _run(_finish())
    click.echo(f"✓ Account '{updated.name}' is {updated.provisioning_state.value}")


@accounts.command("extend")
@click.argument("account")
@click.option("--days", required=True, type=int, help="Days to add to the validity")
def extend_account(account: str, days: int):
    """Extend an account's validity."""
    async def _extend():
        target = await _resolve(account)
        return await get_services().orchestrator.extend(target.id, days, CLI_ACTOR)

    updated = _run(_extend())
    click.echo(f"✓ Account '{updated.name}' now expires {updated.expires_at.date().isoformat()}")


@cli.command("reconcile")
def reconcile():
    """Run one expiration pass now."""
    report = _run(get_services().reconciler.run_once())
    if report is None:
        click.echo("Scan already in progress, skipped")
        return
    click.echo(f"Scanned {report.scanned}, disabled {len(report.deactivated)}, failed {len(report.failed)}")
    for account_id in report.failed:
        click.echo(f"  failed: {account_id}", err=True)


@cli.command("init-db")
def init_db_command():
    """Create database tables from the models."""
    from grantkeeper.adapters.sql.session import build_engine, init_db
    init_db(build_engine(settings.database_url))
    click.echo(f"✓ Schema ready at {settings.database_url}")


@cli.command("ingest-status")
@click.argument("status_file", type=click.Path(exists=True, dir_okay=False))
def ingest_status(status_file: str):
    """Apply an OpenVPN status log to account telemetry."""
    report = _run(ingest_status_file(get_services().telemetry, status_file))
    click.echo(f"Observed {report.observed} connections, updated {len(report.updated)} accounts")
    for name in report.unknown:
        click.echo(f"  unknown client: {name}")


if __name__ == "__main__":
    cli()
