"""
pgbranch command line interface.

Provides commands for creating, listing, checking, deleting and cleaning
up database branches.
"""
import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple

import click

from .config.settings import settings
from .services.database import DatabaseBranchManager, BranchError
from .utils.logging_config import setup_logging


@dataclass
class CliContext:
    """Global options shared by all commands"""
    url: Optional[str]
    prefix: str
    verbose: bool


def get_branch_manager(cli_ctx: CliContext) -> DatabaseBranchManager:
    """
    Create a DatabaseBranchManager from the global options.

    Pool sizing and settle timing come from the environment settings.
    """
    config = settings.model_copy(update={"DATABASE_URL": cli_ctx.url, "DB_PREFIX": cli_ctx.prefix})
    return DatabaseBranchManager.from_settings(config)


def run_with_manager(ctx: click.Context, operation: Callable[[DatabaseBranchManager], Awaitable[Any]]) -> Any:
    """
    Run an async operation against a fresh manager and close it afterwards.

    Branch errors are reported on stderr and exit with status 1.
    """
    cli_ctx: CliContext = ctx.obj
    if not cli_ctx.url:
        click.echo(
            "Database URL is required. Set DATABASE_URL environment variable or use --url option",
            err=True
        )
        ctx.exit(1)

    try:
        manager = get_branch_manager(cli_ctx)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)

    async def runner():
        try:
            return await operation(manager)
        finally:
            await manager.close()

    try:
        return asyncio.run(runner())
    except BranchError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)


@click.group()
@click.option(
    '--url',
    '-u',
    default=lambda: settings.DATABASE_URL,
    help='PostgreSQL connection URL (default: $DATABASE_URL)',
)
@click.option(
    '--prefix',
    default=lambda: settings.DB_PREFIX,
    show_default='db_',
    help='Database name prefix',
)
@click.option(
    '--verbose',
    is_flag=True,
    help='Enable verbose output',
)
@click.version_option(version=settings.APP_VERSION, prog_name='pgbranch')
@click.pass_context
def cli(ctx, url: Optional[str], prefix: str, verbose: bool):
    """PostgreSQL database branching tool."""
    setup_logging("INFO" if verbose else "WARNING")
    ctx.obj = CliContext(url=url, prefix=prefix, verbose=verbose)


@cli.command('create')
@click.argument('name')
@click.option(
    '--source',
    '-s',
    default=lambda: settings.SOURCE_DATABASE,
    show_default='production',
    help='Source database name',
)
@click.pass_context
def create_branch(ctx, name: str, source: str):
    """
    Create a new database branch.

    Examples:

        pgbranch create feature-login --source app_template
    """
    cli_ctx: CliContext = ctx.obj
    if cli_ctx.verbose:
        click.echo(f"Creating branch '{name}' from '{source}'...")

    branch_url = run_with_manager(ctx, lambda m: m.create_branch(name, source))

    click.echo("Branch created successfully!")
    click.echo(f"Connection URL: {branch_url}")

    if cli_ctx.verbose:
        click.echo("Branch details:")
        click.echo(f"   Name: {name}")
        click.echo(f"   Source: {source}")
        click.echo(f"   Prefix: {cli_ctx.prefix}")


@cli.command('delete')
@click.argument('name')
@click.option(
    '--force',
    '-f',
    is_flag=True,
    help='Delete without confirmation',
)
@click.pass_context
def delete_branch(ctx, name: str, force: bool):
    """Delete a database branch."""
    if not force:
        if not click.confirm(f"Are you sure you want to delete branch '{name}'?", default=False):
            click.echo("Deletion cancelled")
            return

    if ctx.obj.verbose:
        click.echo(f"Deleting branch '{name}'...")

    run_with_manager(ctx, lambda m: m.delete_branch(name))
    click.echo(f"Branch '{name}' deleted successfully!")


@cli.command('list')
@click.option(
    '--pattern',
    '-p',
    default=None,
    help='SQL LIKE pattern for branch names (default: <prefix>%)',
)
@click.option(
    '--json',
    'as_json',
    is_flag=True,
    help='Output as JSON',
)
@click.pass_context
def list_branches(ctx, pattern: Optional[str], as_json: bool):
    """List database branches."""
    if ctx.obj.verbose:
        click.echo("Listing database branches...")

    branches = run_with_manager(ctx, lambda m: m.list_branches(pattern))

    if as_json:
        click.echo(json.dumps([b.to_dict() for b in branches], indent=2))
        return

    if not branches:
        click.echo("No branches found")
        return

    click.echo(f"Found {len(branches)} branches:")
    click.echo()
    click.echo(f"{'Name':<30}{'Size':<12}Connections")
    click.echo("-" * 50)
    for branch in branches:
        click.echo(f"{branch.name:<30}{branch.size:<12}{branch.active_connections}")


cli.add_command(list_branches, name='ls')


@cli.command('exists')
@click.argument('name')
@click.pass_context
def branch_exists(ctx, name: str):
    """Check if a database branch exists (exit status 1 if not)."""
    async def check(manager: DatabaseBranchManager) -> Tuple[bool, str]:
        return await manager.branch_exists(name), manager.get_connection_url(name)

    exists, url = run_with_manager(ctx, check)

    if not exists:
        click.echo(f"Branch '{name}' does not exist")
        ctx.exit(1)

    click.echo(f"Branch '{name}' exists")
    if ctx.obj.verbose:
        click.echo(f"Connection URL: {url}")


@cli.command('cleanup')
@click.option(
    '--dry-run',
    is_flag=True,
    help='Show what would be deleted without deleting',
)
@click.option(
    '--exclude',
    '-e',
    multiple=True,
    help='Branch name to keep (repeatable)',
)
@click.pass_context
def cleanup_branches(ctx, dry_run: bool, exclude: Tuple[str, ...]):
    """
    Clean up idle database branches.

    Branches with no active connections are deleted, except excluded ones
    and any whose name contains "production" or "staging".
    """
    click.echo("Scanning for branches to cleanup...")

    result = run_with_manager(ctx, lambda m: m.cleanup_branches(dry_run=dry_run, exclude=exclude))

    if not result.candidates:
        click.echo("No branches found for cleanup")
        return

    click.echo(f"Found {len(result.candidates)} branches for cleanup:")
    for branch in result.candidates:
        click.echo(f"  - {branch.name} ({branch.size}, {branch.active_connections} connections)")

    if result.dry_run:
        click.echo()
        click.echo("DRY RUN: These branches would be deleted")
        return

    click.echo()
    for outcome in result.outcomes:
        if outcome.error:
            click.echo(f"  Failed to delete {outcome.branch}: {outcome.error}", err=True)
        else:
            click.echo(f"  Deleted {outcome.branch}")

    click.echo()
    click.echo(f"Cleanup completed! {result.deleted} deleted, {result.failed} failed")


def main():
    cli(prog_name='pgbranch')


if __name__ == '__main__':
    main()
