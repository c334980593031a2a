"""PartnerMatch CLI - operate the matching store and pre-warm job."""

import asyncio

import click
from rich.console import Console
from rich.table import Table

from partnermatch import __version__
from partnermatch.config import PartnerMatchConfig, validate_config
from partnermatch.logging import setup_logging

console = Console()


def _load(ctx: click.Context) -> PartnerMatchConfig:
    return ctx.obj["config"]


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "config_path", type=click.Path(), help="Path to a TOML config file")
@click.pass_context
def cli(ctx: click.Context, config_path: str = None):
    """PartnerMatch - tag-based partner and team matching"""
    config = PartnerMatchConfig.load(config_path)
    setup_logging(
        level=config.log_level,
        log_file=config.log_file,
        json_format=config.log_json,
        instance_id=config.instance_id,
    )
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context):
    """Create the database schema."""
    from partnermatch.persistence.database import Database

    config = _load(ctx)

    async def execute():
        await Database(config.db_path).initialize()

    asyncio.run(execute())
    console.print(f"[green]✓ Database ready at {config.db_path}[/]")


@cli.command()
@click.pass_context
def prewarm(ctx: click.Context):
    """Refresh cached recommendation pages once."""
    from partnermatch.app import build

    config = _load(ctx)

    async def execute():
        app = build(config)
        await app.initialize()
        return await app.prewarm.run_once()

    report = asyncio.run(execute())

    if not report.ran:
        console.print("[yellow]⚠ Another instance holds the pre-warm lock; nothing done[/]")
        return

    console.print(f"[green]✓ Refreshed {len(report.refreshed)} subject(s)[/]")
    for subject_id, reason in sorted(report.failed.items()):
        console.print(f"[red]✗ Subject {subject_id}: {reason}[/]")


@cli.command()
@click.pass_context
def schedule(ctx: click.Context):
    """Run the daily pre-warm trigger until interrupted."""
    from partnermatch.app import build

    config = _load(ctx)
    if not config.prewarm.enabled:
        console.print("[yellow]Pre-warming is disabled in the configuration[/]")
        return

    async def execute():
        app = build(config)
        await app.initialize()
        app.prewarm.start()
        console.print(
            f"[dim]Pre-warming {len(app.prewarm.watch_list)} subject(s) daily at "
            f"{config.prewarm.trigger_time}. Press Ctrl+C to stop.[/dim]"
        )
        try:
            while app.prewarm.running:
                await asyncio.sleep(1)
        finally:
            app.prewarm.stop()

    try:
        asyncio.run(execute())
    except KeyboardInterrupt:
        console.print("\n[dim]Scheduler stopped[/dim]")


@cli.command()
@click.argument("user_id", type=int)
@click.option("--limit", "-n", default=10, help="Number of matches (1-20)")
@click.pass_context
def match(ctx: click.Context, user_id: int, limit: int):
    """Show the users whose tags are closest to USER_ID's."""
    from partnermatch.app import build

    config = _load(ctx)

    async def execute():
        app = build(config)
        await app.initialize()
        return await app.ranker.match_users(user_id, limit)

    result = asyncio.run(execute())

    if not result.success:
        console.print(f"[red]✗ {result.error}[/]")
        return

    if not result.value:
        console.print("[yellow]No matches found[/]")
        return

    table = Table(title=f"Matches for user {user_id}", show_header=True, header_style="bold magenta")
    table.add_column("ID", justify="right", style="cyan")
    table.add_column("Account", style="white")
    table.add_column("Name", style="white")
    table.add_column("Tags", style="yellow")
    table.add_column("Distance", justify="right", style="green")

    for matched in result.value:
        user = matched.user
        table.add_row(
            str(user.id),
            user.user_account,
            user.username or "",
            ", ".join(user.tags),
            str(matched.distance),
        )

    console.print(table)


@cli.command("check-config")
@click.pass_context
def check_config(ctx: click.Context):
    """Validate the configuration and report warnings."""
    config = _load(ctx)
    warnings = validate_config(config)

    console.print(f"[dim]Database: {config.db_path}[/dim]")
    if not warnings:
        console.print("[green]✓ Configuration OK[/]")
        return

    for warning in warnings:
        console.print(f"[yellow]⚠ {warning}[/]")


if __name__ == "__main__":
    cli()
