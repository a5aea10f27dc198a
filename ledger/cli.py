"""
Administrative commands for the video ledger.

Usage:
    video-ledger [OPTIONS] COMMAND [ARGS]...

Every command goes through LedgerService, so the same guards apply as on
the HTTP boundary and running a command twice leaves the same state
(``add-credits`` excepted, it always adds).
"""
import logging

import click
from rich.console import Console
from rich.table import Table

from .config import get_settings
from .service import LedgerService, LedgerServiceError

console = Console()


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, verbose: bool):
    """Video ledger admin CLI."""
    settings = get_settings()
    logging.basicConfig(level=logging.DEBUG if verbose else settings.LOG_LEVEL)
    ctx.ensure_object(dict)
    if "service" not in ctx.obj:
        ctx.obj["service"] = LedgerService.from_settings(settings)


def _fail(error: LedgerServiceError) -> None:
    console.print(f"[red]Error:[/red] {error}")
    raise SystemExit(1)


@cli.command()
@click.argument("wallet")
@click.pass_context
def user(ctx, wallet: str):
    """Show a user's balances."""
    service: LedgerService = ctx.obj["service"]
    try:
        found = service.get_user_by_wallet(wallet)
    except LedgerServiceError as e:
        _fail(e)

    table = Table(title=f"User {found.username}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green", justify="right")
    table.add_row("Wallet", found.wallet_address)
    table.add_row("View credits", str(found.view_credits))
    table.add_row("Videos watched", str(len(found.videos_watched)))
    table.add_row("Videos unlocked", str(len(found.videos_unlocked)))
    table.add_row("Tips spent", str(found.total_tips_spent))
    table.add_row("Tips earned", str(found.total_tips_earned))
    console.print(table)


@cli.command("add-credits")
@click.argument("wallet")
@click.argument("credits", type=int)
@click.pass_context
def add_credits(ctx, wallet: str, credits: int):
    """Add view credits to a user."""
    service: LedgerService = ctx.obj["service"]
    try:
        updated = service.add_credits(wallet, credits)
    except LedgerServiceError as e:
        _fail(e)
    console.print(f"[green]Added {credits} credits[/green] to {updated.wallet_address}, balance {updated.view_credits}")


@cli.command("set-free")
@click.argument("video_id")
@click.option("--paid", is_flag=True, help="Mark the video as paid content instead")
@click.pass_context
def set_free(ctx, video_id: str, paid: bool):
    """Mark a video free (or paid with --paid)."""
    service: LedgerService = ctx.obj["service"]
    try:
        video = service.set_video_free(video_id, is_free=not paid)
    except LedgerServiceError as e:
        _fail(e)
    label = "free" if video.is_free else "paid"
    console.print(f"Video [cyan]{video.title}[/cyan] is now {label}")


@cli.command()
@click.argument("video_id")
@click.pass_context
def reconcile(ctx, video_id: str):
    """Rebuild a video's unlock count from its transactions."""
    service: LedgerService = ctx.obj["service"]
    try:
        result = service.reconcile_video(video_id)
    except LedgerServiceError as e:
        _fail(e)
    if result.repaired:
        console.print(
            f"[yellow]Repaired[/yellow] totalUnlocks {result.total_unlocks_before} -> {result.total_unlocks_after}"
        )
        if result.pending_settled or result.unlocks_restored:
            console.print(
                f"Settled {result.pending_settled} interrupted unlock(s), "
                f"restored {result.unlocks_restored} missing unlock(s)"
            )
    else:
        console.print(f"[green]OK[/green] totalUnlocks = {result.total_unlocks_after}")


if __name__ == "__main__":
    cli()
