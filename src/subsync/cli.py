"""Typer CLI entrypoint for subsync."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from subsync.application.services import ConsistencyReport
from subsync.application.workers import CheckResult
from subsync.config import get_settings
from subsync.domain.entities import StagingPlaylist, Subscription
from subsync.domain.exceptions import DomainException
from subsync.infrastructure.lifecycle import SyncEngine, open_engine
from subsync.infrastructure.observability import configure_logging

app = typer.Typer(
    help="Keep local library in sync with subscribed playlists and channels.",
    no_args_is_help=True,
    rich_markup_mode=None,
)

console = Console()

T = TypeVar("T")


def _run(action: Callable[[SyncEngine], Awaitable[T]], detect_library: bool = True) -> T:
    """Open an engine, run one action on it, close it again."""
    settings = get_settings()
    configure_logging(
        log_level=settings.log_level,
        json_format=settings.observability.log_json_format,
        app_name=settings.app_name,
    )

    async def runner() -> T:
        async with open_engine(settings, detect_library=detect_library) as engine:
            return await action(engine)

    try:
        return asyncio.run(runner())
    except DomainException as exc:
        console.print(exc.message, style="red")
        raise typer.Exit(code=1) from exc


def _render_subscriptions(subscriptions: list[Subscription]) -> Table:
    table = Table(
        title=f"Subscriptions · {len(subscriptions)}",
        box=box.SIMPLE_HEAD,
        show_lines=False,
    )
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Title", style="cyan")
    table.add_column("Format", style="magenta")
    table.add_column("Items", justify="right", style="green")
    table.add_column("Remote", justify="right")
    table.add_column("Last checked", style="yellow")
    for sub in subscriptions:
        table.add_row(
            sub.id,
            sub.display_title + (" (skip)" if sub.skip else ""),
            f"{sub.format} {sub.quality}".strip(),
            str(sub.item_count),
            str(sub.remote_item_count),
            sub.last_checked.strftime("%Y-%m-%d %H:%M") if sub.last_checked else "never",
        )
    return table


def _render_check_results(results: list[CheckResult]) -> Table:
    table = Table(title="Check results", box=box.SIMPLE_HEAD)
    table.add_column("Subscription", style="cyan")
    for column in ("New", "Dup", "Skip", "Queued", "Fetched", "Linked", "Failed"):
        table.add_column(column, justify="right")
    table.add_column("Note", style="yellow", overflow="fold")
    for r in results:
        note = r.error or ("timed out" if r.timed_out else "")
        table.add_row(
            r.title,
            str(r.new_items),
            str(r.duplicates),
            str(r.skipped),
            str(r.enqueued),
            str(r.completed),
            str(r.linked),
            str(r.failed),
            note,
        )
    return table


def _render_staging(playlists: list[StagingPlaylist]) -> Table:
    table = Table(title=f"Staged library folders · {len(playlists)}", box=box.SIMPLE_HEAD)
    table.add_column("Staging ID", style="dim", no_wrap=True)
    table.add_column("Folder", style="cyan")
    table.add_column("Detected playlist", style="magenta")
    table.add_column("Items", justify="right", style="green")
    table.add_column("Duplicates", justify="right")
    table.add_column("Confidence", justify="right", style="yellow")
    for p in playlists:
        table.add_row(
            p.id,
            p.library_folder_name,
            p.detected_name or "-",
            str(p.item_count),
            str(sum(1 for i in p.items if i.is_duplicate)),
            f"{p.confidence:.0%}",
        )
    return table


@app.command("add", help="Subscribe to a playlist or channel.")
def add(
    url: str = typer.Argument(..., help="Playlist or channel URL."),
    title: str | None = typer.Option(None, "--title", help="Folder/playlist name in the library."),
    format: str = typer.Option("best", "--format", help="best, mp3 or a format selector."),
    quality: str = typer.Option("", "--quality", help="Quality suffix for the format selector."),
) -> None:
    subscription = _run(
        lambda engine: engine.store.add_subscription(
            url, title=title, format=format, quality=quality
        )
    )
    console.print(f"Subscribed: {subscription.display_title} ({subscription.id})", style="green")


@app.command("list", help="Show subscriptions.")
def list_subscriptions() -> None:
    subscriptions = _run(lambda engine: engine.store.list_subscriptions(), detect_library=False)
    if not subscriptions:
        console.print("No subscriptions yet. Use `subsync add URL` to create one.", style="yellow")
        raise typer.Exit(code=0)
    console.print(_render_subscriptions(subscriptions))


@app.command("remove", help="Delete a subscription.")
def remove(
    subscription_id: str = typer.Argument(..., help="Subscription ID."),
    delete_items: bool = typer.Option(
        False,
        "--delete-items",
        help="Also delete its item history (otherwise kept for duplicate detection).",
        is_flag=True,
    ),
) -> None:
    affected = _run(
        lambda engine: engine.store.delete_subscription(subscription_id, delete_items),
        detect_library=False,
    )
    verb = "deleted" if delete_items else "detached"
    console.print(f"Subscription removed, {affected} item(s) {verb}.", style="green")


@app.command("check", help="Check subscriptions for new items and download them.")
def check(
    subscription_id: str | None = typer.Option(
        None, "--subscription", help="Only check this subscription."
    ),
) -> None:
    async def action(engine: SyncEngine) -> list[CheckResult]:
        if subscription_id:
            return [await engine.checker.check_one(subscription_id)]
        return await engine.checker.check_all()

    results = _run(action)
    if not results:
        console.print("Nothing to check.", style="yellow")
        raise typer.Exit(code=0)
    console.print(_render_check_results(results))
    if any(r.error for r in results):
        raise typer.Exit(code=1)


@app.command("cleanup-locks", help="Release processing locks older than the threshold.")
def cleanup_locks(
    hours: float | None = typer.Option(
        None, "--hours", help="Age threshold in hours (default from settings)."
    ),
) -> None:
    def action(engine: SyncEngine) -> Awaitable[int]:
        threshold = hours if hours is not None else engine.settings.database.stale_lock_hours
        return engine.store.cleanup_stale_locks(threshold)

    released = _run(action, detect_library=False)
    console.print(f"Released {released} stale lock(s).", style="green")


@app.command("scan-library", help="Stage existing library folders for migration.")
def scan_library() -> None:
    playlists = _run(lambda engine: engine.library_sync.scan_library())
    if not playlists:
        console.print("No library folders with platform items found.", style="yellow")
        raise typer.Exit(code=0)
    console.print(_render_staging(playlists))


@app.command("migrate-staging", help="Turn a staged library folder into a subscription.")
def migrate_staging(
    staging_id: str = typer.Argument(..., help="Staging ID from `scan-library`."),
    url: str = typer.Argument(..., help="Playlist URL the folder came from."),
    title: str | None = typer.Option(None, "--title", help="Override the detected name."),
) -> None:
    subscription = _run(lambda engine: engine.library_sync.migrate(staging_id, url, title))
    console.print(
        f"Migrated into subscription {subscription.display_title} ({subscription.item_count} items).",
        style="green",
    )


@app.command("consistency", help="Compare the store with the library.")
def consistency(
    repair: bool = typer.Option(
        False,
        "--repair",
        help=(
            "Reset items missing from the library so they are fetched again, and "
            "record library-only items as done."
        ),
        is_flag=True,
    ),
) -> None:
    async def action(engine: SyncEngine) -> tuple[ConsistencyReport, int, int]:
        report = await engine.maintenance.check_consistency()
        if not repair:
            return report, 0, 0
        reset = await engine.maintenance.repair_missing_in_library(report)
        recorded = await engine.maintenance.repair_missing_in_store(report)
        return report, reset, recorded

    report, reset, recorded = _run(action)
    table = Table(title="Library consistency", box=box.SIMPLE_HEAD)
    table.add_column("Check", style="cyan")
    table.add_column("Count", justify="right")
    counts: dict[str, Any] = report.to_dict()
    for key, value in counts.items():
        table.add_row(key.replace("_", " "), str(value))
    console.print(table)
    if repair:
        console.print(f"Reset {reset} item(s) for re-download.", style="green")
        console.print(f"Recorded {recorded} library-only item(s) as done.", style="green")
    elif not report.is_consistent:
        raise typer.Exit(code=1)


@app.command("merge-duplicates", help="Merge library items that share a video id.")
def merge_duplicates(
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Only list the duplicate groups.", is_flag=True
    ),
) -> None:
    if dry_run:
        groups = _run(lambda engine: engine.maintenance.find_library_duplicates())
        if not groups:
            console.print("No duplicates in the library.", style="green")
            return
        table = Table(title=f"Library duplicates · {len(groups)}", box=box.SIMPLE_HEAD)
        table.add_column("Video ID", style="cyan", no_wrap=True)
        table.add_column("Keep", style="green")
        table.add_column("Trash", style="yellow", overflow="fold")
        for external_id, (keeper, *others) in groups.items():
            table.add_row(external_id, keeper.id, ", ".join(other.id for other in others))
        console.print(table)
        return

    report = _run(lambda engine: engine.maintenance.merge_library_duplicates())
    table = Table(title="Duplicate merge", box=box.SIMPLE_HEAD)
    table.add_column("Result", style="cyan")
    table.add_column("Count", justify="right")
    for key, value in report.to_dict().items():
        table.add_row(key.replace("_", " "), str(value))
    console.print(table)
    for error in report.errors:
        console.print(error, style="red")
    if report.errors:
        raise typer.Exit(code=1)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
