"""Command-line interface for BiblioPod.

This module provides a Typer-based CLI for managing a local BiblioPod library.

Commands:
- init: Create the database and payload directory
- status: Show library statistics and storage usage
- add-book: Add a book (optionally with its EPUB file)
- books: List books with reading progress
- progress: Record reading progress for a book
- seed: Populate an empty library with demo data
- export: Write a backup archive
- import: Merge a backup archive into the library
- clear: Delete all data
- metrics: Print Prometheus metrics

Example:
    $ bibliopod init
    $ bibliopod add-book --title "Moby-Dick" --author "Herman Melville" --file moby.epub
    $ bibliopod export backup.zip --with-files
    $ bibliopod --database other.db import backup.zip --only books,progress
"""

import asyncio
from pathlib import Path
from typing import Any, Coroutine, Optional, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from bibliopod.config import settings
from bibliopod.exceptions import BiblioPodError
from bibliopod.library import Library
from bibliopod.logging import setup_logging
from bibliopod.metrics import generate_metrics_output
from bibliopod.models import DataSelection
from bibliopod.models import Table as StoreTable
from bibliopod.utils import utc_now

T = TypeVar("T")

# Initialize CLI app
app = typer.Typer(
    name="bibliopod",
    help="Local e-book library store with backup archives",
    add_completion=False,
)
console = Console()


# =============================================================================
# Helper Functions
# =============================================================================


def configure_logging(verbose: bool = False) -> None:
    """Configure logging based on verbosity level."""
    setup_logging(
        level="DEBUG" if verbose else settings.log_level,
        json_logs=settings.log_json,
        colorize=not settings.log_json,
    )


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run async coroutine in a fresh event loop."""
    return asyncio.run(coro)


def open_library(ctx: typer.Context) -> Library:
    options = ctx.obj or {}
    return Library(
        database_path=options.get("database"),
        files_dir=options.get("files_dir"),
    )


def parse_selection(only: Optional[str]) -> DataSelection:
    """Turn ``--only books,progress`` into a DataSelection (default: everything)."""
    if not only:
        return DataSelection.all()
    names = [name.strip() for name in only.split(",") if name.strip()]
    return DataSelection.only(*names)


def fail(message: str) -> typer.Exit:
    console.print(f"\n❌ [bold red]{message}[/bold red]")
    return typer.Exit(code=1)


# =============================================================================
# Global Options
# =============================================================================


@app.callback()
def main_options(
    ctx: typer.Context,
    database: Optional[Path] = typer.Option(
        None,
        "--database",
        "-d",
        help="SQLite database path (default: DATABASE_PATH or data/bibliopod.db)",
    ),
    files_dir: Optional[Path] = typer.Option(
        None,
        "--files-dir",
        help="Book payload directory (default: FILES_DIR or data/book_files)",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose logging",
    ),
) -> None:
    """Manage a local BiblioPod library."""
    configure_logging(verbose)
    ctx.obj = {"database": database, "files_dir": files_dir}


# =============================================================================
# CLI Commands
# =============================================================================


@app.command()
def init(ctx: typer.Context) -> None:
    """Create the database and payload directory if they do not exist.

    Examples:
        $ bibliopod init
    """
    console.print("🏗️  [bold cyan]BiblioPod Initialization[/bold cyan]\n")

    async def _init() -> Library:
        library = open_library(ctx)
        await library.init()
        await library.close()
        return library

    try:
        library = run_async(_init())
    except BiblioPodError as e:
        raise fail(f"Initialization failed: {e}")

    console.print(f"📍 Database: [yellow]{library.db.database_path}[/yellow]")
    console.print(f"📂 Book files: [yellow]{library.blobs.directory.root}[/yellow]")
    console.print("\n✅ [bold green]Library ready[/bold green]")


@app.command()
def status(ctx: typer.Context) -> None:
    """Show record counts, storage usage and the local profile.

    Examples:
        $ bibliopod status
    """
    console.print("📊 [bold cyan]BiblioPod Status[/bold cyan]\n")

    async def _status() -> dict[str, Any]:
        async with open_library(ctx) as library:
            counts = {
                table: await library.entities.count(table)
                for table in (
                    StoreTable.BOOKS,
                    StoreTable.COLLECTIONS,
                    StoreTable.CHALLENGES,
                    StoreTable.HIGHLIGHTS,
                    StoreTable.BOOKMARKS,
                    StoreTable.READING_PROGRESS,
                )
            }
            return {
                "counts": counts,
                "usage": await library.get_storage_usage(),
                "user": await library.get_user(),
                "database": library.db.database_path,
            }

    try:
        info = run_async(_status())
    except BiblioPodError as e:
        raise fail(f"Status failed: {e}")

    stats_table = Table(title="Library Statistics")
    stats_table.add_column("Entity", style="cyan")
    stats_table.add_column("Count", justify="right", style="green")
    for table, count in info["counts"].items():
        stats_table.add_row(str(table).replace("_", " ").title(), f"{count:,}")
    console.print(stats_table)
    console.print()

    usage = info["usage"]
    quota = f" of {usage.quota_bytes:,} bytes ({usage.percentage}%)" if usage.quota_bytes else ""
    console.print(f"📍 Database: [yellow]{info['database']}[/yellow]")
    console.print(
        f"💾 Book files: [yellow]{usage.book_files}[/yellow] using "
        f"[yellow]{usage.formatted}[/yellow]{quota}"
    )
    user = info["user"]
    console.print(f"👤 Profile: [yellow]{user.name if user else 'none'}[/yellow]")


@app.command("add-book")
def add_book(
    ctx: typer.Context,
    title: str = typer.Option(..., "--title", "-t", help="Book title"),
    author: str = typer.Option("", "--author", "-a", help="Author name"),
    isbn: Optional[str] = typer.Option(None, "--isbn", help="Identifier (generated if omitted)"),
    genre: Optional[str] = typer.Option(None, "--genre", help="Genre label"),
    file: Optional[Path] = typer.Option(
        None,
        "--file",
        "-f",
        exists=True,
        dir_okay=False,
        readable=True,
        help="EPUB file to store with the book",
    ),
) -> None:
    """Add a book, optionally with its file.

    Examples:
        $ bibliopod add-book --title "Frankenstein" --author "Mary Shelley"
        $ bibliopod add-book -t "Moby-Dick" -f moby.epub --isbn 9780142437247
    """
    metadata: dict[str, Any] = {"title": title, "author": author, "genre": genre}
    if isbn:
        metadata["isbn"] = isbn

    async def _add():
        async with open_library(ctx) as library:
            if file is None:
                return await library.add_book(metadata)
            with open(file, "rb") as handle:
                return await library.add_book(metadata, handle, file_name=file.name)

    try:
        book = run_async(_add())
    except BiblioPodError as e:
        raise fail(f"Could not add book: {e}")

    size = f" ({book.file_size:,} bytes)" if book.file_size else ""
    console.print(f"✅ [bold green]Added {book.title!r}[/bold green] as [cyan]{book.isbn}[/cyan]{size}")


@app.command()
def books(ctx: typer.Context) -> None:
    """List books with their reading progress.

    Examples:
        $ bibliopod books
    """

    async def _books():
        async with open_library(ctx) as library:
            return await library.get_library()

    try:
        views = run_async(_books())
    except BiblioPodError as e:
        raise fail(f"Could not list books: {e}")

    if not views:
        console.print("📚 No books yet. Try [cyan]bibliopod seed[/cyan] or [cyan]add-book[/cyan].")
        return

    table = Table(title=f"Library ({len(views)} books)")
    table.add_column("ISBN", style="cyan")
    table.add_column("Title", style="bold")
    table.add_column("Author")
    table.add_column("Progress", justify="right", style="green")
    table.add_column("File", justify="center")
    for view in views:
        table.add_row(
            view.book.isbn,
            view.book.title,
            view.book.author,
            f"{view.current_percentage:g}%",
            "✓" if view.has_file else "",
        )
    console.print(table)


@app.command()
def progress(
    ctx: typer.Context,
    isbn: str = typer.Argument(..., help="Book identifier"),
    percentage: float = typer.Argument(..., min=0, max=100, help="Completion percentage"),
    cfi: Optional[str] = typer.Option(None, "--cfi", help="Resume position"),
) -> None:
    """Record reading progress for a book.

    Examples:
        $ bibliopod progress 9780142437247 42.5 --cfi "epubcfi(/6/14)"
    """

    async def _progress():
        async with open_library(ctx) as library:
            return await library.update_reading_progress(isbn, percentage, cfi, utc_now())

    try:
        record = run_async(_progress())
    except BiblioPodError as e:
        raise fail(f"Could not update progress: {e}")

    console.print(
        f"✅ [bold green]{record.isbn}[/bold green] at "
        f"[yellow]{record.current_percentage:g}%[/yellow]"
    )


@app.command()
def seed(ctx: typer.Context) -> None:
    """Populate an empty library with demo books, a collection and highlights.

    Examples:
        $ bibliopod seed
    """

    async def _seed():
        async with open_library(ctx) as library:
            return await library.initialize_demo_data()

    try:
        result = run_async(_seed())
    except BiblioPodError as e:
        raise fail(f"Seeding failed: {e}")

    if result.seeded:
        console.print(
            f"🌱 [bold green]Seeded {result.books} books, {result.collections} collection(s) "
            f"and {result.highlights} highlight(s)[/bold green]"
        )
    else:
        console.print("ℹ️  Library already has data; nothing seeded")


@app.command()
def export(
    ctx: typer.Context,
    output: Optional[Path] = typer.Argument(
        None, help="Archive path (default: data/export/bibliopod-backup-<date>.zip)"
    ),
    with_files: bool = typer.Option(
        False, "--with-files", help="Include book files in the archive"
    ),
    only: Optional[str] = typer.Option(
        None,
        "--only",
        help="Comma-separated data types: books,collections,highlights,progress,challenges,settings",
    ),
) -> None:
    """Write a backup archive.

    Examples:
        $ bibliopod export
        $ bibliopod export backup.zip --with-files --only books,progress
    """
    try:
        selection = parse_selection(only)
    except BiblioPodError as e:
        raise fail(str(e))

    target = output or settings.export_dir / f"bibliopod-backup-{utc_now().date().isoformat()}.zip"

    async def _export():
        async with open_library(ctx) as library:
            return await library.export_archive_to(target, selection, include_files=with_files)

    try:
        path = run_async(_export())
    except BiblioPodError as e:
        raise fail(f"Export failed: {e}")

    console.print(f"📦 [bold green]Exported {', '.join(selection.selected())}[/bold green]")
    console.print(f"📂 Archive: [yellow]{path}[/yellow]")


@app.command("import")
def import_(
    ctx: typer.Context,
    archive: Path = typer.Argument(
        ..., exists=True, dir_okay=False, readable=True, help="Backup archive to import"
    ),
    only: Optional[str] = typer.Option(
        None,
        "--only",
        help="Comma-separated data types to import (default: all)",
    ),
) -> None:
    """Merge a backup archive into the library.

    Examples:
        $ bibliopod import bibliopod-backup-2024-01-15.zip
    """
    try:
        selection = parse_selection(only)
    except BiblioPodError as e:
        raise fail(str(e))

    async def _import():
        async with open_library(ctx) as library:
            return await library.import_archive(archive, selection)

    try:
        result = run_async(_import())
    except BiblioPodError as e:
        raise fail(f"Import failed: {e}")

    if result.imported_count:
        console.print(f"✅ [bold green]Imported {result.imported_count} item(s)[/bold green]")
        for entity, count in result.counts.items():
            console.print(f"   {entity}: [yellow]{count}[/yellow]")
    else:
        console.print("ℹ️  No new items to import; all data already exists")


@app.command()
def clear(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
) -> None:
    """Delete every record and book file.

    Examples:
        $ bibliopod clear --yes
    """
    if not yes:
        typer.confirm("This permanently deletes all library data. Continue?", abort=True)

    async def _clear():
        async with open_library(ctx) as library:
            return await library.clear_all_data()

    try:
        removed = run_async(_clear())
    except BiblioPodError as e:
        raise fail(f"Clear failed: {e}")

    console.print(f"🗑️  [bold green]Removed {sum(removed.values())} record(s)[/bold green]")


@app.command()
def metrics() -> None:
    """Print Prometheus metrics collected in this process.

    Examples:
        $ bibliopod metrics
    """
    console.print(generate_metrics_output().decode(), highlight=False, markup=False)


def main() -> None:
    """Main entry point for CLI."""
    app()


if __name__ == "__main__":
    main()
