"""apkg-import: inspect Anki deck packages from the command line."""

import json
from collections import Counter
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from packages.apkg.models import APKGParseResult, ModelKind

app = typer.Typer(
    name="apkg-import",
    help="Parse Anki deck packages (.apkg) and report what an import would produce",
    no_args_is_help=True,
)

console = Console()

VERSION = "0.1.0"


def _print_decks(result: APKGParseResult) -> None:
    table = Table(title=f"Decks ({result.format.value})")
    table.add_column("Deck", style="cyan")
    table.add_column("Parent")
    table.add_column("Cards", justify="right", style="green")
    table.add_column("Cloze", justify="right")

    for deck in result.decks:
        cloze = sum(1 for card in deck.cards if card.kind == ModelKind.CLOZE)
        table.add_row(deck.name, deck.parent_name or "", str(len(deck.cards)), str(cloze))

    console.print(table)
    console.print(f"[dim]Total cards: {result.total_cards}, media files: {result.total_media}[/dim]")
    if result.omitted_decks:
        console.print(f"[yellow]Decks left empty:[/yellow] {', '.join(result.omitted_decks)}")


def _print_warnings(result: APKGParseResult, *, verbose: bool) -> None:
    counts = Counter(w.kind.value for w in result.warnings)
    table = Table(title="Warnings")
    table.add_column("Kind", style="yellow")
    table.add_column("Count", justify="right")
    for kind, count in sorted(counts.items()):
        table.add_row(kind, str(count))
    console.print(table)

    if verbose:
        for warning in result.warnings:
            console.print(f"[yellow]{warning.kind.value}:[/yellow] {warning.message}")


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"apkg-importer {VERSION}")


@app.command()
def inspect(
    source: str = typer.Argument(..., help="Path to the .apkg file"),
    strict: bool = typer.Option(
        False,
        "--strict",
        help="Fail on note/model field count mismatches",
    ),
    max_notes: int | None = typer.Option(
        None,
        "--max-notes",
        help="Override the maximum number of notes",
    ),
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Print the full result as JSON instead of tables",
    ),
    show_warnings: bool = typer.Option(
        False,
        "--warnings",
        "-w",
        help="List every warning",
    ),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
) -> None:
    """Parse an .apkg file and summarize its decks, cards and warnings."""
    from packages.apkg.importer import parse_apkg
    from packages.common.config import load_settings
    from packages.common.exceptions import ApkgImportError, ConfigurationError
    from packages.common.logging import configure_logging, import_scope

    configure_logging(debug=debug)

    source_path = Path(source).expanduser().resolve()
    if not source_path.is_file():
        console.print(f"[red]Error:[/red] File not found: {source_path}")
        raise typer.Exit(1)

    overrides: dict[str, object] = {"strict_field_counts": strict}
    if max_notes is not None:
        overrides["max_note_count"] = max_notes
    try:
        settings = load_settings(**overrides)
    except ConfigurationError as e:
        console.print(f"[red]Invalid option:[/red] {e}")
        raise typer.Exit(1) from None

    with import_scope(source=source_path.name):
        try:
            result = parse_apkg(source_path.read_bytes(), settings)
        except ApkgImportError as e:
            if as_json:
                console.print_json(json.dumps(e.to_dict(), default=str))
            else:
                console.print(f"[red]{e.kind}:[/red] {e}")
            raise typer.Exit(1) from None

    if as_json:
        payload = result.model_dump(mode="json", exclude={"media"})
        payload["media"] = sorted(result.media)
        console.print_json(json.dumps(payload))
        return

    _print_decks(result)
    if result.warnings:
        _print_warnings(result, verbose=show_warnings)


if __name__ == "__main__":
    app()
