"""APKG import pipeline.

Parses Anki deck packages (.apkg files) into decks of cards.

APKG file structure:
- collection.anki21b, collection.anki21 or collection.anki2: SQLite database
- media: manifest mapping numbered files to original filenames
- Numbered files (0, 1, 2...): media files
"""

import time
from collections import Counter
from pathlib import Path

from packages.apkg.assembler import assemble_decks
from packages.apkg.container import open_archive
from packages.apkg.database import open_collection
from packages.apkg.media import load_media, resolve_notes
from packages.apkg.models import APKGParseResult
from packages.apkg.notes import decode_notes
from packages.apkg.schema import decode_schema
from packages.common.config import ImportSettings, get_settings
from packages.common.exceptions import ApkgImportError
from packages.common.logging import get_logger

logger = get_logger(module=__name__)


def parse_apkg(data: bytes, settings: ImportSettings | None = None) -> APKGParseResult:
    """Parse an .apkg upload held in memory.

    Stages run strictly in order: archive, collection database, schema,
    notes, media, cards. The first fatal condition aborts the call; all
    other problems are returned as warnings next to a best-effort result.

    Args:
        data: Raw archive bytes.
        settings: Import limits and switches; defaults to the cached settings.

    Returns:
        APKGParseResult with decks, warnings and media bytes.

    Raises:
        ApkgImportError: One of its subclasses, naming the failure kind.
    """
    settings = settings or get_settings()
    log = logger.bind(archive_bytes=len(data))
    started = time.perf_counter()

    try:
        with open_archive(data, settings) as archive:
            db = open_collection(archive, settings)
            schema = decode_schema(db)
            decoded = decode_notes(db, schema, settings)
            library = load_media(archive, db.format, settings)
            resolution = resolve_notes(decoded.notes, library)
            assembly = assemble_decks(db, decoded.notes, resolution, schema, settings)
    except ApkgImportError as exc:
        log.warning("apkg_import_failed", kind=exc.kind, error=str(exc), context=exc.context)
        raise

    warnings = (*schema.warnings, *decoded.warnings, *resolution.warnings, *assembly.warnings)
    for warning in warnings:
        log.debug("apkg_import_warning", kind=warning.kind.value, message=warning.message, **warning.context)

    result = APKGParseResult(
        format=db.format,
        decks=tuple(assembly.decks),
        warnings=warnings,
        media=library.files,
        omitted_decks=tuple(assembly.omitted_decks),
    )
    log.info(
        "apkg_import_completed",
        format=db.format.value,
        decks=len(result.decks),
        cards=result.total_cards,
        media=result.total_media,
        warnings=dict(Counter(w.kind.value for w in warnings)),
        duration_ms=int((time.perf_counter() - started) * 1000),
    )
    return result


def parse_apkg_file(path: str | Path, settings: ImportSettings | None = None) -> APKGParseResult:
    """Convenience function to parse an .apkg file from disk.

    Args:
        path: Path to the .apkg file.
        settings: Import limits and switches.

    Returns:
        APKGParseResult for the file's bytes.
    """
    return parse_apkg(Path(path).read_bytes(), settings)
