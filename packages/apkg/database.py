"""Collection database selection and table scans."""

from collections.abc import Iterator
from typing import Any

import zstandard

from packages.apkg.container import ApkgArchive
from packages.apkg.models import CollectionFormat, CollectionRow
from packages.apkg.sqlite import SQLiteFile
from packages.common.config import ImportSettings, get_settings
from packages.common.exceptions import CorruptDatabaseError, UnsupportedFormatError
from packages.common.logging import get_logger

logger = get_logger(module=__name__)

COLLECTION_TABLE = "col"
NOTES_TABLE = "notes"
CARDS_TABLE = "cards"
NOTETYPES_TABLE = "notetypes"

NOTE_COLUMNS = ("flds",)
NOTE_INTEGER_COLUMNS = ("id", "mid")
CARD_INTEGER_COLUMNS = ("id", "nid", "did")


class CollectionDatabase:
    """Fixed table scans over an embedded Anki collection."""

    def __init__(self, fmt: CollectionFormat, sqlite: SQLiteFile) -> None:
        self.format = fmt
        self._sqlite = sqlite

    def has_table(self, name: str) -> bool:
        return self._sqlite.has_table(name)

    def has_modern_schema(self) -> bool:
        """Check if the collection keeps note types in separate tables (schema 18)."""
        return self.has_table(NOTETYPES_TABLE)

    def scan(
        self,
        table: str,
        *,
        required: tuple[str, ...] = (),
        integers: tuple[str, ...] = (),
    ) -> Iterator[dict[str, Any]]:
        """Yield every row of ``table`` in its native order.

        Args:
            table: Table name.
            required: Columns the table must declare.
            integers: Columns that must also hold an integer in every row.

        Raises:
            CorruptDatabaseError: If the table or a required column is missing,
                or an integer column holds another type.
        """
        if not self.has_table(table):
            raise CorruptDatabaseError(f"Collection has no {table} table", context={"table": table})

        columns = self._sqlite.table(table).columns
        missing = [name for name in dict.fromkeys((*integers, *required)) if name not in columns]
        if missing:
            raise CorruptDatabaseError(
                f"Table {table} lacks columns: {', '.join(missing)}",
                context={"table": table, "missing": missing},
            )

        rows = self._sqlite.scan(table)
        return _check_integers(table, rows, integers) if integers else rows

    def read_collection_row(self) -> CollectionRow:
        """Read the single collection metadata row."""
        rows = list(self.scan(COLLECTION_TABLE))
        if len(rows) != 1:
            raise CorruptDatabaseError(
                f"Expected exactly one collection row, found {len(rows)}",
                context={"rows": len(rows)},
            )
        row = rows[0]
        return CollectionRow(
            crt=_as_int(row.get("crt")),
            mod=_as_int(row.get("mod")),
            ver=_as_int(row.get("ver")),
            models=_as_text(row.get("models")),
            decks=_as_text(row.get("decks")),
            dconf=_as_text(row.get("dconf")),
        )

    def scan_notes(self) -> Iterator[dict[str, Any]]:
        return self.scan(NOTES_TABLE, required=NOTE_COLUMNS, integers=NOTE_INTEGER_COLUMNS)

    def scan_cards(self) -> Iterator[dict[str, Any]]:
        return self.scan(CARDS_TABLE, integers=CARD_INTEGER_COLUMNS)


def _check_integers(
    table: str, rows: Iterator[dict[str, Any]], integers: tuple[str, ...]
) -> Iterator[dict[str, Any]]:
    for row in rows:
        for name in integers:
            value = row[name]
            if not isinstance(value, int):
                raise CorruptDatabaseError(
                    f"Column {table}.{name} holds {type(value).__name__}, expected an integer",
                    context={"table": table, "column": name},
                )
        yield row


def _as_int(value: Any) -> int:
    return value if isinstance(value, int) else 0


def _as_text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value if isinstance(value, str) else ""


def select_collection_entry(archive: ApkgArchive, settings: ImportSettings) -> CollectionFormat:
    """Pick the collection database entry to read.

    Probes ``settings.collection_priority`` in order (newest format first by
    default) and skips empty entries.
    """
    for name in settings.collection_priority:
        if name in archive and archive.size_of(name) > 0:
            return CollectionFormat(name)
    raise UnsupportedFormatError(
        "No collection database found in archive",
        context={"entries": archive.names()[:20]},
    )


def open_collection(archive: ApkgArchive, settings: ImportSettings | None = None) -> CollectionDatabase:
    """Locate, decompress and open the embedded collection database.

    Args:
        archive: Opened .apkg archive.
        settings: Import limits; defaults to the cached settings.

    Returns:
        CollectionDatabase ready for table scans.
    """
    settings = settings or get_settings()
    fmt = select_collection_entry(archive, settings)
    data = archive.read(fmt.value).data

    if fmt.compressed:
        try:
            data = archive.inflate_zstd(data, fmt.value)
        except zstandard.ZstdError as exc:
            raise CorruptDatabaseError(
                f"Cannot decompress {fmt.value}: {exc}", context={"entry": fmt.value}
            ) from exc

    logger.info("apkg_format_selected", format=fmt.value, database_bytes=len(data))
    return CollectionDatabase(fmt, SQLiteFile(data))
