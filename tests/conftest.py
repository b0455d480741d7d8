"""Pytest configuration and fixtures."""

import io
import json
import sqlite3
import tempfile
import zipfile
from collections.abc import Callable, Generator, Iterable
from pathlib import Path
from typing import Any

import pytest
import zstandard

from packages.common.config import ImportSettings

BASIC_MODEL_ID = 1342697561419
CLOZE_MODEL_ID = 1342697561420
COLORS_DECK_ID = 1700000000001

LEGACY_SCHEMA = """
-- Collection metadata
CREATE TABLE col (
    id INTEGER PRIMARY KEY,
    crt INTEGER NOT NULL,
    mod INTEGER NOT NULL,
    scm INTEGER NOT NULL,
    ver INTEGER NOT NULL,
    dty INTEGER NOT NULL,
    usn INTEGER NOT NULL,
    ls INTEGER NOT NULL,
    conf TEXT NOT NULL,
    models TEXT NOT NULL,
    decks TEXT NOT NULL,
    dconf TEXT NOT NULL,
    tags TEXT NOT NULL
);

-- Notes
CREATE TABLE notes (
    id INTEGER PRIMARY KEY,
    guid TEXT NOT NULL,
    mid INTEGER NOT NULL,
    mod INTEGER NOT NULL,
    usn INTEGER NOT NULL,
    tags TEXT NOT NULL,
    flds TEXT NOT NULL,
    sfld INTEGER NOT NULL,
    csum INTEGER NOT NULL,
    flags INTEGER NOT NULL,
    data TEXT NOT NULL
);

-- Cards
CREATE TABLE cards (
    id INTEGER PRIMARY KEY,
    nid INTEGER NOT NULL,
    did INTEGER NOT NULL,
    ord INTEGER NOT NULL,
    mod INTEGER NOT NULL,
    usn INTEGER NOT NULL,
    type INTEGER NOT NULL,
    queue INTEGER NOT NULL,
    due INTEGER NOT NULL,
    ivl INTEGER NOT NULL,
    factor INTEGER NOT NULL,
    reps INTEGER NOT NULL,
    lapses INTEGER NOT NULL,
    left INTEGER NOT NULL,
    odue INTEGER NOT NULL,
    odid INTEGER NOT NULL,
    flags INTEGER NOT NULL,
    data TEXT NOT NULL
);
"""

# Trimmed version of the schema 18 layout used by collection.anki21b
MODERN_SCHEMA = """
CREATE TABLE col (
    id integer PRIMARY KEY,
    crt integer NOT NULL,
    mod integer NOT NULL,
    scm integer NOT NULL,
    ver integer NOT NULL,
    dty integer NOT NULL,
    usn integer NOT NULL,
    ls integer NOT NULL,
    conf text NOT NULL,
    models text NOT NULL,
    decks text NOT NULL,
    dconf text NOT NULL,
    tags text NOT NULL
);
CREATE TABLE notetypes (
    id integer NOT NULL PRIMARY KEY,
    name text NOT NULL,
    mtime_secs integer NOT NULL,
    usn integer NOT NULL,
    config blob NOT NULL
);
CREATE TABLE fields (
    ntid integer NOT NULL,
    ord integer NOT NULL,
    name text NOT NULL,
    config blob NOT NULL,
    PRIMARY KEY (ntid, ord)
) without rowid;
CREATE TABLE templates (
    ntid integer NOT NULL,
    ord integer NOT NULL,
    name text NOT NULL,
    mtime_secs integer NOT NULL,
    usn integer NOT NULL,
    config blob NOT NULL,
    PRIMARY KEY (ntid, ord)
) without rowid;
CREATE TABLE decks (
    id integer PRIMARY KEY NOT NULL,
    name text NOT NULL,
    mtime_secs integer NOT NULL,
    usn integer NOT NULL,
    common blob NOT NULL,
    kind blob NOT NULL
);
"""


def basic_model(
    model_id: int = BASIC_MODEL_ID,
    fields: Iterable[str] = ("Front", "Back"),
    *,
    name: str = "Basic",
    cloze: bool = False,
) -> dict[str, Any]:
    """A legacy model JSON entry."""
    return {
        "id": model_id,
        "name": name,
        "type": 1 if cloze else 0,
        "mod": 1700000000,
        "usn": -1,
        "sortf": 0,
        "did": 1,
        "tmpls": [
            {
                "name": "Card 1",
                "ord": 0,
                "qfmt": "{{Front}}",
                "afmt": "{{FrontSide}}<hr id=answer>{{Back}}",
            }
        ],
        "flds": [{"name": name, "ord": i, "sticky": False} for i, name in enumerate(fields)],
        "css": "",
    }


def deck(deck_id: int, name: str, **extra: Any) -> dict[str, Any]:
    """A legacy deck JSON entry."""
    return {"id": deck_id, "name": name, "desc": "", "dyn": 0, "conf": 1, "collapsed": False, **extra}


def encode_varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def proto_field(number: int, value: int | bytes | str) -> bytes:
    """Encode one protobuf field (varint for ints, length-delimited otherwise)."""
    if isinstance(value, int):
        return encode_varint(number << 3) + encode_varint(value)
    if isinstance(value, str):
        value = value.encode("utf-8")
    return encode_varint((number << 3) | 2) + encode_varint(len(value)) + value


def media_entries_proto(names: Iterable[str]) -> bytes:
    """Encode a MediaEntries message listing ``names`` in order."""
    return b"".join(
        proto_field(1, proto_field(1, name) + proto_field(2, 3) + proto_field(3, b"\x00" * 20))
        for name in names
    )


def _note_row(note: tuple[Any, ...]) -> tuple[Any, ...]:
    note_id, model_id, tags, flds = note
    return (note_id, f"guid{note_id}", model_id, 1700000000, -1, tags, flds, flds.split("\x1f")[0], 0, 0, "")


def _card_row(card: tuple[Any, ...]) -> tuple[Any, ...]:
    if len(card) == 4:
        card = (*card, 0, 0, 0, 0, 0, 0, 0)
    card_id, note_id, deck_id, ord_, type_, queue, due, ivl, factor, reps, lapses = card
    return (card_id, note_id, deck_id, ord_, 1700000000, -1, type_, queue, due, ivl, factor, reps, lapses, 0, 0, 0, 0, "")


def _insert_notes_and_cards(conn: sqlite3.Connection, notes: Iterable[tuple[Any, ...]], cards: Iterable[tuple[Any, ...]]) -> None:
    conn.executemany(
        "INSERT INTO notes (id, guid, mid, mod, usn, tags, flds, sfld, csum, flags, data) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        [_note_row(note) for note in notes],
    )
    conn.executemany(
        "INSERT INTO cards (id, nid, did, ord, mod, usn, type, queue, due, ivl, factor, reps, lapses, left, odue, odid, flags, data) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        [_card_row(card) for card in cards],
    )


@pytest.fixture
def temp_dir() -> Generator[Path]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sqlite_bytes(temp_dir: Path) -> Callable[[Callable[[sqlite3.Connection], None]], bytes]:
    """Build a SQLite file with a callback and return its bytes."""
    counter = iter(range(1_000_000))

    def _build(populate: Callable[[sqlite3.Connection], None]) -> bytes:
        db_path = temp_dir / f"db{next(counter)}.sqlite"
        conn = sqlite3.connect(str(db_path))
        populate(conn)
        conn.commit()
        conn.close()
        return db_path.read_bytes()

    return _build


@pytest.fixture
def make_collection(sqlite_bytes: Callable[..., bytes]) -> Callable[..., bytes]:
    """Build a legacy (anki2/anki21) collection database.

    Notes are ``(id, model_id, tags, flds)``; cards are ``(id, nid, did, ord)``
    or ``(id, nid, did, ord, type, queue, due, ivl, factor, reps, lapses)``.
    """

    def _make(
        *,
        models: dict[str, Any] | str | None = None,
        decks: dict[str, Any] | str | None = None,
        notes: Iterable[tuple[Any, ...]] = (),
        cards: Iterable[tuple[Any, ...]] = (),
        col_rows: int = 1,
    ) -> bytes:
        if models is None:
            models = {str(BASIC_MODEL_ID): basic_model()}
        if decks is None:
            decks = {str(COLORS_DECK_ID): deck(COLORS_DECK_ID, "Colors")}
        models_text = models if isinstance(models, str) else json.dumps(models)
        decks_text = decks if isinstance(decks, str) else json.dumps(decks)

        def populate(conn: sqlite3.Connection) -> None:
            conn.executescript(LEGACY_SCHEMA)
            for row_id in range(1, col_rows + 1):
                conn.execute(
                    "INSERT INTO col (id, crt, mod, scm, ver, dty, usn, ls, conf, models, decks, dconf, tags) "
                    "VALUES (?, 1700000000, 1700000000, 1700000000, 11, 0, -1, 0, '{}', ?, ?, '{}', '{}')",
                    (row_id, models_text, decks_text),
                )
            _insert_notes_and_cards(conn, notes, cards)

        return sqlite_bytes(populate)

    return _make


@pytest.fixture
def make_modern_collection(sqlite_bytes: Callable[..., bytes]) -> Callable[..., bytes]:
    """Build a schema 18 collection database (uncompressed).

    ``notetypes`` maps id -> (name, field names, cloze flag); ``decks`` maps
    id -> (native name with ``\\x1f`` separators, description).
    """

    def _make(
        *,
        notetypes: dict[int, tuple[str, list[str], bool]],
        decks: dict[int, tuple[str, str]],
        notes: Iterable[tuple[Any, ...]] = (),
        cards: Iterable[tuple[Any, ...]] = (),
    ) -> bytes:
        def populate(conn: sqlite3.Connection) -> None:
            conn.executescript(MODERN_SCHEMA + LEGACY_SCHEMA.split("-- Notes", 1)[1])
            conn.execute(
                "INSERT INTO col VALUES (1, 1700000000, 1700000000, 1700000000, 18, 0, 0, 0, '', '', '', '', '')"
            )
            for ntid, (name, field_names, cloze) in notetypes.items():
                config = proto_field(1, 1 if cloze else 0) + proto_field(2, 0) + proto_field(3, ".card {}")
                conn.execute("INSERT INTO notetypes VALUES (?, ?, 0, 0, ?)", (ntid, name, config))
                for ord_, field_name in enumerate(field_names):
                    conn.execute("INSERT INTO fields VALUES (?, ?, ?, ?)", (ntid, ord_, field_name, b""))
                template = proto_field(1, "{{Front}}") + proto_field(2, "{{Back}}")
                conn.execute("INSERT INTO templates VALUES (?, 0, 'Card 1', 0, 0, ?)", (ntid, template))
            for deck_id, (name, description) in decks.items():
                kind = proto_field(1, proto_field(1, 1) + proto_field(4, description))
                conn.execute("INSERT INTO decks VALUES (?, ?, 0, 0, ?, ?)", (deck_id, name, b"", kind))
            _insert_notes_and_cards(conn, notes, cards)

        return sqlite_bytes(populate)

    return _make


@pytest.fixture
def make_apkg() -> Callable[..., bytes]:
    """Zip a collection database and optional media into .apkg bytes."""

    def _make(
        database: bytes | None,
        *,
        db_name: str = "collection.anki2",
        media: dict[str, str] | bytes | None = None,
        files: dict[str, bytes] | None = None,
        extra: dict[str, bytes] | None = None,
        compression: int = zipfile.ZIP_DEFLATED,
    ) -> bytes:
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=compression) as archive:
            if database is not None:
                archive.writestr(db_name, database)
            if media is not None:
                archive.writestr("media", media if isinstance(media, bytes) else json.dumps(media))
            for name, data in (files or {}).items():
                archive.writestr(name, data)
            for name, data in (extra or {}).items():
                archive.writestr(name, data)
        return buffer.getvalue()

    return _make


@pytest.fixture
def zstd() -> Callable[[bytes], bytes]:
    """Compress bytes the way anki21b packages do."""

    def _compress(data: bytes) -> bytes:
        return zstandard.ZstdCompressor().compress(data)

    return _compress


@pytest.fixture
def settings() -> ImportSettings:
    """Default settings, independent of the environment's APKG_* variables."""
    return ImportSettings(_env_file=None)


@pytest.fixture
def colors_apkg(make_collection: Callable[..., bytes], make_apkg: Callable[..., bytes]) -> bytes:
    """One deck "Colors", one Basic note ["Red", "Rojo"] tagged "color basic", one card."""
    database = make_collection(
        notes=[(1000000001, BASIC_MODEL_ID, "color basic", "Red\x1fRojo")],
        cards=[(2000000001, 1000000001, COLORS_DECK_ID, 0)],
    )
    return make_apkg(database)
