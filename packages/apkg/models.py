"""APKG data models."""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

DECK_PATH_SEPARATOR = "::"


class CollectionFormat(StrEnum):
    """Collection database entry, newest format first."""

    ANKI21B = "collection.anki21b"  # zstd-compressed SQLite, schema 18 tables
    ANKI21 = "collection.anki21"  # plain SQLite, JSON schema blobs
    ANKI2 = "collection.anki2"  # legacy plain SQLite

    @property
    def compressed(self) -> bool:
        """Whether the database and media bytes are zstd-compressed."""
        return self is CollectionFormat.ANKI21B


class ModelKind(StrEnum):
    """Note type kind."""

    STANDARD = "standard"
    CLOZE = "cloze"


class WarningKind(StrEnum):
    """Non-fatal conditions collected during an import."""

    ORPHAN_NOTE = "OrphanNote"
    ORPHAN_CARD = "OrphanCard"
    FIELD_COUNT_MISMATCH = "FieldCountMismatch"
    UNRESOLVED_MEDIA = "UnresolvedMedia"
    SCHEMA_PARSE_ERROR = "SchemaParseError"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class RawEntry(_Frozen):
    """A decompressed archive member."""

    name: str
    size: int
    data: bytes


class CollectionRow(_Frozen):
    """The single row of the ``col`` table."""

    crt: int = 0  # Collection creation time (seconds)
    mod: int = 0
    ver: int = 0  # Schema version
    models: str = ""
    decks: str = ""
    dconf: str = ""


class AnkiTemplate(_Frozen):
    """Card template of a note type."""

    name: str
    ord: int
    qfmt: str = ""
    afmt: str = ""


class AnkiModel(_Frozen):
    """Anki note type/model."""

    model_id: int
    name: str
    kind: ModelKind = ModelKind.STANDARD
    field_names: tuple[str, ...]
    templates: tuple[AnkiTemplate, ...] = ()
    sort_field_index: int = 0

    @property
    def field_count(self) -> int:
        return len(self.field_names)


class AnkiDeck(_Frozen):
    """Anki deck; ``name`` is the full ``::`` path."""

    deck_id: int
    name: str
    description: str | None = None
    config_id: int | None = None  # Deck options group, None for filtered decks
    dynamic: bool = False

    @property
    def path(self) -> tuple[str, ...]:
        return tuple(self.name.split(DECK_PATH_SEPARATOR))

    @property
    def parent_name(self) -> str | None:
        if DECK_PATH_SEPARATOR not in self.name:
            return None
        return self.name.rsplit(DECK_PATH_SEPARATOR, 1)[0]

    @property
    def depth(self) -> int:
        return len(self.path) - 1


class AnkiNote(_Frozen):
    """Anki note with fields split and aligned to its model."""

    note_id: int
    guid: str = ""
    model_id: int
    raw_tags: str = ""
    tags: tuple[str, ...] = ()
    fields: tuple[str, ...]  # Padded/truncated to the model's field count
    sort_field: str = ""
    checksum: int = 0  # First 32 bits of SHA-1 over the stripped sort field
    mtime: int = 0  # Modification timestamp (seconds since epoch)


class AnkiCard(_Frozen):
    """Anki card row."""

    card_id: int
    note_id: int
    deck_id: int
    ord: int = 0  # Template ordinal within note
    type: int = 0  # 0=new, 1=learning, 2=review, 3=relearning
    queue: int = 0  # -3=user buried, -2=sched buried, -1=suspended, 0=new, 1=learning, 2=review, 3=in learning
    due: int = 0
    ivl: int = 0  # Interval in days
    factor: int = 0  # Ease factor (permille, e.g., 2500 = 250%)
    reps: int = 0
    lapses: int = 0


class CardScheduling(_Frozen):
    """Scheduling state carried through untouched."""

    type: int = 0
    queue: int = 0
    due: int = 0
    interval: int = 0
    factor: int = 0
    repetitions: int = 0
    lapses: int = 0


class ParsedCard(_Frozen):
    """Host-facing card with its note inlined."""

    card_id: int
    note_id: int
    guid: str = ""
    ordinal: int = 0
    kind: ModelKind = ModelKind.STANDARD
    front: str
    back: str
    field_names: tuple[str, ...] = ()
    fields: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    media_files: tuple[str, ...] = ()
    checksum: int = 0
    scheduling: CardScheduling = Field(default_factory=CardScheduling)


class ParsedDeck(_Frozen):
    """Host-facing deck with its cards in export order."""

    deck_id: int
    name: str
    description: str | None = None
    cards: tuple[ParsedCard, ...]

    @property
    def path(self) -> tuple[str, ...]:
        return tuple(self.name.split(DECK_PATH_SEPARATOR))

    @property
    def parent_name(self) -> str | None:
        if DECK_PATH_SEPARATOR not in self.name:
            return None
        return self.name.rsplit(DECK_PATH_SEPARATOR, 1)[0]


class ParseWarning(_Frozen):
    """A non-fatal condition met during the import."""

    kind: WarningKind
    message: str
    context: dict[str, Any] = Field(default_factory=dict)


class APKGParseResult(_Frozen):
    """Complete result of one import call.

    ``omitted_decks`` names the decks that had cards in the collection but
    lost all of them to orphan filtering. They are reported here rather than
    as ``warnings``; their count is ``len(omitted_decks)``.
    """

    format: CollectionFormat
    decks: tuple[ParsedDeck, ...]
    warnings: tuple[ParseWarning, ...] = ()
    media: dict[str, bytes] = Field(default_factory=dict)  # Original filename -> bytes
    omitted_decks: tuple[str, ...] = ()  # Decks whose cards were all filtered out

    @property
    def total_cards(self) -> int:
        return sum(len(deck.cards) for deck in self.decks)

    @property
    def total_media(self) -> int:
        return len(self.media)

    def warnings_of(self, kind: WarningKind) -> list[ParseWarning]:
        """Return the warnings of one kind, in the order they were raised."""
        return [w for w in self.warnings if w.kind == kind]

    def deck_tree(self) -> dict[str, str | None]:
        """Map each deck's full path to its parent path.

        Parents are derived from the names; they need not be decks of
        their own in this result.
        """
        return {deck.name: deck.parent_name for deck in self.decks}
