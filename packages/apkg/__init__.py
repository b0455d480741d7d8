"""APKG import: Anki deck packages to normalized decks and cards."""

from packages.apkg.importer import parse_apkg, parse_apkg_file
from packages.apkg.models import (
    AnkiCard,
    AnkiDeck,
    AnkiModel,
    AnkiNote,
    APKGParseResult,
    CardScheduling,
    CollectionFormat,
    ModelKind,
    ParsedCard,
    ParsedDeck,
    ParseWarning,
    WarningKind,
)

__all__ = [
    "APKGParseResult",
    "AnkiCard",
    "AnkiDeck",
    "AnkiModel",
    "AnkiNote",
    "CardScheduling",
    "CollectionFormat",
    "ModelKind",
    "ParseWarning",
    "ParsedCard",
    "ParsedDeck",
    "WarningKind",
    "parse_apkg",
    "parse_apkg_file",
]
