"""Note type and deck decoding.

Supports both legacy (``col.models`` / ``col.decks`` JSON) and modern
(``notetypes`` + ``fields`` + ``templates`` + ``decks`` tables) collections.
"""

import json
from dataclasses import dataclass, field
from typing import Any

from packages.apkg.database import CollectionDatabase
from packages.apkg.models import (
    DECK_PATH_SEPARATOR,
    AnkiDeck,
    AnkiModel,
    AnkiTemplate,
    ModelKind,
    ParseWarning,
    WarningKind,
)
from packages.apkg.protobuf import ProtobufDecodeError, first_field
from packages.common.exceptions import SchemaParseError
from packages.common.logging import get_logger

logger = get_logger(module=__name__)

# Modern collections store deck names with this separator instead of "::"
NATIVE_DECK_SEPARATOR = "\x1f"

MODEL_TYPE_CLOZE = 1

# Protobuf field numbers in the schema 18 config blobs
NOTETYPE_KIND = 1
NOTETYPE_SORT_FIELD = 2
TEMPLATE_QFMT = 1
TEMPLATE_AFMT = 2
DECK_KIND_NORMAL = 1
DECK_KIND_FILTERED = 2
DECK_NORMAL_CONFIG_ID = 1
DECK_NORMAL_DESCRIPTION = 4


@dataclass
class CollectionSchema:
    """Decoded note types and decks of one collection."""

    models: dict[int, AnkiModel] = field(default_factory=dict)
    decks: dict[int, AnkiDeck] = field(default_factory=dict)
    warnings: list[ParseWarning] = field(default_factory=list)

    def decks_by_path(self) -> dict[str, list[AnkiDeck]]:
        """Flat map of full deck path -> decks carrying that name."""
        result: dict[str, list[AnkiDeck]] = {}
        for deck in self.decks.values():
            result.setdefault(deck.name, []).append(deck)
        return result


def parent_path(name: str) -> str | None:
    """Parent path of a deck name, or None for a top-level deck."""
    if DECK_PATH_SEPARATOR not in name:
        return None
    return name.rsplit(DECK_PATH_SEPARATOR, 1)[0]


def ancestor_paths(name: str) -> list[str]:
    """All ancestor paths of a deck name, nearest first."""
    result: list[str] = []
    current = parent_path(name)
    while current is not None:
        result.append(current)
        current = parent_path(current)
    return result


def is_valid_deck_name(name: str) -> bool:
    """A deck name is valid when every ``::`` segment is non-blank."""
    return all(segment.strip() for segment in name.split(DECK_PATH_SEPARATOR))


def _reject_duplicate_keys(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in pairs:
        if key in result:
            raise SchemaParseError(f"Duplicate id {key} in schema JSON", context={"id": key})
        result[key] = value
    return result


def _load_json_object(text: str, what: str) -> dict[str, Any]:
    try:
        data = json.loads(text, object_pairs_hook=_reject_duplicate_keys)
    except (json.JSONDecodeError, RecursionError) as exc:
        raise SchemaParseError(f"Invalid {what} JSON: {exc}", context={"blob": what}) from exc
    if not isinstance(data, dict):
        raise SchemaParseError(f"{what} JSON is not an object", context={"blob": what})
    return data


def _parse_id(key: str, what: str) -> int:
    try:
        return int(key)
    except ValueError as exc:
        raise SchemaParseError(f"Invalid {what} id {key!r}", context={"id": key}) from exc


def _ordered(entries: list[Any], what: str, model_id: int) -> list[dict[str, Any]]:
    """Validate field/template entries and order them by ``ord`` when given."""
    for entry in entries:
        if not isinstance(entry, dict):
            raise SchemaParseError(
                f"Model {model_id} has a malformed {what} entry", context={"model_id": model_id}
            )
    if all(isinstance(entry.get("ord"), int) for entry in entries):
        return sorted(entries, key=lambda entry: entry["ord"])
    return list(entries)


def parse_models(models_json: str) -> dict[int, AnkiModel]:
    """Parse legacy ``col.models`` JSON into models keyed by id."""
    result: dict[int, AnkiModel] = {}

    for model_id_str, model_data in _load_json_object(models_json, "models").items():
        model_id = _parse_id(model_id_str, "model")
        if not isinstance(model_data, dict):
            raise SchemaParseError(f"Model {model_id} is not an object", context={"model_id": model_id})

        fields = model_data.get("flds")
        if not isinstance(fields, list) or not fields:
            raise SchemaParseError(
                f"Model {model_id} lacks a field-name list", context={"model_id": model_id}
            )
        templates = model_data.get("tmpls")
        templates = templates if isinstance(templates, list) else []

        field_names = tuple(
            str(f.get("name", f"Field{i}")) for i, f in enumerate(_ordered(fields, "field", model_id))
        )
        sort_field = model_data.get("sortf")

        result[model_id] = AnkiModel(
            model_id=model_id,
            name=str(model_data.get("name", "")),
            kind=ModelKind.CLOZE if model_data.get("type") == MODEL_TYPE_CLOZE else ModelKind.STANDARD,
            field_names=field_names,
            templates=tuple(
                AnkiTemplate(
                    name=str(t.get("name", "")),
                    ord=t["ord"] if isinstance(t.get("ord"), int) else i,
                    qfmt=str(t.get("qfmt", "")),
                    afmt=str(t.get("afmt", "")),
                )
                for i, t in enumerate(_ordered(templates, "template", model_id))
            ),
            sort_field_index=sort_field if isinstance(sort_field, int) else 0,
        )

    return result


def _deck_warning(deck_id: int | str, name: object, message: str) -> ParseWarning:
    return ParseWarning(
        kind=WarningKind.SCHEMA_PARSE_ERROR,
        message=message,
        context={"deck_id": deck_id, "name": name},
    )


def parse_decks(decks_json: str) -> tuple[dict[int, AnkiDeck], list[ParseWarning]]:
    """Parse legacy ``col.decks`` JSON.

    A deck with a missing or invalid name is dropped with a warning; the
    remaining decks are still returned.
    """
    decks: dict[int, AnkiDeck] = {}
    warnings: list[ParseWarning] = []

    for deck_id_str, deck_data in _load_json_object(decks_json, "decks").items():
        deck_id = _parse_id(deck_id_str, "deck")
        if not isinstance(deck_data, dict):
            warnings.append(_deck_warning(deck_id, None, f"Deck {deck_id} is not an object"))
            continue

        name = deck_data.get("name")
        if not isinstance(name, str) or not is_valid_deck_name(name):
            warnings.append(_deck_warning(deck_id, name, f"Deck {deck_id} has an invalid name"))
            continue

        dynamic = bool(deck_data.get("dyn"))
        config_id = deck_data.get("conf")
        description = deck_data.get("desc")
        decks[deck_id] = AnkiDeck(
            deck_id=deck_id,
            name=name,
            description=description if isinstance(description, str) and description else None,
            config_id=config_id if isinstance(config_id, int) and not dynamic else None,
            dynamic=dynamic,
        )

    return decks, warnings


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value if isinstance(value, str) else ""


def _blob(value: Any) -> bytes:
    return value if isinstance(value, bytes) else b""


def _read_models_modern(db: CollectionDatabase) -> dict[int, AnkiModel]:
    """Read models from the modern notetypes + fields + templates tables."""
    model_fields: dict[int, list[str]] = {}
    for row in db.scan("fields", required=("name",), integers=("ntid",)):
        model_fields.setdefault(row["ntid"], []).append(_text(row["name"]))

    model_templates: dict[int, list[AnkiTemplate]] = {}
    if db.has_table("templates"):
        for row in db.scan("templates", required=("name",), integers=("ntid",)):
            config = _blob(row.get("config"))
            try:
                qfmt = first_field(config, TEMPLATE_QFMT)
                afmt = first_field(config, TEMPLATE_AFMT)
            except ProtobufDecodeError as exc:
                raise SchemaParseError(
                    f"Unreadable template config for note type {row['ntid']}",
                    context={"model_id": row["ntid"]},
                ) from exc
            ordinal = row.get("ord")
            model_templates.setdefault(row["ntid"], []).append(
                AnkiTemplate(
                    name=_text(row["name"]),
                    ord=ordinal if isinstance(ordinal, int) else 0,
                    qfmt=_text(qfmt),
                    afmt=_text(afmt),
                )
            )

    result: dict[int, AnkiModel] = {}
    for row in db.scan("notetypes", required=("name",), integers=("id",)):
        model_id = row["id"]
        field_names = model_fields.get(model_id)
        if not field_names:
            raise SchemaParseError(
                f"Note type {model_id} lacks a field-name list", context={"model_id": model_id}
            )
        try:
            config = _blob(row.get("config"))
            kind = first_field(config, NOTETYPE_KIND)
            sort_field = first_field(config, NOTETYPE_SORT_FIELD)
        except ProtobufDecodeError as exc:
            raise SchemaParseError(
                f"Unreadable config for note type {model_id}", context={"model_id": model_id}
            ) from exc

        result[model_id] = AnkiModel(
            model_id=model_id,
            name=_text(row["name"]),
            kind=ModelKind.CLOZE if kind == MODEL_TYPE_CLOZE else ModelKind.STANDARD,
            field_names=tuple(field_names),
            templates=tuple(model_templates.get(model_id, [])),
            sort_field_index=sort_field if isinstance(sort_field, int) else 0,
        )
    return result


def _read_decks_modern(db: CollectionDatabase) -> tuple[dict[int, AnkiDeck], list[ParseWarning]]:
    """Read decks from the modern decks table."""
    decks: dict[int, AnkiDeck] = {}
    warnings: list[ParseWarning] = []

    for row in db.scan("decks", required=("name",), integers=("id",)):
        deck_id = row["id"]
        name = _text(row["name"]).replace(NATIVE_DECK_SEPARATOR, DECK_PATH_SEPARATOR)
        if not is_valid_deck_name(name):
            warnings.append(_deck_warning(deck_id, name, f"Deck {deck_id} has an invalid name"))
            continue

        try:
            kind = _blob(row.get("kind"))
            normal = first_field(kind, DECK_KIND_NORMAL)
            dynamic = first_field(kind, DECK_KIND_FILTERED) is not None
            config_id = first_field(normal, DECK_NORMAL_CONFIG_ID) if isinstance(normal, bytes) else None
            description = first_field(normal, DECK_NORMAL_DESCRIPTION) if isinstance(normal, bytes) else None
        except ProtobufDecodeError:
            warnings.append(_deck_warning(deck_id, name, f"Deck {deck_id} has an unreadable config"))
            continue

        decks[deck_id] = AnkiDeck(
            deck_id=deck_id,
            name=name,
            description=_text(description) or None,
            config_id=config_id if isinstance(config_id, int) else None,
            dynamic=dynamic,
        )

    return decks, warnings


def decode_schema(db: CollectionDatabase) -> CollectionSchema:
    """Decode models and decks of a collection.

    Raises:
        SchemaParseError: If the models or decks cannot be read at all.
        CorruptDatabaseError: If the collection row is missing or repeated.
    """
    row = db.read_collection_row()

    if db.has_modern_schema():
        models = _read_models_modern(db)
        decks, warnings = _read_decks_modern(db)
    else:
        models = parse_models(row.models)
        decks, warnings = parse_decks(row.decks)

    for warning in warnings:
        logger.warning("apkg_deck_rejected", reason=warning.message, **warning.context)
    logger.debug("apkg_schema_decoded", models=len(models), decks=len(decks))

    return CollectionSchema(models=models, decks=decks, warnings=warnings)
