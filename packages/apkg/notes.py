"""Note decoding: field splitting, tags and checksums."""

from dataclasses import dataclass, field
from typing import Any

from packages.apkg.database import CollectionDatabase
from packages.apkg.models import AnkiModel, AnkiNote, ParseWarning, WarningKind
from packages.apkg.normalizer import field_checksum, split_tags, strip_html_media
from packages.apkg.schema import CollectionSchema
from packages.common.config import ImportSettings, get_settings
from packages.common.exceptions import FieldCountMismatchError, ResourceLimitExceededError
from packages.common.logging import get_logger

logger = get_logger(module=__name__)

# Anki field separator
FIELD_SEPARATOR = "\x1f"


@dataclass
class NoteDecodeResult:
    """Notes keyed by id, in table order, plus the warnings raised."""

    notes: dict[int, AnkiNote] = field(default_factory=dict)
    warnings: list[ParseWarning] = field(default_factory=list)


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if value is None:
        return ""
    return str(value)


def align_fields(values: list[str], model: AnkiModel) -> tuple[str, ...]:
    """Pad missing trailing fields with ``""`` and drop surplus ones."""
    expected = model.field_count
    if len(values) < expected:
        return (*values, *([""] * (expected - len(values))))
    return tuple(values[:expected])


def decode_notes(
    db: CollectionDatabase,
    schema: CollectionSchema,
    settings: ImportSettings | None = None,
) -> NoteDecodeResult:
    """Read every note row and align its fields with its model.

    Notes whose model is unknown are skipped with an ``OrphanNote`` warning.
    A field count that disagrees with the model is repaired with a
    ``FieldCountMismatch`` warning, or raised under ``strict_field_counts``.

    Raises:
        ResourceLimitExceededError: If there are more than ``max_note_count`` rows.
        CorruptDatabaseError: If the notes table lacks a required column or
            holds a non-integer id.
        FieldCountMismatchError: On a field count mismatch in strict mode.
    """
    settings = settings or get_settings()
    result = NoteDecodeResult()

    for count, row in enumerate(db.scan_notes(), start=1):
        if count > settings.max_note_count:
            raise ResourceLimitExceededError(
                f"Collection has more than {settings.max_note_count} notes",
                context={"limit": settings.max_note_count},
            )

        note_id = row["id"]
        model_id = row["mid"]
        model = schema.models.get(model_id)
        if model is None:
            result.warnings.append(
                ParseWarning(
                    kind=WarningKind.ORPHAN_NOTE,
                    message=f"Note {note_id} references unknown note type {model_id}",
                    context={"note_id": note_id, "model_id": model_id},
                )
            )
            continue

        values = _text(row["flds"]).split(FIELD_SEPARATOR)
        if len(values) != model.field_count:
            context = {
                "note_id": note_id,
                "model_id": model_id,
                "expected": model.field_count,
                "actual": len(values),
            }
            if settings.strict_field_counts:
                raise FieldCountMismatchError(
                    f"Note {note_id} has {len(values)} fields, note type expects {model.field_count}",
                    context=context,
                )
            result.warnings.append(
                ParseWarning(
                    kind=WarningKind.FIELD_COUNT_MISMATCH,
                    message=f"Note {note_id} has {len(values)} fields, note type expects {model.field_count}",
                    context=context,
                )
            )
        fields = align_fields(values, model)

        sort_index = model.sort_field_index if 0 <= model.sort_field_index < len(fields) else 0
        raw_tags = _text(row.get("tags"))
        mtime = row.get("mod")

        result.notes[note_id] = AnkiNote(
            note_id=note_id,
            guid=_text(row.get("guid")),
            model_id=model_id,
            raw_tags=raw_tags,
            tags=split_tags(raw_tags),
            fields=fields,
            sort_field=strip_html_media(fields[sort_index]),
            checksum=field_checksum(fields[sort_index]),
            mtime=mtime if isinstance(mtime, int) else 0,
        )

    logger.debug("apkg_notes_decoded", notes=len(result.notes), warnings=len(result.warnings))
    return result
