"""Card assembly: card -> note -> deck linkage and per-deck grouping."""

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from packages.apkg.database import CollectionDatabase
from packages.apkg.media import MediaResolution
from packages.apkg.models import (
    AnkiCard,
    AnkiModel,
    AnkiNote,
    CardScheduling,
    ModelKind,
    ParsedCard,
    ParsedDeck,
    ParseWarning,
    WarningKind,
)
from packages.apkg.normalizer import clean_html, cloze_answer, cloze_front
from packages.apkg.schema import CollectionSchema
from packages.common.config import ImportSettings, get_settings
from packages.common.exceptions import ResourceLimitExceededError
from packages.common.logging import get_logger

logger = get_logger(module=__name__)


@dataclass
class AssemblyResult:
    """Decks in first-card order and the warnings raised while linking."""

    decks: list[ParsedDeck] = field(default_factory=list)
    warnings: list[ParseWarning] = field(default_factory=list)
    omitted_decks: list[str] = field(default_factory=list)


def _int(value: Any) -> int:
    return value if isinstance(value, int) else 0


def read_cards(db: CollectionDatabase, settings: ImportSettings) -> Iterator[AnkiCard]:
    """Yield card rows in table order.

    Raises:
        ResourceLimitExceededError: If there are more than ``max_card_count`` rows.
        CorruptDatabaseError: If a card id, note id or deck id is missing or not an integer.
    """
    for count, row in enumerate(db.scan_cards(), start=1):
        if count > settings.max_card_count:
            raise ResourceLimitExceededError(
                f"Collection has more than {settings.max_card_count} cards",
                context={"limit": settings.max_card_count},
            )
        yield AnkiCard(
            card_id=row["id"],
            note_id=row["nid"],
            deck_id=row["did"],
            ord=_int(row.get("ord")),
            type=_int(row.get("type")),
            queue=_int(row.get("queue")),
            due=_int(row.get("due")),
            ivl=_int(row.get("ivl")),
            factor=_int(row.get("factor")),
            reps=_int(row.get("reps")),
            lapses=_int(row.get("lapses")),
        )


def build_card(
    card: AnkiCard,
    note: AnkiNote,
    model: AnkiModel,
    fields: tuple[str, ...],
    media_files: tuple[str, ...],
) -> ParsedCard:
    """Flatten a card and its note into the host-facing form.

    Standard note types show the first field on the front and the second on
    the back. Cloze note types ask the deletion matching the card ordinal.
    """
    first = clean_html(fields[0]) if fields else ""
    second = clean_html(fields[1]) if len(fields) > 1 else ""

    if model.kind == ModelKind.CLOZE:
        front = cloze_front(first, card.ord + 1)
        back = second or cloze_answer(first, card.ord + 1)
    else:
        front, back = first, second

    return ParsedCard(
        card_id=card.card_id,
        note_id=note.note_id,
        guid=note.guid,
        ordinal=card.ord,
        kind=model.kind,
        front=front,
        back=back,
        field_names=model.field_names,
        fields=fields,
        tags=note.tags,
        media_files=media_files,
        checksum=note.checksum,
        scheduling=CardScheduling(
            type=card.type,
            queue=card.queue,
            due=card.due,
            interval=card.ivl,
            factor=card.factor,
            repetitions=card.reps,
            lapses=card.lapses,
        ),
    )


def _orphan(card: AnkiCard, reason: str, message: str) -> ParseWarning:
    return ParseWarning(
        kind=WarningKind.ORPHAN_CARD,
        message=message,
        context={
            "card_id": card.card_id,
            "note_id": card.note_id,
            "deck_id": card.deck_id,
            "reason": reason,
        },
    )


def assemble_decks(
    db: CollectionDatabase,
    notes: dict[int, AnkiNote],
    media: MediaResolution,
    schema: CollectionSchema,
    settings: ImportSettings | None = None,
) -> AssemblyResult:
    """Link every card to its note and deck and group cards per deck.

    Cards keep their table order inside each deck. A card whose note or deck
    is missing is skipped with an ``OrphanCard`` warning. Decks that end up
    without cards are left out; those that lost cards to filtering are
    reported in ``omitted_decks``.
    """
    settings = settings or get_settings()
    result = AssemblyResult()
    grouped: dict[int, list[ParsedCard]] = {}
    referenced: set[int] = set()

    for card in read_cards(db, settings):
        referenced.add(card.deck_id)

        note = notes.get(card.note_id)
        if note is None:
            result.warnings.append(
                _orphan(card, "missing_note", f"Card {card.card_id} references missing note {card.note_id}")
            )
            continue

        deck = schema.decks.get(card.deck_id)
        if deck is None:
            result.warnings.append(
                _orphan(card, "missing_deck", f"Card {card.card_id} references missing deck {card.deck_id}")
            )
            continue

        parsed = build_card(
            card,
            note,
            schema.models[note.model_id],
            media.fields.get(note.note_id, note.fields),
            media.files.get(note.note_id, ()),
        )
        grouped.setdefault(deck.deck_id, []).append(parsed)

    for deck_id, cards in grouped.items():
        deck = schema.decks[deck_id]
        result.decks.append(
            ParsedDeck(deck_id=deck_id, name=deck.name, description=deck.description, cards=tuple(cards))
        )

    result.omitted_decks = [
        deck.name for deck_id, deck in schema.decks.items() if deck_id in referenced and deck_id not in grouped
    ]

    logger.debug(
        "apkg_cards_assembled",
        decks=len(result.decks),
        orphan_cards=len(result.warnings),
        omitted_decks=len(result.omitted_decks),
    )
    return result
