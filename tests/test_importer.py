"""End-to-end tests for the .apkg import pipeline."""

import json
from collections.abc import Callable
from pathlib import Path

import pytest

from packages.apkg import (
    APKGParseResult,
    CollectionFormat,
    ModelKind,
    WarningKind,
    parse_apkg,
    parse_apkg_file,
)
from packages.common.config import ImportSettings
from packages.common.exceptions import (
    ApkgImportError,
    FieldCountMismatchError,
    MalformedContainerError,
    ResourceLimitExceededError,
    UnsupportedFormatError,
)

from .conftest import BASIC_MODEL_ID, COLORS_DECK_ID, basic_model, deck, media_entries_proto


class TestColorsDeck:
    """A single Basic note in a single deck."""

    def test_one_deck_one_card(self, colors_apkg: bytes, settings: ImportSettings) -> None:
        """The deck, its card and the note fields come through."""
        result = parse_apkg(colors_apkg, settings)

        assert result.format == CollectionFormat.ANKI2
        assert result.warnings == ()
        assert len(result.decks) == 1

        colors = result.decks[0]
        assert colors.name == "Colors"
        assert colors.deck_id == COLORS_DECK_ID
        assert colors.parent_name is None
        assert len(colors.cards) == 1

        card = colors.cards[0]
        assert card.front == "Red"
        assert card.back == "Rojo"
        assert card.fields == ("Red", "Rojo")
        assert card.tags == ("color", "basic")
        assert card.kind == ModelKind.STANDARD
        assert card.note_id == 1000000001
        assert card.card_id == 2000000001

    def test_parsing_is_deterministic(self, colors_apkg: bytes, settings: ImportSettings) -> None:
        """The same bytes always give the same result."""
        assert parse_apkg(colors_apkg, settings) == parse_apkg(colors_apkg, settings)

    def test_parse_file(self, colors_apkg: bytes, temp_dir: Path, settings: ImportSettings) -> None:
        """Files on disk parse like their bytes."""
        path = temp_dir / "colors.apkg"
        path.write_bytes(colors_apkg)
        assert parse_apkg_file(path, settings) == parse_apkg(colors_apkg, settings)

    def test_result_serializes(self, colors_apkg: bytes, settings: ImportSettings) -> None:
        """The result without media bytes is JSON-serializable."""
        payload = parse_apkg(colors_apkg, settings).model_dump(mode="json", exclude={"media"})
        assert json.loads(json.dumps(payload))["decks"][0]["cards"][0]["front"] == "Red"

    def test_default_settings(self, colors_apkg: bytes) -> None:
        """Settings are optional."""
        assert parse_apkg(colors_apkg).total_cards == 1


class TestWarnings:
    """Non-fatal conditions produce warnings next to a best-effort result."""

    def test_orphan_card(
        self, make_collection: Callable[..., bytes], make_apkg: Callable[..., bytes], settings: ImportSettings
    ) -> None:
        """A card whose note is missing is skipped with exactly one warning."""
        database = make_collection(
            notes=[(1000000001, BASIC_MODEL_ID, "color basic", "Red\x1fRojo")],
            cards=[(2000000001, 1000000001, COLORS_DECK_ID, 0), (2000000002, 1000000099, COLORS_DECK_ID, 0)],
        )

        result = parse_apkg(make_apkg(database), settings)

        assert result.total_cards == 1
        assert len(result.warnings) == 1
        assert result.warnings[0].kind == WarningKind.ORPHAN_CARD
        assert result.warnings[0].context["card_id"] == 2000000002

    def test_short_note_padded(
        self, make_collection: Callable[..., bytes], make_apkg: Callable[..., bytes], settings: ImportSettings
    ) -> None:
        """A note shorter than its model is padded and reported."""
        database = make_collection(
            models={str(BASIC_MODEL_ID): basic_model(fields=("Front", "Back", "Extra"))},
            notes=[(1, BASIC_MODEL_ID, "", "Red\x1fRojo")],
            cards=[(2, 1, COLORS_DECK_ID, 0)],
        )

        result = parse_apkg(make_apkg(database), settings)

        assert result.decks[0].cards[0].fields == ("Red", "Rojo", "")
        assert [w.kind for w in result.warnings] == [WarningKind.FIELD_COUNT_MISMATCH]

    def test_short_note_strict(
        self, make_collection: Callable[..., bytes], make_apkg: Callable[..., bytes]
    ) -> None:
        """In strict mode the same package is rejected."""
        database = make_collection(
            models={str(BASIC_MODEL_ID): basic_model(fields=("Front", "Back", "Extra"))},
            notes=[(1, BASIC_MODEL_ID, "", "Red\x1fRojo")],
            cards=[(2, 1, COLORS_DECK_ID, 0)],
        )

        with pytest.raises(FieldCountMismatchError):
            parse_apkg(make_apkg(database), ImportSettings(strict_field_counts=True))

    def test_warning_order(
        self, make_collection: Callable[..., bytes], make_apkg: Callable[..., bytes], settings: ImportSettings
    ) -> None:
        """Warnings are reported stage by stage: schema, notes, media, cards."""
        database = make_collection(
            decks={str(COLORS_DECK_ID): deck(COLORS_DECK_ID, "Colors"), "5": deck(5, "Spanish::")},
            notes=[
                (1, BASIC_MODEL_ID, "", '<img src="missing.png">\x1fRojo'),
                (2, 4242, "", "orphan\x1fnote"),
            ],
            cards=[(10, 1, COLORS_DECK_ID, 0), (11, 2, COLORS_DECK_ID, 0)],
        )

        result = parse_apkg(make_apkg(database), settings)

        assert [w.kind for w in result.warnings] == [
            WarningKind.SCHEMA_PARSE_ERROR,
            WarningKind.ORPHAN_NOTE,
            WarningKind.UNRESOLVED_MEDIA,
            WarningKind.ORPHAN_CARD,
        ]
        assert len(result.warnings_of(WarningKind.ORPHAN_CARD)) == 1
        assert result.total_cards == 1

    def test_decks_without_surviving_cards_omitted(
        self, make_collection: Callable[..., bytes], make_apkg: Callable[..., bytes], settings: ImportSettings
    ) -> None:
        """A deck appears only if at least one of its cards survives."""
        database = make_collection(
            decks={"1": deck(1, "Kept"), "2": deck(2, "Emptied"), "3": deck(3, "Never used")},
            notes=[(1, BASIC_MODEL_ID, "", "a\x1fb")],
            cards=[(10, 1, 1, 0), (11, 404, 2, 0)],
        )

        result = parse_apkg(make_apkg(database), settings)

        assert [d.name for d in result.decks] == ["Kept"]
        assert all(d.cards for d in result.decks)
        assert result.omitted_decks == ("Emptied",)
        assert [w.kind for w in result.warnings] == [WarningKind.ORPHAN_CARD]


class TestDeckHierarchy:
    """Nested deck names."""

    def test_deck_tree(
        self, make_collection: Callable[..., bytes], make_apkg: Callable[..., bytes], settings: ImportSettings
    ) -> None:
        """Parents are derived from the :: separated names."""
        database = make_collection(
            decks={"1": deck(1, "Languages"), "2": deck(2, "Languages::Spanish::Verbs")},
            notes=[(1, BASIC_MODEL_ID, "", "a\x1fb"), (2, BASIC_MODEL_ID, "", "c\x1fd")],
            cards=[(10, 1, 1, 0), (11, 2, 2, 0)],
        )

        result = parse_apkg(make_apkg(database), settings)

        assert result.deck_tree() == {
            "Languages": None,
            "Languages::Spanish::Verbs": "Languages::Spanish",
        }
        assert result.decks[1].path == ("Languages", "Spanish", "Verbs")


class TestModernPackage:
    """anki21b packages with zstd compression and protobuf metadata."""

    def test_modern_package_with_media(
        self,
        make_modern_collection: Callable[..., bytes],
        make_apkg: Callable[..., bytes],
        zstd: Callable[[bytes], bytes],
        settings: ImportSettings,
    ) -> None:
        """Decks, cloze cards and media resolve from the modern layout."""
        database = make_modern_collection(
            notetypes={
                10: ("Basic", ["Front", "Back"], False),
                20: ("Cloze", ["Text", "Back Extra"], True),
            },
            decks={1: ("Default", ""), 7: ("Languages\x1fSpanish", "Vocabulary")},
            notes=[
                (100, 10, "es", 'Rojo <img src="red.png">\x1fRed [sound:rojo.mp3]'),
                (200, 20, "", "{{c1::Madrid}} is the capital of {{c2::Spain}}\x1f"),
            ],
            cards=[(1000, 100, 7, 0), (2000, 200, 7, 0), (2001, 200, 7, 1)],
        )
        data = make_apkg(
            zstd(database),
            db_name="collection.anki21b",
            media=zstd(media_entries_proto(["red.png", "rojo.mp3"])),
            files={"0": zstd(b"\x89PNG red"), "1": zstd(b"ID3 rojo")},
            extra={"collection.anki2": b"placeholder"},
        )

        result = parse_apkg(data, settings)

        assert result.format == CollectionFormat.ANKI21B
        assert result.warnings == ()
        assert [d.name for d in result.decks] == ["Languages::Spanish"]
        spanish = result.decks[0]
        assert spanish.description == "Vocabulary"
        assert spanish.parent_name == "Languages"

        basic, cloze_one, cloze_two = spanish.cards
        assert basic.front == "Rojo"
        assert basic.back == "Red [sound:rojo.mp3]"
        assert basic.media_files == ("red.png", "rojo.mp3")
        assert cloze_one.front == "{{Madrid}} is the capital of Spain"
        assert cloze_two.front == "Madrid is the capital of {{Spain}}"
        assert cloze_two.back == "Spain"

        assert result.media == {"red.png": b"\x89PNG red", "rojo.mp3": b"ID3 rojo"}
        assert result.total_media == 2


class TestFatalErrors:
    """Fatal conditions abort with a typed error and no partial result."""

    def test_not_a_zip(self, settings: ImportSettings) -> None:
        """Arbitrary bytes are a malformed container."""
        with pytest.raises(MalformedContainerError):
            parse_apkg(b"not an apkg", settings)

    def test_no_collection(self, make_apkg: Callable[..., bytes], settings: ImportSettings) -> None:
        """A zip without a collection database is unsupported."""
        with pytest.raises(UnsupportedFormatError):
            parse_apkg(make_apkg(None, media={}), settings)

    def test_archive_size_limit(self, colors_apkg: bytes) -> None:
        """Uploads over the byte cap are rejected."""
        with pytest.raises(ResourceLimitExceededError):
            parse_apkg(colors_apkg, ImportSettings(max_archive_bytes=1024))

    def test_errors_share_base_class(self, settings: ImportSettings) -> None:
        """Every fatal error is an ApkgImportError with a kind."""
        with pytest.raises(ApkgImportError) as exc_info:
            parse_apkg(b"", settings)
        assert exc_info.value.kind == "MalformedContainer"


def test_result_model_is_frozen(colors_apkg: bytes, settings: ImportSettings) -> None:
    """Results are immutable."""
    result: APKGParseResult = parse_apkg(colors_apkg, settings)
    with pytest.raises(ValueError):
        result.decks = ()  # type: ignore[misc]
