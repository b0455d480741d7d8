"""Importer configuration using pydantic-settings."""

from functools import lru_cache

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from packages.common.exceptions import ConfigurationError

KNOWN_COLLECTION_ENTRIES = ("collection.anki21b", "collection.anki21", "collection.anki2")


class ImportSettings(BaseSettings):
    """Limits and behaviour switches for a single import call.

    Values come from keyword arguments or ``APKG_*`` environment variables.
    """

    model_config = SettingsConfigDict(
        env_prefix="APKG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Resource caps
    max_archive_bytes: int = Field(
        default=100 * 1024 * 1024,
        description="Cap on the upload size and on the total decompressed size of its entries",
    )
    max_note_count: int = Field(
        default=100_000,
        description="Maximum number of note rows processed",
    )
    max_card_count: int = Field(
        default=250_000,
        description="Maximum number of card rows processed",
    )
    max_media_count: int = Field(
        default=10_000,
        description="Maximum number of media manifest entries resolved",
    )
    max_compression_ratio: int = Field(
        default=200,
        description="Largest uncompressed/compressed ratio accepted for one archive entry",
    )

    # Behaviour
    strict_field_counts: bool = Field(
        default=False,
        description="Treat a note/model field count mismatch as fatal instead of a warning",
    )
    collection_priority: tuple[str, ...] = Field(
        default=KNOWN_COLLECTION_ENTRIES,
        description="Collection database entry names, probed in this order",
    )
    media_workers: int = Field(
        default=4,
        description="Worker threads used to decode media entries",
    )

    @field_validator(
        "max_archive_bytes",
        "max_note_count",
        "max_card_count",
        "max_media_count",
        "max_compression_ratio",
        "media_workers",
    )
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Validate integer settings that must be positive."""
        if v <= 0:
            raise ValueError("value must be positive")
        return v

    @field_validator("collection_priority")
    @classmethod
    def validate_collection_priority(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        """Validate that only known collection entry names are listed."""
        if not v:
            raise ValueError("collection_priority must not be empty")
        unknown = [name for name in v if name not in KNOWN_COLLECTION_ENTRIES]
        if unknown:
            raise ValueError(
                f"Unknown collection entries: {unknown}. "
                f"Valid entries: {list(KNOWN_COLLECTION_ENTRIES)}"
            )
        if len(set(v)) != len(v):
            raise ValueError("collection_priority must not repeat entries")
        return v


@lru_cache
def get_settings() -> ImportSettings:
    """Get cached settings instance."""
    return ImportSettings()


def load_settings(**overrides: object) -> ImportSettings:
    """Build settings from overrides plus the environment.

    Raises:
        ConfigurationError: If any value fails validation.
    """
    try:
        return ImportSettings(**overrides)
    except ValidationError as e:
        errors = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        raise ConfigurationError(
            f"Invalid import settings: {errors[0]['field']}: {errors[0]['message']}",
            context={"errors": errors},
        ) from e
