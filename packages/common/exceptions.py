"""Custom exception hierarchy for the APKG importer.

This module defines the fatal error kinds an import can end with:
- One class per failure kind so callers never need a catch-all
- A stable ``kind`` string for API responses and warning reports
- Structured logging context
"""

from __future__ import annotations


class ApkgImportError(Exception):
    """Base exception for all importer errors.

    All custom exceptions inherit from this to enable:
    - Centralized exception handling by the host route
    - Consistent error logging patterns
    - Type-safe error catching
    """

    kind = "ApkgImportError"

    def __init__(self, message: str, *, context: dict[str, object] | None = None) -> None:
        """Initialize error with message and optional context.

        Args:
            message: Human-readable error description.
            context: Additional key-value pairs for structured logging.
        """
        super().__init__(message)
        self.context = context or {}

    def to_dict(self) -> dict[str, object]:
        """Serializable form for host API responses."""
        return {"kind": self.kind, "message": str(self), "context": self.context}


class MalformedContainerError(ApkgImportError):
    """The outer zip archive cannot be opened or fails its sanity checks."""

    kind = "MalformedContainer"


class UnsupportedFormatError(ApkgImportError):
    """No recognizable collection database entry in the archive."""

    kind = "UnsupportedFormat"


class CorruptDatabaseError(ApkgImportError):
    """The embedded SQLite database fails structural checks."""

    kind = "CorruptDatabase"


class SchemaParseError(ApkgImportError):
    """Model or deck definitions are unreadable."""

    kind = "SchemaParseError"


class ResourceLimitExceededError(ApkgImportError):
    """A configured size or count cap was exceeded."""

    kind = "ResourceLimitExceeded"


class FieldCountMismatchError(ApkgImportError):
    """A note's field count differs from its model (strict mode only)."""

    kind = "FieldCountMismatch"


class ConfigurationError(ApkgImportError):
    """Invalid or missing configuration."""

    kind = "Configuration"
