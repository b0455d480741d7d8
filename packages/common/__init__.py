# Common utilities

from packages.common.config import ImportSettings, get_settings, load_settings
from packages.common.exceptions import (
    ApkgImportError,
    ConfigurationError,
    CorruptDatabaseError,
    FieldCountMismatchError,
    MalformedContainerError,
    ResourceLimitExceededError,
    SchemaParseError,
    UnsupportedFormatError,
)
from packages.common.logging import (
    configure_logging,
    current_import_id,
    get_logger,
    import_scope,
)

__all__ = [
    "ApkgImportError",
    "ConfigurationError",
    "CorruptDatabaseError",
    "FieldCountMismatchError",
    "ImportSettings",
    "MalformedContainerError",
    "ResourceLimitExceededError",
    "SchemaParseError",
    "UnsupportedFormatError",
    "configure_logging",
    "current_import_id",
    "get_logger",
    "get_settings",
    "import_scope",
    "load_settings",
]
