"""Zip container extraction for .apkg uploads."""

import io
import threading
import zipfile
import zlib
from collections.abc import Callable
from typing import Any

import zstandard

from packages.apkg.models import RawEntry
from packages.common.config import ImportSettings, get_settings
from packages.common.exceptions import MalformedContainerError, ResourceLimitExceededError
from packages.common.logging import get_logger

logger = get_logger(module=__name__)

SUPPORTED_COMPRESSION = {zipfile.ZIP_STORED, zipfile.ZIP_DEFLATED}

# Small members compress extremely well when mostly empty (fresh SQLite
# pages, short JSON); the ratio guard only applies above this size.
RATIO_CHECK_MIN_BYTES = 1024 * 1024

ZSTD_READ_SIZE = 1024 * 1024

_READ_ERRORS = (zipfile.BadZipFile, zlib.error, EOFError, OSError, NotImplementedError, RuntimeError)


class ApkgArchive:
    """Name -> bytes view over an in-memory zip archive.

    Members are decompressed only when read. The central directory is
    checked up front so an oversized or inconsistent archive is rejected
    before any member is inflated.
    """

    def __init__(self, data: bytes, settings: ImportSettings | None = None) -> None:
        """Open and validate the archive held in ``data``."""
        self.settings = settings or get_settings()
        if len(data) > self.settings.max_archive_bytes:
            raise ResourceLimitExceededError(
                f"Archive is {len(data)} bytes, limit is {self.settings.max_archive_bytes}",
                context={"size": len(data), "limit": self.settings.max_archive_bytes},
            )

        try:
            self._zip = zipfile.ZipFile(io.BytesIO(data))
        except (zipfile.BadZipFile, zipfile.LargeZipFile, ValueError, OSError, EOFError) as exc:
            raise MalformedContainerError(f"Unreadable zip archive: {exc}") from exc

        self._size = len(data)
        self._infos: dict[str, zipfile.ZipInfo] = {}
        self._bytes_read = 0
        self._lock = threading.Lock()

        try:
            self._validate_directory()
        except Exception:
            self._zip.close()
            raise

    def __enter__(self) -> "ApkgArchive":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        self.close()

    def close(self) -> None:
        """Release the underlying zip handle."""
        self._zip.close()

    def _validate_directory(self) -> None:
        """Check every central directory record before anything is inflated."""
        declared_total = 0
        for info in self._zip.infolist():
            if info.is_dir():
                continue
            name = info.filename
            context = {"entry": name}

            if info.flag_bits & 0x1:
                raise MalformedContainerError(f"Encrypted entry: {name}", context=context)
            if info.compress_type not in SUPPORTED_COMPRESSION:
                raise MalformedContainerError(
                    f"Unsupported compression method {info.compress_type} for {name}",
                    context=context,
                )
            if info.header_offset + info.compress_size > self._size:
                raise MalformedContainerError(
                    f"Entry {name} extends beyond the end of the archive",
                    context=context,
                )
            if info.file_size >= RATIO_CHECK_MIN_BYTES:
                ratio = info.file_size / max(info.compress_size, 1)
                if ratio > self.settings.max_compression_ratio:
                    raise MalformedContainerError(
                        f"Entry {name} has suspicious compression ratio {ratio:.0f}",
                        context={**context, "ratio": round(ratio), "limit": self.settings.max_compression_ratio},
                    )

            declared_total += info.file_size
            self._infos[name] = info

        if declared_total > self.settings.max_archive_bytes:
            raise ResourceLimitExceededError(
                f"Archive declares {declared_total} uncompressed bytes, "
                f"limit is {self.settings.max_archive_bytes}",
                context={"declared": declared_total, "limit": self.settings.max_archive_bytes},
            )

        logger.debug("apkg_archive_opened", entries=len(self._infos), declared_bytes=declared_total)

    def names(self) -> list[str]:
        """Entry names in central directory order."""
        return list(self._infos)

    def __contains__(self, name: object) -> bool:
        return name in self._infos

    def size_of(self, name: str) -> int:
        """Declared uncompressed size of an entry."""
        return self._infos[name].file_size

    def account(self, size: int, entry: str | None = None) -> None:
        """Charge decompressed bytes to the archive-wide budget.

        Zip members and the zstd payloads inside them share one
        ``max_archive_bytes`` budget. Safe to call from worker threads.

        Raises:
            ResourceLimitExceededError: If the running total passes the limit.
        """
        with self._lock:
            self._bytes_read += size
            total = self._bytes_read
        if total > self.settings.max_archive_bytes:
            raise ResourceLimitExceededError(
                "Decompressed archive content exceeds the size limit",
                context={"entry": entry, "total": total, "limit": self.settings.max_archive_bytes},
            )

    def inflate_zstd(self, data: bytes, entry: str) -> bytes:
        """Inflate a zstd payload read from ``entry``, charged to the shared budget."""
        return decompress_zstd(
            data,
            self.settings.max_archive_bytes,
            account=lambda size: self.account(size, entry),
        )

    def read(self, name: str) -> RawEntry:
        """Inflate one entry, bounded by its declared size.

        Raises:
            KeyError: If the archive has no such entry.
            MalformedContainerError: If the member is corrupt or inflates
                past its declared size.
        """
        info = self._infos[name]
        try:
            with self._zip.open(info) as handle:
                data = handle.read(info.file_size + 1)
        except _READ_ERRORS as exc:
            raise MalformedContainerError(
                f"Cannot read entry {name}: {exc}", context={"entry": name}
            ) from exc

        if len(data) != info.file_size:
            raise MalformedContainerError(
                f"Entry {name} inflated to {len(data)} bytes, declared {info.file_size}",
                context={"entry": name},
            )

        self.account(len(data), name)
        return RawEntry(name=name, size=len(data), data=data)


def decompress_zstd(
    data: bytes,
    limit: int,
    account: Callable[[int], None] | None = None,
) -> bytes:
    """Inflate a zstd frame, refusing to produce more than ``limit`` bytes.

    ``account`` is called with the size of every chunk produced, before the
    next one is read, so a caller-side budget can stop the stream early.

    Raises:
        zstandard.ZstdError: If the frame is invalid; callers classify it.
        ResourceLimitExceededError: If the output exceeds ``limit``.
    """
    chunks: list[bytes] = []
    total = 0
    with zstandard.ZstdDecompressor().stream_reader(io.BytesIO(data)) as reader:
        while True:
            chunk = reader.read(ZSTD_READ_SIZE)
            if not chunk:
                break
            total += len(chunk)
            if total > limit:
                raise ResourceLimitExceededError(
                    "Decompressed entry exceeds the size limit", context={"limit": limit}
                )
            if account is not None:
                account(len(chunk))
            chunks.append(chunk)
    return b"".join(chunks)


def open_archive(data: bytes, settings: ImportSettings | None = None) -> ApkgArchive:
    """Open an .apkg upload held in memory.

    Args:
        data: Raw archive bytes as uploaded.
        settings: Import limits; defaults to the cached settings.

    Returns:
        An ``ApkgArchive``; use it as a context manager.
    """
    return ApkgArchive(data, settings)
