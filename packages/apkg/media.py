"""Media manifest decoding and field media resolution.

Packages store media files under numeric names (``0``, ``1``, ...) next to a
``media`` manifest mapping those names back to the original filenames:

- legacy packages: a JSON object ``{"0": "audio.mp3", "1": "image.png"}``
- ``anki21b`` packages: a zstd-compressed protobuf ``MediaEntries`` message
  whose entry order is the numeric name; the files are zstd-compressed too.

Fields reference media by original filename through ``<img src="...">`` and
``[sound:...]`` markup.
"""

import html
import json
import re
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from urllib.parse import unquote

import zstandard

from packages.apkg.container import ApkgArchive, decompress_zstd
from packages.apkg.models import AnkiNote, CollectionFormat, ParseWarning, WarningKind
from packages.apkg.protobuf import WIRE_LEN, ProtobufDecodeError, first_field, iter_fields
from packages.common.config import ImportSettings, get_settings
from packages.common.exceptions import MalformedContainerError, ResourceLimitExceededError
from packages.common.logging import get_logger

logger = get_logger(module=__name__)

MEDIA_MANIFEST = "media"
ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"

# MediaEntries.entries = 1, MediaEntry.name = 1
MEDIA_ENTRIES_FIELD = 1
MEDIA_ENTRY_NAME = 1

SOUND_PATTERN = re.compile(r"\[sound:([^\]]+)\]")
IMG_PATTERN = re.compile(
    r"""(<img\b[^>]*?\ssrc=)(?:"([^"]*)"|'([^']*)'|([^\s>"']+))""", re.IGNORECASE
)
REMOTE_PREFIXES = ("http://", "https://", "data:", "//")


def _parse_protobuf_manifest(data: bytes) -> dict[str, str]:
    mapping: dict[str, str] = {}
    index = 0
    for number, wire_type, value in iter_fields(data):
        if number != MEDIA_ENTRIES_FIELD or wire_type != WIRE_LEN or not isinstance(value, bytes):
            continue
        name = first_field(value, MEDIA_ENTRY_NAME)
        if isinstance(name, bytes) and name:
            mapping[str(index)] = name.decode("utf-8")
        index += 1
    return mapping


def parse_manifest(
    data: bytes,
    limit: int,
    account: Callable[[int], None] | None = None,
) -> dict[str, str]:
    """Decode a media manifest in either the JSON or the protobuf form.

    A zstd-compressed manifest is inflated first; ``account`` receives the
    inflated sizes as in ``decompress_zstd``.

    Raises:
        MalformedContainerError: If the manifest cannot be decoded.
    """
    try:
        if data.startswith(ZSTD_MAGIC):
            data = decompress_zstd(data, limit, account)
        if data.lstrip().startswith(b"{"):
            manifest = json.loads(data.decode("utf-8"))
        else:
            manifest = _parse_protobuf_manifest(data)
    except (
        zstandard.ZstdError,
        UnicodeDecodeError,
        json.JSONDecodeError,
        RecursionError,
        ProtobufDecodeError,
    ) as exc:
        raise MalformedContainerError(f"Unreadable media manifest: {exc}", context={"entry": MEDIA_MANIFEST}) from exc

    if not isinstance(manifest, dict) or not all(
        isinstance(key, str) and isinstance(value, str) for key, value in manifest.items()
    ):
        raise MalformedContainerError(
            "Media manifest is not a name -> filename mapping", context={"entry": MEDIA_MANIFEST}
        )
    return manifest


@dataclass
class MediaLibrary:
    """Media manifest plus the bytes found in the archive, by original name."""

    manifest: dict[str, str] = field(default_factory=dict)
    files: dict[str, bytes] = field(default_factory=dict)

    def resolve_name(self, reference: str) -> str | None:
        """Map a field reference to an original filename with bytes, if any."""
        for candidate in (reference, html.unescape(reference), unquote(html.unescape(reference))):
            if candidate in self.files:
                return candidate
            original = self.manifest.get(candidate)
            if original is not None and original in self.files:
                return original
        return None


def load_media(
    archive: ApkgArchive,
    fmt: CollectionFormat,
    settings: ImportSettings | None = None,
) -> MediaLibrary:
    """Read the media manifest and the media bytes it names.

    Manifest entries whose numeric file is absent from the archive are left
    out of ``files``.

    Raises:
        ResourceLimitExceededError: If the manifest names more than ``max_media_count`` files.
        MalformedContainerError: If the manifest or a media file is unreadable.
    """
    settings = settings or get_settings()
    if MEDIA_MANIFEST not in archive:
        return MediaLibrary()

    manifest = parse_manifest(
        archive.read(MEDIA_MANIFEST).data,
        settings.max_archive_bytes,
        account=lambda size: archive.account(size, MEDIA_MANIFEST),
    )
    if len(manifest) > settings.max_media_count:
        raise ResourceLimitExceededError(
            f"Media manifest lists {len(manifest)} files, limit is {settings.max_media_count}",
            context={"count": len(manifest), "limit": settings.max_media_count},
        )

    present = [key for key in manifest if key in archive]

    def read_one(key: str) -> bytes:
        data = archive.read(key).data
        if fmt.compressed and data.startswith(ZSTD_MAGIC):
            try:
                data = archive.inflate_zstd(data, key)
            except zstandard.ZstdError as exc:
                raise MalformedContainerError(
                    f"Cannot decompress media file {key}: {exc}", context={"entry": key}
                ) from exc
        return data

    files: dict[str, bytes] = {}
    with ThreadPoolExecutor(max_workers=settings.media_workers) as pool:
        for key, data in zip(present, pool.map(read_one, present), strict=True):
            files.setdefault(manifest[key], data)

    logger.debug("apkg_media_loaded", manifest_entries=len(manifest), files=len(files))
    return MediaLibrary(manifest=manifest, files=files)


@dataclass
class MediaResolution:
    """Per-note fields with media references resolved."""

    fields: dict[int, tuple[str, ...]] = field(default_factory=dict)
    files: dict[int, tuple[str, ...]] = field(default_factory=dict)
    warnings: list[ParseWarning] = field(default_factory=list)


def resolve_field(text: str, library: MediaLibrary) -> tuple[str, list[str], list[str]]:
    """Resolve the media references of one field.

    Returns:
        ``(text, resolved, unresolved)``: the field with numeric on-disk
        names replaced by original names, the original names referenced,
        and the references that could not be matched to media bytes.
    """
    resolved: list[str] = []
    unresolved: list[str] = []

    def lookup(reference: str) -> str:
        if not reference or reference.lower().startswith(REMOTE_PREFIXES):
            return reference
        name = library.resolve_name(reference)
        if name is None:
            unresolved.append(reference)
            return reference
        if name not in resolved:
            resolved.append(name)
        return name

    def replace_img(match: re.Match[str]) -> str:
        if match.group(2) is not None:
            return f'{match.group(1)}"{lookup(match.group(2))}"'
        if match.group(3) is not None:
            return f"{match.group(1)}'{lookup(match.group(3))}'"
        return f"{match.group(1)}{lookup(match.group(4))}"

    def replace_sound(match: re.Match[str]) -> str:
        return f"[sound:{lookup(match.group(1))}]"

    text = IMG_PATTERN.sub(replace_img, text)
    text = SOUND_PATTERN.sub(replace_sound, text)
    return text, resolved, unresolved


def resolve_notes(notes: dict[int, AnkiNote], library: MediaLibrary) -> MediaResolution:
    """Resolve media references for every note, in note order.

    Each reference without media bytes yields one ``UnresolvedMedia`` warning.
    """
    result = MediaResolution()
    for note_id, note in notes.items():
        fields: list[str] = []
        files: list[str] = []
        for index, value in enumerate(note.fields):
            text, resolved, unresolved = resolve_field(value, library)
            fields.append(text)
            files.extend(name for name in resolved if name not in files)
            for reference in unresolved:
                result.warnings.append(
                    ParseWarning(
                        kind=WarningKind.UNRESOLVED_MEDIA,
                        message=f"Note {note_id} references missing media {reference!r}",
                        context={"note_id": note_id, "field_index": index, "reference": reference},
                    )
                )
        result.fields[note_id] = tuple(fields)
        result.files[note_id] = tuple(files)
    return result
