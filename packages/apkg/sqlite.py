"""Minimal reader for the SQLite database file format.

Anki collections are SQLite files. The importer only ever needs full scans
of a handful of tables, so instead of handing untrusted bytes to a database
engine this module walks the b-tree pages directly:

- validates the 100-byte file header,
- walks table b-trees (rowid tables) and index b-trees (``WITHOUT ROWID``
  tables) in key order, following overflow chains,
- decodes records into Python values,
- reads column names from the ``CREATE TABLE`` text in ``sqlite_master``.

Every structural problem surfaces as ``CorruptDatabaseError``. Reference:
https://www.sqlite.org/fileformat2.html
"""

import re
import struct
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from packages.common.exceptions import CorruptDatabaseError

HEADER_MAGIC = b"SQLite format 3\x00"
HEADER_SIZE = 100

PAGE_INTERIOR_INDEX = 0x02
PAGE_INTERIOR_TABLE = 0x05
PAGE_LEAF_INDEX = 0x0A
PAGE_LEAF_TABLE = 0x0D

TEXT_ENCODINGS = {1: "utf-8", 2: "utf-16-le", 3: "utf-16-be"}

# Byte widths of the integer serial types 1-6
INT_SIZES = {1: 1, 2: 2, 3: 3, 4: 4, 5: 6, 6: 8}

SCHEMA_TABLE = "sqlite_master"
SCHEMA_COLUMNS = ("type", "name", "tbl_name", "rootpage", "sql")

TABLE_CONSTRAINTS = {"constraint", "primary", "unique", "check", "foreign"}
SQL_COMMENT_PATTERN = re.compile(r"--[^\n]*|/\*.*?\*/", re.DOTALL)
PRIMARY_KEY_PATTERN = re.compile(r"\bprimary\s+key\b", re.IGNORECASE)
TABLE_PRIMARY_KEY_PATTERN = re.compile(
    r"^(?:constraint\s+\S+\s+)?primary\s+key\s*\((.*)\)", re.IGNORECASE | re.DOTALL
)
WITHOUT_ROWID_PATTERN = re.compile(r"\bwithout\s+rowid\b", re.IGNORECASE)
DESC_PATTERN = re.compile(r"\bprimary\s+key\s+desc\b", re.IGNORECASE)


def read_varint(buf: bytes, pos: int) -> tuple[int, int]:
    """Read a SQLite varint (1-9 bytes, big-endian); return ``(value, new_pos)``."""
    value = 0
    for _ in range(8):
        if pos >= len(buf):
            raise CorruptDatabaseError("Truncated varint")
        byte = buf[pos]
        pos += 1
        value = (value << 7) | (byte & 0x7F)
        if byte < 0x80:
            return value, pos
    if pos >= len(buf):
        raise CorruptDatabaseError("Truncated varint")
    return (value << 8) | buf[pos], pos + 1


def _signed64(value: int) -> int:
    return value - (1 << 64) if value >= 1 << 63 else value


def decode_record(payload: bytes, encoding: str = "utf-8") -> list[Any]:
    """Decode one record into a list of column values."""
    header_size, pos = read_varint(payload, 0)
    if header_size < pos or header_size > len(payload):
        raise CorruptDatabaseError("Record header size out of range")

    serial_types: list[int] = []
    while pos < header_size:
        serial_type, pos = read_varint(payload, pos)
        serial_types.append(serial_type)
    if pos != header_size:
        raise CorruptDatabaseError("Record header overruns its declared size")

    values: list[Any] = []
    body = header_size
    for serial_type in serial_types:
        if serial_type == 0:
            values.append(None)
            continue
        if serial_type == 8:
            values.append(0)
            continue
        if serial_type == 9:
            values.append(1)
            continue
        if serial_type in (10, 11):
            raise CorruptDatabaseError(f"Reserved serial type {serial_type}")

        if serial_type in INT_SIZES:
            size = INT_SIZES[serial_type]
        elif serial_type == 7:
            size = 8
        else:
            size = (serial_type - 12) // 2 if serial_type % 2 == 0 else (serial_type - 13) // 2

        if body + size > len(payload):
            raise CorruptDatabaseError("Record value overruns its payload")
        raw = payload[body : body + size]
        body += size

        if serial_type in INT_SIZES:
            values.append(int.from_bytes(raw, "big", signed=True))
        elif serial_type == 7:
            values.append(struct.unpack(">d", raw)[0])
        elif serial_type % 2 == 0:
            values.append(bytes(raw))
        else:
            values.append(raw.decode(encoding, errors="replace"))
    return values


@dataclass(frozen=True)
class TableInfo:
    """Layout of one table as declared in ``sqlite_master``."""

    name: str
    root_page: int
    columns: tuple[str, ...]
    rowid_alias: int | None = None  # Column index of an INTEGER PRIMARY KEY
    without_rowid: bool = False
    storage_order: tuple[int, ...] = ()  # Column indexes in on-disk order (WITHOUT ROWID)


def _split_top_level(text: str) -> list[str]:
    """Split on commas that are not nested in parentheses or quotes."""
    parts: list[str] = []
    depth = 0
    quote: str | None = None
    current: list[str] = []
    closing = {'"': '"', "'": "'", "`": "`", "[": "]"}
    for char in text:
        if quote is not None:
            current.append(char)
            if char == quote:
                quote = None
            continue
        if char in closing:
            quote = closing[char]
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        elif char == "," and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(char)
    parts.append("".join(current))
    return [part.strip() for part in parts if part.strip()]


def _split_identifier(definition: str) -> tuple[str, str]:
    """Split a column definition into its (unquoted) name and the rest."""
    closing = {'"': '"', "`": "`", "[": "]"}
    first = definition[0]
    if first in closing:
        end = definition.find(closing[first], 1)
        if end == -1:
            raise CorruptDatabaseError(f"Unterminated identifier in {definition!r}")
        return definition[1:end], definition[end + 1 :].strip()
    name, *rest = definition.split(None, 1)
    return name, rest[0].strip() if rest else ""


def parse_create_table(name: str, root_page: int, sql: str) -> TableInfo:
    """Derive column layout from a ``CREATE TABLE`` statement."""
    sql = SQL_COMMENT_PATTERN.sub(" ", sql)
    open_idx = sql.find("(")
    close_idx = sql.rfind(")")
    if open_idx == -1 or close_idx <= open_idx:
        raise CorruptDatabaseError(f"Unparseable schema for table {name}", context={"table": name})

    without_rowid = WITHOUT_ROWID_PATTERN.search(sql[close_idx + 1 :]) is not None
    columns: list[str] = []
    primary_key: list[str] = []
    rowid_alias: int | None = None

    for definition in _split_top_level(sql[open_idx + 1 : close_idx]):
        keyword = definition.split(None, 1)[0].lower()
        if keyword in TABLE_CONSTRAINTS:
            match = TABLE_PRIMARY_KEY_PATTERN.match(definition)
            if match:
                primary_key = [
                    _split_identifier(part)[0] for part in _split_top_level(match.group(1))
                ]
            continue

        column, rest = _split_identifier(definition)
        columns.append(column)
        if PRIMARY_KEY_PATTERN.search(rest):
            primary_key = [column]
            declared_type = rest.split(None, 1)[0].lower() if rest else ""
            if declared_type == "integer" and not DESC_PATTERN.search(rest):
                rowid_alias = len(columns) - 1

    if not columns:
        raise CorruptDatabaseError(f"Table {name} declares no columns", context={"table": name})

    storage_order: tuple[int, ...] = ()
    if without_rowid:
        rowid_alias = None
        lowered = [c.lower() for c in columns]
        try:
            key_idx = [lowered.index(c.lower()) for c in primary_key]
        except ValueError as exc:
            raise CorruptDatabaseError(
                f"Primary key of {name} names an unknown column", context={"table": name}
            ) from exc
        storage_order = (*key_idx, *(i for i in range(len(columns)) if i not in key_idx))

    return TableInfo(
        name=name,
        root_page=root_page,
        columns=tuple(columns),
        rowid_alias=rowid_alias,
        without_rowid=without_rowid,
        storage_order=storage_order,
    )


class SQLiteFile:
    """Read-only view over the bytes of a SQLite database file."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._read_header()
        self._schema = self._read_schema()

    def _read_header(self) -> None:
        data = self._data
        if len(data) < HEADER_SIZE:
            raise CorruptDatabaseError("Database is shorter than its header")
        if data[:16] != HEADER_MAGIC:
            raise CorruptDatabaseError("Not a SQLite database")

        page_size = struct.unpack_from(">H", data, 16)[0]
        if page_size == 1:
            page_size = 65536
        if page_size < 512 or page_size > 65536 or page_size & (page_size - 1):
            raise CorruptDatabaseError(f"Invalid page size {page_size}", context={"page_size": page_size})

        if data[18] not in (1, 2) or data[19] not in (1, 2):
            raise CorruptDatabaseError("Unsupported file format version")
        reserved = data[20]
        if page_size - reserved < 480:
            raise CorruptDatabaseError("Reserved space leaves too small a usable page")
        if data[21:24] != b"\x40\x20\x20":
            raise CorruptDatabaseError("Invalid payload fractions")

        declared_pages = struct.unpack_from(">I", data, 28)[0]
        change_counter = struct.unpack_from(">I", data, 24)[0]
        valid_for = struct.unpack_from(">I", data, 92)[0]
        if declared_pages and change_counter == valid_for:
            if len(data) < declared_pages * page_size:
                raise CorruptDatabaseError(
                    "Database file is truncated",
                    context={"declared_pages": declared_pages, "size": len(data)},
                )
            page_count = declared_pages
        else:
            page_count = len(data) // page_size
        if page_count < 1:
            raise CorruptDatabaseError("Database file is truncated")

        encoding_id = struct.unpack_from(">I", data, 56)[0] or 1
        if encoding_id not in TEXT_ENCODINGS:
            raise CorruptDatabaseError(f"Unknown text encoding {encoding_id}")

        self.page_size = page_size
        self.usable_size = page_size - reserved
        self.page_count = page_count
        self.encoding = TEXT_ENCODINGS[encoding_id]

    def _page(self, number: int) -> bytes:
        if not 1 <= number <= self.page_count:
            raise CorruptDatabaseError(f"Page {number} out of range", context={"page": number})
        start = (number - 1) * self.page_size
        page = self._data[start : start + self.page_size]
        if len(page) != self.page_size:
            raise CorruptDatabaseError("Database file is truncated", context={"page": number})
        return page

    def _u32(self, page: bytes, offset: int) -> int:
        if offset + 4 > len(page):
            raise CorruptDatabaseError("Pointer outside page")
        return struct.unpack_from(">I", page, offset)[0]

    def _cells(self, number: int) -> tuple[bytes, int, int, list[int]]:
        """Return ``(page, page_type, right_pointer, cell_offsets)``."""
        page = self._page(number)
        header = HEADER_SIZE if number == 1 else 0
        page_type = page[header]
        if page_type in (PAGE_LEAF_TABLE, PAGE_LEAF_INDEX):
            header_size = 8
            right = 0
        elif page_type in (PAGE_INTERIOR_TABLE, PAGE_INTERIOR_INDEX):
            header_size = 12
            right = self._u32(page, header + 8)
        else:
            raise CorruptDatabaseError(
                f"Unknown b-tree page type {page_type:#x}", context={"page": number}
            )

        cell_count = struct.unpack_from(">H", page, header + 3)[0]
        array_start = header + header_size
        array_end = array_start + 2 * cell_count
        if array_end > self.usable_size:
            raise CorruptDatabaseError("Cell pointer array overflows page", context={"page": number})

        offsets = []
        for i in range(cell_count):
            offset = struct.unpack_from(">H", page, array_start + 2 * i)[0]
            if offset < array_end or offset >= self.usable_size:
                raise CorruptDatabaseError("Cell pointer out of bounds", context={"page": number})
            offsets.append(offset)
        return page, page_type, right, offsets

    def _payload(self, page: bytes, pos: int, size: int, *, index: bool) -> bytes:
        """Assemble a cell payload, following its overflow chain if any."""
        usable = self.usable_size
        if size > self.page_count * usable:
            raise CorruptDatabaseError("Payload larger than the database")

        max_local = ((usable - 12) * 64 // 255) - 23 if index else usable - 35
        if size <= max_local:
            local = size
        else:
            min_local = ((usable - 12) * 32 // 255) - 23
            local = min_local + ((size - min_local) % (usable - 4))
            if local > max_local:
                local = min_local
        if pos + local > usable:
            raise CorruptDatabaseError("Cell payload overflows page")

        parts = [page[pos : pos + local]]
        remaining = size - local
        if remaining:
            overflow = self._u32(page, pos + local)
            seen: set[int] = set()
            while remaining > 0:
                if overflow == 0 or overflow in seen:
                    raise CorruptDatabaseError("Broken overflow chain", context={"page": overflow})
                seen.add(overflow)
                overflow_page = self._page(overflow)
                chunk = overflow_page[4 : 4 + min(remaining, usable - 4)]
                parts.append(chunk)
                remaining -= len(chunk)
                overflow = self._u32(overflow_page, 0)
        return b"".join(parts)

    def _walk_table(self, root: int) -> Iterator[tuple[int, bytes]]:
        """Yield ``(rowid, payload)`` for every row of a table b-tree in rowid order."""
        visited: set[int] = set()
        stack = [root]
        while stack:
            number = stack.pop()
            if number in visited:
                raise CorruptDatabaseError("B-tree page cycle", context={"page": number})
            visited.add(number)

            page, page_type, right, offsets = self._cells(number)
            if page_type == PAGE_LEAF_TABLE:
                for offset in offsets:
                    size, pos = read_varint(page, offset)
                    rowid, pos = read_varint(page, pos)
                    yield _signed64(rowid), self._payload(page, pos, size, index=False)
            elif page_type == PAGE_INTERIOR_TABLE:
                children = [self._u32(page, offset) for offset in offsets]
                children.append(right)
                stack.extend(reversed(children))
            else:
                raise CorruptDatabaseError("Index page inside a table b-tree", context={"page": number})

    def _walk_index(self, root: int) -> Iterator[bytes]:
        """Yield every key payload of an index b-tree in key order."""
        visited: set[int] = set()
        # Page numbers and interior-cell keys interleaved in visiting order
        stack: list[int | bytes] = [root]
        while stack:
            item = stack.pop()
            if isinstance(item, bytes):
                yield item
                continue

            if item in visited:
                raise CorruptDatabaseError("B-tree page cycle", context={"page": item})
            visited.add(item)

            page, page_type, right, offsets = self._cells(item)
            if page_type == PAGE_LEAF_INDEX:
                for offset in offsets:
                    size, pos = read_varint(page, offset)
                    yield self._payload(page, pos, size, index=True)
            elif page_type == PAGE_INTERIOR_INDEX:
                pending: list[int | bytes] = []
                for offset in offsets:
                    size, pos = read_varint(page, offset + 4)
                    pending.append(self._u32(page, offset))
                    pending.append(self._payload(page, pos, size, index=True))
                pending.append(right)
                stack.extend(reversed(pending))
            else:
                raise CorruptDatabaseError("Table page inside an index b-tree", context={"page": item})

    def _read_schema(self) -> dict[str, tuple[int, str]]:
        schema: dict[str, tuple[int, str]] = {}
        for _, payload in self._walk_table(1):
            row = dict(zip(SCHEMA_COLUMNS, decode_record(payload, self.encoding), strict=False))
            if row.get("type") != "table" or not isinstance(row.get("name"), str):
                continue
            root_page = row.get("rootpage")
            sql = row.get("sql")
            if not isinstance(root_page, int) or root_page <= 0 or not isinstance(sql, str):
                continue  # Virtual tables have no b-tree
            schema[row["name"].lower()] = (root_page, sql)
        return schema

    def tables(self) -> list[str]:
        """Names of the b-tree backed tables, lowercased."""
        return list(self._schema)

    def has_table(self, name: str) -> bool:
        return name.lower() in self._schema

    def table(self, name: str) -> TableInfo:
        """Layout of a table.

        Raises:
            KeyError: If the database has no such table.
        """
        root_page, sql = self._schema[name.lower()]
        return parse_create_table(name, root_page, sql)

    def scan(self, name: str) -> Iterator[dict[str, Any]]:
        """Yield every row of a table as a column -> value dict, in key order."""
        info = self.table(name)
        width = len(info.columns)

        if info.without_rowid:
            for payload in self._walk_index(info.root_page):
                stored = decode_record(payload, self.encoding)
                values: list[Any] = [None] * width
                for position, column_idx in enumerate(info.storage_order):
                    if position < len(stored):
                        values[column_idx] = stored[position]
                yield dict(zip(info.columns, values, strict=True))
            return

        for rowid, payload in self._walk_table(info.root_page):
            values = decode_record(payload, self.encoding)[:width]
            values.extend([None] * (width - len(values)))
            if info.rowid_alias is not None:
                values[info.rowid_alias] = rowid
            yield dict(zip(info.columns, values, strict=True))
