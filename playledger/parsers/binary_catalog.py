"""Decode the platform's binary app catalog (``appinfo.vdf``, versions 39-41).

Layout::

    u32   magic (high 24 bits) | version (low 8 bits)
    u32   universe
    u64   string table offset               (v41+)
    entry*:
        u32   app id                        (0 terminates the stream)
        u32   size of everything below
        u32   info state
        u32   last updated (unix seconds)
        u64   access token
        20b   sha1 of the text metadata
        u32   change number
        20b   sha1 of the binary metadata   (v40+)
        ...   metadata tree
    string table                            (v41+): u32 count, NUL-terminated strings

Metadata tree fields are ``tag key value``. In v41 keys, and most string
values, are u32 indices into the string table.
"""
from __future__ import annotations

import logging
import struct
import warnings
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union

from playledger import config
from playledger.errors import BadMagicError, FormatError, TruncationWarning, UnsupportedVersionError
from playledger.observability import record_parser_failure

logger = logging.getLogger("playledger.catalog")

CATALOG_MAGIC = 0x075644
MIN_VERSION = 39
MAX_VERSION = 41
BINARY_HASH_VERSION = 40
STRING_TABLE_VERSION = 41

TAG_OBJECT = 0x00
TAG_STRING = 0x01
TAG_INT32 = 0x02
TAG_UINT64 = 0x07
TAG_END = 0x08

_U32 = struct.Struct("<I")
_I32 = struct.Struct("<i")
_U64 = struct.Struct("<Q")
_HASH_SIZE = 20


# ── Metadata tree ──────────────────────────────────────────────────

@dataclass
class ObjectNode:
    children: dict[str, MetadataNode] = field(default_factory=dict)


@dataclass(frozen=True)
class StringNode:
    value: str


@dataclass(frozen=True)
class Int32Node:
    value: int


@dataclass(frozen=True)
class UInt64Node:
    value: int


MetadataNode = Union[ObjectNode, StringNode, Int32Node, UInt64Node]


@dataclass
class CatalogEntry:
    app_id: int
    info_state: int
    last_updated: datetime
    access_token: int
    sha1_hash: bytes
    change_number: int
    binary_data_hash: Optional[bytes]
    metadata: ObjectNode = field(default_factory=ObjectNode)


def tree_get(node: MetadataNode | None, *path: str) -> MetadataNode | None:
    """Walk object children by key (case-insensitive); None when any hop is missing."""
    current = node
    for key in path:
        if not isinstance(current, ObjectNode):
            return None
        found = current.children.get(key)
        if found is None:
            lowered = key.lower()
            found = next(
                (child for name, child in current.children.items() if name.lower() == lowered),
                None,
            )
        if found is None:
            return None
        current = found
    return current


def node_text(node: MetadataNode | None) -> str | None:
    if isinstance(node, StringNode):
        return node.value
    if isinstance(node, (Int32Node, UInt64Node)):
        return str(node.value)
    return None


def tree_to_dict(node: MetadataNode) -> Any:
    """Render a tree as plain JSON-friendly values (64-bit values as strings)."""
    if isinstance(node, ObjectNode):
        return {key: tree_to_dict(child) for key, child in node.children.items()}
    if isinstance(node, UInt64Node):
        return str(node.value)
    return node.value


def describe_entry(entry: CatalogEntry) -> dict[str, Any]:
    """Pull the load-bearing display fields out of an entry's metadata."""
    common = tree_get(entry.metadata, "appinfo", "common")
    extended = tree_get(entry.metadata, "appinfo", "extended")

    oslist_raw = node_text(tree_get(common, "oslist")) or ""
    return {
        "name": node_text(tree_get(common, "name")),
        "type": node_text(tree_get(common, "type")),
        "oslist": [token.strip() for token in oslist_raw.split(",") if token.strip()],
        "developer": node_text(tree_get(common, "developer")) or node_text(tree_get(extended, "developer")),
        "publisher": node_text(tree_get(common, "publisher")) or node_text(tree_get(extended, "publisher")),
    }


# ── Decoder ────────────────────────────────────────────────────────

def _truncated(message: str) -> None:
    logger.warning(message)
    record_parser_failure("binary_catalog")
    warnings.warn(message, TruncationWarning, stacklevel=3)


def _read_cstring(buf: bytes, pos: int, end: int) -> tuple[str | None, int]:
    nul = buf.find(b"\x00", pos, end)
    if nul < 0:
        return None, pos
    return buf[pos:nul].decode("utf-8", errors="replace"), nul + 1


def _read_string_table(buf: bytes, offset: int) -> tuple[list[str], bool]:
    """Read the v41 string table; the flag is False when the table is cut short."""
    table: list[str] = []
    if offset + 4 > len(buf):
        _truncated(f"String table offset {offset} lies beyond the buffer ({len(buf)} bytes)")
        return table, False

    count = _U32.unpack_from(buf, offset)[0]
    pos = offset + 4
    for _ in range(count):
        value, pos = _read_cstring(buf, pos, len(buf))
        if value is None:
            _truncated(f"String table ended after {len(table)} of {count} strings")
            return table, False
        table.append(value)
    logger.debug(f"Read string table with {len(table)} strings")
    return table, True


def _read_key(
    buf: bytes,
    pos: int,
    end: int,
    string_table: list[str] | None,
) -> tuple[str | None, int]:
    if string_table is None:
        return _read_cstring(buf, pos, end)
    if pos + 4 > end:
        return None, pos
    index = _U32.unpack_from(buf, pos)[0]
    if index < len(string_table):
        return string_table[index], pos + 4
    return f"<{index}>", pos + 4


def _read_value(
    tag: int,
    buf: bytes,
    pos: int,
    end: int,
    string_table: list[str] | None,
) -> tuple[MetadataNode | None, int]:
    if tag == TAG_STRING:
        if string_table is not None and pos + 4 <= end:
            index = _U32.unpack_from(buf, pos)[0]
            if index < len(string_table):
                return StringNode(string_table[index]), pos + 4
        # Inline string: pre-v41 layout, and the fallback for indices past the table.
        text, pos = _read_cstring(buf, pos, end)
        return (StringNode(text) if text is not None else None), pos
    if tag == TAG_INT32:
        if pos + 4 > end:
            return None, pos
        return Int32Node(_I32.unpack_from(buf, pos)[0]), pos + 4
    if tag == TAG_UINT64:
        if pos + 8 > end:
            return None, pos
        return UInt64Node(_U64.unpack_from(buf, pos)[0]), pos + 8
    return None, pos


def decode_tree(buf: bytes, pos: int, end: int, string_table: list[str] | None = None) -> ObjectNode:
    """Decode a metadata tree between ``pos`` and ``end``.

    ``string_table`` is None for layouts with inline keys. Decoding never reads
    past ``end``: short fields stop it, unknown tags close the current object.
    """
    root = ObjectNode()
    stack: list[ObjectNode] = [root]
    while stack and pos < end:
        tag = buf[pos]
        pos += 1
        current = stack[-1]

        if tag == TAG_END:
            stack.pop()
            continue
        if tag not in (TAG_OBJECT, TAG_STRING, TAG_INT32, TAG_UINT64):
            logger.debug(f"Unknown metadata tag 0x{tag:02x} at offset {pos - 1}")
            stack.pop()
            continue

        key, pos = _read_key(buf, pos, end, string_table)
        if key is None:
            break

        if tag == TAG_OBJECT:
            child = ObjectNode()
            current.children[key] = child
            stack.append(child)
            continue

        value, pos = _read_value(tag, buf, pos, end, string_table)
        if value is None:
            break
        current.children[key] = value
    return root


def _decode_entry(
    buf: bytes,
    app_id: int,
    pos: int,
    end: int,
    version: int,
    string_table: list[str] | None,
    with_metadata: bool = True,
) -> CatalogEntry | None:
    fixed = 4 + 4 + 8 + _HASH_SIZE + 4
    if version >= BINARY_HASH_VERSION:
        fixed += _HASH_SIZE
    if pos + fixed > end:
        logger.warning(f"AppID {app_id}: entry of {end - pos} bytes is shorter than its fixed fields")
        return None

    info_state, last_updated = struct.unpack_from("<II", buf, pos)
    pos += 8
    token = _U64.unpack_from(buf, pos)[0]
    pos += 8
    sha1_hash = bytes(buf[pos:pos + _HASH_SIZE])
    pos += _HASH_SIZE
    change_number = _U32.unpack_from(buf, pos)[0]
    pos += 4
    binary_hash = None
    if version >= BINARY_HASH_VERSION:
        binary_hash = bytes(buf[pos:pos + _HASH_SIZE])
        pos += _HASH_SIZE

    return CatalogEntry(
        app_id=app_id,
        info_state=info_state,
        last_updated=datetime.fromtimestamp(last_updated, tz=timezone.utc),
        access_token=token,
        sha1_hash=sha1_hash,
        change_number=change_number,
        binary_data_hash=binary_hash,
        metadata=decode_tree(buf, pos, end, string_table) if with_metadata else ObjectNode(),
    )


def decode(buffer: bytes, max_entries: int | None = None) -> list[CatalogEntry]:
    """Decode a catalog buffer into its entries.

    Raises ``FormatError`` for a bad header. Truncated input returns the
    entries decoded before the damage and issues a ``TruncationWarning``.
    When a v41 string table is cut short, entries keep their fixed fields
    but carry empty metadata.
    """
    buf = bytes(buffer)
    if len(buf) < 4:
        raise FormatError(f"Catalog buffer too short for a header ({len(buf)} bytes)")

    header = _U32.unpack_from(buf, 0)[0]
    version = header & 0xFF
    magic = header >> 8
    if magic != CATALOG_MAGIC:
        raise BadMagicError(magic, CATALOG_MAGIC)
    if not MIN_VERSION <= version <= MAX_VERSION:
        raise UnsupportedVersionError(version, MIN_VERSION, MAX_VERSION)

    pos = 4
    if pos + 4 > len(buf):
        _truncated("Catalog ended before the universe field")
        return []
    universe = _U32.unpack_from(buf, pos)[0]
    pos += 4
    logger.debug(f"Catalog version {version}, universe {universe}")

    string_table: list[str] | None = None
    table_complete = True
    if version >= STRING_TABLE_VERSION:
        if pos + 8 > len(buf):
            _truncated("Catalog ended before the string table offset")
            return []
        low, high = struct.unpack_from("<II", buf, pos)
        pos += 8
        string_table, table_complete = _read_string_table(buf, low + high * 0x1_0000_0000)
        if not table_complete:
            logger.warning("String table incomplete; catalog metadata will be empty")

    limit = config.MAX_CATALOG_ENTRIES if max_entries is None else max_entries
    entries: list[CatalogEntry] = []
    while True:
        if pos + 8 > len(buf):
            if pos + 4 <= len(buf) and _U32.unpack_from(buf, pos)[0] == 0:
                break
            _truncated(f"Catalog ended at offset {pos} without an end marker")
            break

        app_id = _U32.unpack_from(buf, pos)[0]
        pos += 4
        if app_id == 0:
            break

        size = _U32.unpack_from(buf, pos)[0]
        pos += 4
        end = pos + size
        if end > len(buf):
            _truncated(f"AppID {app_id}: entry ends at {end}, past the buffer ({len(buf)} bytes)")
            break

        entry = _decode_entry(buf, app_id, pos, end, version, string_table, table_complete)
        if entry is not None:
            entries.append(entry)
        pos = end

        if len(entries) >= limit:
            logger.warning(f"Stopped after {limit} catalog entries")
            break

    logger.info(f"Decoded {len(entries)} catalog entries (v{version})")
    return entries


def decode_file(path: Path, max_entries: int | None = None) -> list[CatalogEntry]:
    """Decode a catalog file; a missing or unreadable file yields no entries."""
    try:
        buf = path.read_bytes()
    except OSError as exc:
        logger.warning(f"Cannot read catalog {path}: {exc}")
        return []
    return decode(buf, max_entries=max_entries)
