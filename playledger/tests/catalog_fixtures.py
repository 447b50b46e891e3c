"""Reference encoder for binary catalog fixtures."""
import struct

from playledger.parsers.binary_catalog import CATALOG_MAGIC


class U64(int):
    """Marks a value to be encoded with the 64-bit tag."""


def _intern(table: list[str], value: str) -> int:
    if value not in table:
        table.append(value)
    return table.index(value)


def encode_tree(tree: dict, table: list[str] | None) -> bytes:
    out = b""
    for key, value in tree.items():
        key_bytes = struct.pack("<I", _intern(table, key)) if table is not None else key.encode() + b"\x00"
        if isinstance(value, dict):
            out += b"\x00" + key_bytes + encode_tree(value, table)
        elif isinstance(value, str):
            value_bytes = (
                struct.pack("<I", _intern(table, value)) if table is not None else value.encode() + b"\x00"
            )
            out += b"\x01" + key_bytes + value_bytes
        elif isinstance(value, U64):
            out += b"\x07" + key_bytes + struct.pack("<Q", value)
        else:
            out += b"\x02" + key_bytes + struct.pack("<i", value)
    return out + b"\x08"


def build_catalog(apps: list[dict], version: int = 41, universe: int = 1) -> bytes:
    table: list[str] | None = [] if version >= 41 else None
    body = b""
    for app in apps:
        fields = struct.pack(
            "<IIQ",
            app.get("info_state", 2),
            app.get("last_updated", 1_700_000_000),
            app.get("token", 0),
        )
        fields += app.get("sha1", b"\x11" * 20)
        fields += struct.pack("<I", app.get("change_number", 1))
        if version >= 40:
            fields += app.get("binary_hash", b"\x22" * 20)
        payload = fields + encode_tree(app.get("metadata", {}), table)
        body += struct.pack("<II", app["app_id"], len(payload)) + payload
    body += struct.pack("<I", 0)

    header = struct.pack("<II", (CATALOG_MAGIC << 8) | version, universe)
    if version < 41:
        return header + body
    offset = len(header) + 8 + len(body)
    strings = b"".join(s.encode() + b"\x00" for s in table)
    return header + struct.pack("<Q", offset) + body + struct.pack("<I", len(table)) + strings

