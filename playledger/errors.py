"""Error taxonomy shared by the decoders, parsers and the session tracker."""
from __future__ import annotations


class PlayLedgerError(Exception):
    """Base class for PlayLedger errors."""


class FormatError(PlayLedgerError):
    """The binary catalog cannot be decoded at all."""


class BadMagicError(FormatError):
    def __init__(self, magic: int, expected: int):
        super().__init__(f"Unknown magic header: 0x{magic:06X} (expected 0x{expected:06X})")
        self.magic = magic
        self.expected = expected


class UnsupportedVersionError(FormatError):
    def __init__(self, version: int, minimum: int, maximum: int):
        super().__init__(f"Unsupported version: {version} (only v{minimum}-v{maximum} supported)")
        self.version = version


class TruncationWarning(UserWarning):
    """Input ended early; the results returned are a partial decode."""


class ParseError(PlayLedgerError):
    """A textual KeyValues document is structurally malformed."""

    def __init__(self, message: str, line: int | None = None):
        if line is not None:
            message = f"{message} (line {line})"
        super().__init__(message)
        self.line = line


class PersistenceFailure(PlayLedgerError):
    """The session store rejected or failed a read/write."""
