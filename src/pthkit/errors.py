"""Structured error types for checkpoint decoding and archive access."""

from __future__ import annotations

from pathlib import Path


class PthError(Exception):
    """Base class for pthkit failures."""


class PickleFormatError(PthError, ValueError):
    """The graph-description stream or the decoded graph is malformed."""

    def __init__(
        self,
        message: str,
        *,
        opcode: int | None = None,
        offset: int | None = None,
        archive: Path | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.opcode = opcode
        self.offset = offset
        self.archive = archive

    def __str__(self) -> str:
        text = self.message
        if self.opcode is not None:
            text += f" (opcode 0x{self.opcode:02x} {chr(self.opcode)!r}"
            if self.offset is not None:
                text += f" at offset {self.offset}"
            text += ")"
        if self.archive is not None:
            text = f"{self.archive}: {text}"
        return text


class UnknownDtypeError(PickleFormatError):
    """A tensor references a storage class outside the supported table."""

    def __init__(self, storage: str, **kwargs) -> None:
        super().__init__(f"unknown torch dtype {storage!r}", **kwargs)
        self.storage = storage


class ArchiveError(PthError, OSError):
    """Opening or reading a checkpoint archive failed."""

    def __init__(
        self, message: str, *, archive: Path | None = None, entry: str | None = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.archive = archive
        self.entry = entry

    def __str__(self) -> str:
        text = self.message
        if self.entry is not None:
            text = f"{text} [{self.entry}]"
        if self.archive is not None:
            text = f"{self.archive}: {text}"
        return text
