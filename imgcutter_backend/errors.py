"""Error kinds raised by the session registry, file manager and image codec.

Callers branch on the exception class (or its ``kind``), never on the message.
Low-level OS errors are collapsed into :class:`FilesystemError`; the original
error is chained as ``__cause__`` and logged where it happened.
"""
from __future__ import annotations


class ImgCutterError(Exception):
    kind = "ImgCutterError"
    default_message = "image cutter error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class NilSessionError(ImgCutterError):
    kind = "NilSession"
    default_message = "no session given"


class SessionNotFoundError(ImgCutterError):
    kind = "SessionNotFound"
    default_message = "session not found"


class NoSuchFileError(ImgCutterError):
    kind = "FileNotFound"
    default_message = "no such file"


class TileTooSmallError(ImgCutterError):
    kind = "TileTooSmall"
    default_message = "cut too small"


class UnsupportedFormatError(ImgCutterError):
    kind = "UnsupportedFormat"
    default_message = "unsupported image format"


class FilesystemError(ImgCutterError):
    kind = "FilesystemError"
    default_message = "filesystem error"


class InvalidFileNameError(ImgCutterError):
    kind = "InvalidFileName"
    default_message = "invalid file name"
