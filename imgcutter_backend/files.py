"""Session-scoped file operations: upload, cut, archive lookup, delete.

Every operation holds the session's own lock for its whole duration, so
operations on one session are serialized while different sessions proceed in
parallel. The file index is updated only after the filesystem work succeeded;
OS-level failures are logged here and surface as FilesystemError.
"""
from __future__ import annotations

import dataclasses
import logging
import os
import shutil
import tempfile
import time
import zipfile
from pathlib import Path
from typing import BinaryIO

from .config import ARCHIVE_EXT, MIN_TILE_SIZE
from .errors import (
    FilesystemError,
    InvalidFileNameError,
    NilSessionError,
    NoSuchFileError,
    SessionNotFoundError,
    TileTooSmallError,
)
from .imaging import cut_image, open_image, pack_images
from .security import is_safe_basename, safe_join
from .sessions import FileRecord, Session


logger = logging.getLogger(__name__)


def _check_session(session: Session | None) -> Session:
    if session is None:
        raise NilSessionError()
    return session


def _check_active(session: Session) -> None:
    # Caller holds session.lock.
    if session.terminated:
        raise SessionNotFoundError(f"session {session.id} is terminated")


def _remove_if_present(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


class FileManager:
    def file_key(self, session: Session | None, file_name: str) -> str:
        """Index key of the uploaded file called file_name in session."""
        session = _check_session(session)
        if not is_safe_basename(file_name):
            raise InvalidFileNameError(f"invalid file name: {file_name!r}")
        return str(session.directory / file_name)

    def get_files(self, session: Session | None) -> list[FileRecord]:
        """Snapshot of the session's files, most recent upload first."""
        session = _check_session(session)
        with session.lock:
            _check_active(session)
            records = list(session.files.values())
        records.sort(key=lambda r: r.uploaded_at, reverse=True)
        return records

    def upload_file(self, session: Session | None, reader: BinaryIO, file_name: str) -> str:
        """Store the whole of reader as file_name in the session directory.

        The data goes to a temporary file in the session directory, is fsynced
        and only then renamed over file_name, so a failed upload never damages
        a file of the same name. Returns the full path, which is also the
        file's key for cut/download/delete.
        """
        session = _check_session(session)
        if not is_safe_basename(file_name):
            raise InvalidFileNameError(f"invalid file name: {file_name!r}")
        if file_name.lower().endswith(ARCHIVE_EXT):
            # Would collide with its own archive.
            raise InvalidFileNameError(f"invalid file name: {file_name!r}")

        with session.lock:
            _check_active(session)
            try:
                dest = safe_join(session.directory, file_name)
            except ValueError as exc:
                raise InvalidFileNameError(f"invalid file name: {file_name!r}") from exc

            partial_path = None
            try:
                session.directory.mkdir(parents=True, exist_ok=True)
                fd, partial_path = tempfile.mkstemp(dir=session.directory, prefix=".upload-", suffix=".part")
                with os.fdopen(fd, "wb") as fp:
                    shutil.copyfileobj(reader, fp)
                    fp.flush()
                    os.fsync(fp.fileno())
                    written = fp.tell()
            except OSError as exc:
                logger.error("error writing upload %s for session %s: %s", file_name, session.id, exc)
                if partial_path is not None:
                    self._discard_partial(partial_path)
                raise FilesystemError() from exc

            key = str(dest)
            previous = session.files.get(key)
            try:
                if previous is not None and previous.has_archive:
                    # Tiles of the image this upload replaces.
                    _remove_if_present(previous.archive_path)
                    session.files[key] = dataclasses.replace(previous, archive_path="")
                os.replace(partial_path, dest)
            except OSError as exc:
                logger.error("error storing upload %s for session %s: %s", file_name, session.id, exc)
                self._discard_partial(partial_path)
                raise FilesystemError() from exc

            session.files[key] = FileRecord(original_path=key, archive_path="", uploaded_at=time.time())

        logger.info("uploaded file %s (%d bytes) to session %s", file_name, written, session.id)
        return key

    def cut_file(self, session: Session | None, file_name: str, dx: int, dy: int) -> str:
        """Cut the uploaded file into dx x dy JPEG tiles packed in a zip.

        file_name is the key returned by upload_file. Returns the archive path.
        """
        session = _check_session(session)
        if dx < MIN_TILE_SIZE or dy < MIN_TILE_SIZE:
            raise TileTooSmallError(f"cut too small: {dx}x{dy}, minimum is {MIN_TILE_SIZE}x{MIN_TILE_SIZE}")

        with session.lock:
            _check_active(session)
            record = session.files.get(file_name)
            if record is None:
                raise NoSuchFileError(f"no such file: {Path(file_name).name}")

            try:
                img, image_format = open_image(record.original_path)
            except OSError as exc:
                logger.error("error opening %s: %s", record.original_path, exc)
                raise FilesystemError() from exc
            logger.info("decoded %s as %s %dx%d", record.name, image_format, img.width, img.height)

            grid = cut_image(img, dx, dy)

            base, _ = os.path.splitext(record.original_path)
            archive_path = base + ARCHIVE_EXT
            partial_path = archive_path + ".part"
            try:
                with zipfile.ZipFile(partial_path, mode="w", compression=zipfile.ZIP_DEFLATED) as zf:
                    entries = pack_images(zf, grid, os.path.basename(base))
                os.replace(partial_path, archive_path)
            except OSError as exc:
                logger.error("error creating archive %s: %s", archive_path, exc)
                self._discard_partial(partial_path)
                raise FilesystemError() from exc
            except Exception:
                self._discard_partial(partial_path)
                raise

            session.files[file_name] = dataclasses.replace(record, archive_path=archive_path)

        logger.info(
            "cut %s into %d tiles (%d rows x %d cols) for session %s",
            record.name, entries, len(grid), len(grid[0]) if grid else 0, session.id,
        )
        return archive_path

    def get_archive_name(self, session: Session | None, file_name: str) -> str:
        """Path of the archive cut from file_name.

        Raises NoSuchFileError when the file is unknown, was never cut, or its
        archive has disappeared from disk; all of them mean nothing to download.
        """
        session = _check_session(session)
        with session.lock:
            _check_active(session)
            record = session.files.get(file_name)
            if record is None:
                raise NoSuchFileError(f"no such file: {Path(file_name).name}")
            if not record.has_archive or not os.path.isfile(record.archive_path):
                raise NoSuchFileError(f"no archive for: {record.name}")
            return record.archive_path

    def delete_file(self, session: Session | None, file_name: str) -> None:
        """Remove the uploaded file, its archive and its index entry.

        Files already missing from disk are fine. Any other removal failure
        keeps the index entry so the delete can be retried.
        """
        session = _check_session(session)
        with session.lock:
            _check_active(session)
            record = session.files.get(file_name)
            if record is None:
                raise NoSuchFileError(f"no such file: {Path(file_name).name}")

            for path in (record.original_path, record.archive_path):
                if not path:
                    continue
                try:
                    _remove_if_present(path)
                except OSError as exc:
                    logger.error("error removing %s: %s", path, exc)
                    raise FilesystemError() from exc

            del session.files[file_name]
        logger.info("deleted file %s from session %s", record.name, session.id)

    @staticmethod
    def _discard_partial(path: str) -> None:
        try:
            _remove_if_present(path)
        except OSError as exc:
            logger.warning("could not remove partial file %s: %s", path, exc)
