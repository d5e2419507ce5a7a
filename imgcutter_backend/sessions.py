from __future__ import annotations

import logging
import shutil
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

from .errors import FilesystemError, NilSessionError
from .security import new_session_id, normalize_session_id


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileRecord:
    original_path: str
    archive_path: str = ""
    uploaded_at: float = 0.0

    @property
    def name(self) -> str:
        return Path(self.original_path).name

    @property
    def has_archive(self) -> bool:
        return bool(self.archive_path)


@dataclass(eq=False)
class Session:
    """One client's isolated set of uploaded and derived files.

    ``lock`` guards ``files``, ``terminated`` and everything under
    ``directory``. Only the registry and the file manager touch them.
    """

    id: str
    directory: Path
    files: dict[str, FileRecord] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    last_access: float = field(default_factory=time.monotonic)
    terminated: bool = False

    def __str__(self) -> str:
        return self.id


class SessionRegistry:
    """Process-wide map of session id -> Session.

    The registry lock protects the map and the idle timers only. It is never
    held across filesystem I/O and never while a session lock is held, so a
    slow upload in one session cannot stall session creation or lookup.
    """

    def __init__(self, root: Path, idle_timeout: float | None = None) -> None:
        self.root = Path(root).resolve()
        self.idle_timeout = idle_timeout if idle_timeout and idle_timeout > 0 else None
        self._lock = threading.Lock()
        self._sessions: dict[str, Session] = {}
        self._timers: dict[str, threading.Timer] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def new(self) -> Session:
        with self._lock:
            sid = new_session_id()
            while sid in self._sessions:
                sid = new_session_id()
            session = Session(id=sid, directory=self.root / sid)
            self._sessions[sid] = session
            self._arm_timer_locked(session)
        logger.info("created session %s", sid)
        return session

    def find(self, session_id: str) -> Session | None:
        """Return the active session for session_id, or None.

        Malformed ids (forged or stale cookies) are simply not found.
        """
        try:
            sid = normalize_session_id(session_id)
        except ValueError:
            return None
        with self._lock:
            return self._sessions.get(sid)

    def session_ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def touch(self, session: Session) -> None:
        """Record activity on session, pushing back its idle expiry.

        The armed timer is left alone; when it fires it re-arms itself for
        whatever idle time remains. A timer is only started here if the
        session has none, as after a failed expiry.
        """
        session.last_access = time.monotonic()
        if self.idle_timeout is None:
            return
        with self._lock:
            if self._sessions.get(session.id) is not session or session.id in self._timers:
                return
            self._arm_timer_locked(session)

    def terminate(self, session: Session | None) -> None:
        """Delete the session's directory tree and drop it from the registry.

        If the directory cannot be removed the session stays registered so the
        call can be retried. Terminating an already terminated session is a
        no-op, which lets an idle timer and an explicit terminate race.
        """
        if session is None:
            raise NilSessionError()

        with session.lock:
            if session.terminated:
                return
            try:
                shutil.rmtree(session.directory)
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.error("error removing session dir %s: %s", session.directory, exc)
                raise FilesystemError() from exc
            session.terminated = True

        with self._lock:
            if self._sessions.get(session.id) is session:
                del self._sessions[session.id]
            timer = self._timers.pop(session.id, None)
        if timer is not None:
            timer.cancel()
        logger.info("terminated session %s", session.id)

    def remove_all(self) -> None:
        """Forget every session and delete the whole storage root.

        Meant for process startup and shutdown only: in-flight operations are
        waited for session by session, new ones are not prevented.
        """
        with self._lock:
            sessions = list(self._sessions.values())
            timers = list(self._timers.values())
            self._sessions.clear()
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        for session in sessions:
            with session.lock:
                session.terminated = True

        try:
            shutil.rmtree(self.root)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.error("error removing storage root %s: %s", self.root, exc)
            raise FilesystemError() from exc
        logger.info("removed storage root %s (%d sessions dropped)", self.root, len(sessions))

    def _arm_timer_locked(self, session: Session, delay: float | None = None) -> None:
        if self.idle_timeout is None:
            return
        old = self._timers.pop(session.id, None)
        if old is not None:
            old.cancel()
        timer = threading.Timer(self.idle_timeout if delay is None else delay, self._expire, args=(session,))
        timer.daemon = True
        self._timers[session.id] = timer
        timer.start()

    def _expire(self, session: Session) -> None:
        # Runs on the Timer's own thread, so current_thread() is the timer.
        me = threading.current_thread()
        with self._lock:
            if self._timers.get(session.id) is not me:
                return
            idle = time.monotonic() - session.last_access
            if idle < self.idle_timeout:
                self._arm_timer_locked(session, self.idle_timeout - idle)
                return
            del self._timers[session.id]

        logger.info("session %s idle for %.1fs, expiring", session.id, idle)
        try:
            self.terminate(session)
        except FilesystemError:
            # Stays registered; the next request touching it re-arms the timer.
            logger.exception("failed to expire session %s", session.id)
