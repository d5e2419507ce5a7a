"""Checks on the two client-controlled strings that reach the filesystem.

The SESSID cookie becomes a directory name under the storage root, and the
uploaded file's name becomes a file name inside that directory.
"""
from __future__ import annotations

import re
import uuid
from pathlib import Path


# Only uuid4 values are ever issued, in the 8-4-4-4-12 hex layout.
_SESSION_ID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

_FORBIDDEN_NAME_CHARS = ("/", "\\", "\x00")


def new_session_id() -> str:
    return str(uuid.uuid4())


def normalize_session_id(session_id: str) -> str:
    """Return the registry key for a SESSID cookie value.

    Anything that is not a uuid4 we could have issued raises ValueError, so a
    forged cookie can never name a path outside its own session directory.
    """
    if not isinstance(session_id, str):
        raise ValueError("session id must be a string")
    candidate = session_id.strip()
    if not _SESSION_ID_RE.match(candidate):
        raise ValueError(f"malformed session id: {candidate[:64]!r}")
    # Lowercase, as issued by new_session_id.
    return str(uuid.UUID(candidate))


def is_safe_basename(name: str) -> bool:
    """True if name can be stored as-is inside a session directory."""
    if not isinstance(name, str) or name in ("", ".", ".."):
        return False
    if any(ch in name for ch in _FORBIDDEN_NAME_CHARS):
        return False
    return Path(name).name == name


def safe_join(session_dir: Path, *names: str) -> Path:
    """Resolve names under session_dir, refusing anything that escapes it.

    Symlinks are resolved first, so a link planted in the session directory
    cannot redirect an upload elsewhere. Raises ValueError on escape.
    """
    root = session_dir.resolve()
    target = root.joinpath(*names).resolve()
    if target != root and root not in target.parents:
        raise ValueError(f"{target} is outside {root}")
    return target
