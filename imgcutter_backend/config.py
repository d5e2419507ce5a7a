from __future__ import annotations

import os
from pathlib import Path


# Root directory for all session storage.
# Default: project-local ./temp, one subdirectory per session id.
# Override with env var IMGCUTTER_TEMP_ROOT.
_root_raw = os.environ.get("IMGCUTTER_TEMP_ROOT")
if _root_raw and _root_raw.strip():
    TEMP_ROOT = Path(_root_raw)
else:
    # imgcutter_backend/ -> project root
    TEMP_ROOT = Path(__file__).resolve().parent.parent / "temp"
TEMP_ROOT = TEMP_ROOT.resolve()

# How long a session may live without activity. Also used as the cookie max-age.
# 0 disables idle expiry.
SESSION_IDLE_SECONDS = float(os.environ.get("IMGCUTTER_SESSION_IDLE_SECONDS", "300"))

# Upload limit (best-effort; also enforced by proxy/browser typically).
MAX_IMAGE_UPLOAD_BYTES = int(os.environ.get("IMGCUTTER_MAX_IMAGE_UPLOAD_BYTES", str(10 * 1024 * 1024)))  # 10MB

LOG_LEVEL = os.environ.get("IMGCUTTER_LOG_LEVEL", "INFO").upper()

# Smallest tile edge accepted by the cutter, in pixels.
MIN_TILE_SIZE = 32
JPEG_QUALITY = 100

ALLOWED_UPLOAD_CONTENT_TYPES = {"image/jpeg", "image/png"}
# Pillow format names matching the content types above.
ALLOWED_IMAGE_FORMATS = {"JPEG", "PNG"}

SESSION_COOKIE_NAME = "SESSID"
ARCHIVE_EXT = ".zip"
