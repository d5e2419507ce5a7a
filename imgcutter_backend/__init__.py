"""Backend for the image cutter: session-scoped uploads cut into tile archives.

This package keeps FastAPI route handlers thin:
- session registry with per-session locks and idle expiry
- file manager for upload / cut / download / delete inside a session
- Pillow-based codec that grids an image into JPEG tiles inside a zip

Security note:
Session IDs are capability tokens (unguessable UUID4) carried in a cookie.
Anyone holding the id owns that session's files, so never log file contents
or expose filesystem paths in responses.
"""
