from __future__ import annotations

import io
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel

from imgcutter_backend.config import (
    ALLOWED_UPLOAD_CONTENT_TYPES,
    LOG_LEVEL,
    MAX_IMAGE_UPLOAD_BYTES,
    SESSION_COOKIE_NAME,
    SESSION_IDLE_SECONDS,
    TEMP_ROOT,
)
from imgcutter_backend.errors import (
    FilesystemError,
    ImgCutterError,
    InvalidFileNameError,
    NilSessionError,
    NoSuchFileError,
    SessionNotFoundError,
    TileTooSmallError,
    UnsupportedFormatError,
)
from imgcutter_backend.files import FileManager
from imgcutter_backend.sessions import Session, SessionRegistry


logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


_ERROR_STATUS = {
    InvalidFileNameError: 400,
    TileTooSmallError: 400,
    UnsupportedFormatError: 400,
    SessionNotFoundError: 404,
    NoSuchFileError: 404,
    NilSessionError: 500,
    FilesystemError: 500,
}


class CutRequest(BaseModel):
    file_name: str
    dx: int
    dy: int


def _http_error(exc: ImgCutterError) -> HTTPException:
    status = _ERROR_STATUS.get(type(exc), 500)
    if status >= 500:
        # Details are in the log; do not leak paths or OS messages.
        return HTTPException(status_code=status, detail=exc.kind)
    return HTTPException(status_code=status, detail=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    registry = SessionRegistry(TEMP_ROOT, idle_timeout=SESSION_IDLE_SECONDS)
    # Nothing is registered yet, so anything under the root is left over from
    # a previous process.
    registry.remove_all()
    app.state.registry = registry
    app.state.files = FileManager()
    logger.info("storage root %s, idle timeout %ss", registry.root, SESSION_IDLE_SECONDS)
    try:
        yield
    finally:
        registry.remove_all()


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def _manage_session(request: Request, call_next):
    # Resolve the session cookie; a missing, malformed or unknown id gets a
    # fresh session and a new cookie.
    registry: SessionRegistry = request.app.state.registry
    session = registry.find(request.cookies.get(SESSION_COOKIE_NAME, ""))
    created = session is None
    if created:
        session = registry.new()
    registry.touch(session)
    request.state.session = session

    response = await call_next(request)
    if created and not getattr(request.state, "session_ended", False):
        response.set_cookie(
            SESSION_COOKIE_NAME,
            session.id,
            max_age=int(SESSION_IDLE_SECONDS) or None,
            path="/",
            httponly=True,
            samesite="lax",
        )
    return response


def current_session(request: Request) -> Session:
    return request.state.session


def file_manager(request: Request) -> FileManager:
    return request.app.state.files


@app.get("/api/session")
def get_session(session: Session = Depends(current_session)) -> JSONResponse:
    return JSONResponse({"session_id": session.id})


@app.post("/api/session/terminate")
def terminate_session(request: Request, session: Session = Depends(current_session)) -> JSONResponse:
    registry: SessionRegistry = request.app.state.registry
    try:
        registry.terminate(session)
    except ImgCutterError as exc:
        raise _http_error(exc)
    request.state.session_ended = True
    response = JSONResponse({"ok": True})
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return response


@app.get("/api/files")
def list_files(
    session: Session = Depends(current_session),
    files: FileManager = Depends(file_manager),
) -> JSONResponse:
    try:
        records = files.get_files(session)
    except ImgCutterError as exc:
        raise _http_error(exc)
    return JSONResponse({
        "files": [
            {"name": r.name, "has_archive": r.has_archive, "uploaded_at": r.uploaded_at}
            for r in records
        ]
    })


@app.post("/api/upload")
def upload_image(
    file: UploadFile = File(...),
    session: Session = Depends(current_session),
    files: FileManager = Depends(file_manager),
) -> JSONResponse:
    content_type = (file.content_type or "").split(";")[0].strip().lower()
    if content_type not in ALLOWED_UPLOAD_CONTENT_TYPES:
        raise HTTPException(status_code=400, detail="File must be a JPEG or PNG image")

    name = Path(file.filename or "").name
    # Limit read to prevent accidental huge uploads.
    data = file.file.read(MAX_IMAGE_UPLOAD_BYTES + 1)
    if len(data) > MAX_IMAGE_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Image too large")

    try:
        files.upload_file(session, io.BytesIO(data), name)
    except ImgCutterError as exc:
        raise _http_error(exc)
    return JSONResponse({"name": name})


@app.post("/api/cut")
def cut_upload(
    payload: CutRequest,
    session: Session = Depends(current_session),
    files: FileManager = Depends(file_manager),
) -> JSONResponse:
    try:
        key = files.file_key(session, payload.file_name)
        archive = files.cut_file(session, key, payload.dx, payload.dy)
    except ImgCutterError as exc:
        raise _http_error(exc)
    return JSONResponse({"name": payload.file_name, "archive": Path(archive).name})


@app.get("/api/download/{file_name}")
def download_archive(
    file_name: str,
    session: Session = Depends(current_session),
    files: FileManager = Depends(file_manager),
) -> FileResponse:
    try:
        archive = files.get_archive_name(session, files.file_key(session, file_name))
    except ImgCutterError as exc:
        raise _http_error(exc)
    return FileResponse(
        archive,
        media_type="application/zip",
        filename=Path(archive).name,
        headers={"Cache-Control": "no-store", "X-Content-Type-Options": "nosniff"},
    )


@app.post("/api/files/{file_name}/delete")
def delete_file(
    file_name: str,
    session: Session = Depends(current_session),
    files: FileManager = Depends(file_manager),
) -> JSONResponse:
    try:
        files.delete_file(session, files.file_key(session, file_name))
    except ImgCutterError as exc:
        raise _http_error(exc)
    return JSONResponse({"ok": True})


def _require_localhost(request: Request) -> None:
    # Lists every session id; restrict to local use.
    host = getattr(request.client, "host", "") if request.client else ""
    if host not in {"127.0.0.1", "::1", "localhost"}:
        raise HTTPException(status_code=403, detail="Forbidden")


@app.get("/api/sessions")
def list_sessions(request: Request) -> JSONResponse:
    _require_localhost(request)
    ids = request.app.state.registry.session_ids()
    return JSONResponse({"count": len(ids), "sessions": ids})


if __name__ == "__main__":
    # Convenience: python server.py
    import uvicorn

    port = int(os.environ.get("PORT", "8080"))
    uvicorn.run("server:app", host="127.0.0.1", port=port, reload=False)
