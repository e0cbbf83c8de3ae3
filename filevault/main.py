import sys
import time
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import List
from urllib.parse import quote

from fastapi import Depends, FastAPI, File, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger
from sqlalchemy.orm import Session

from . import auth, crud, database, schemas
from .config import Settings, get_settings
from .errors import VaultError
from .storage import BlobStore


@lru_cache
def get_blob_store() -> BlobStore:
    return BlobStore(get_settings().storage_dir)


def content_disposition(filename: str) -> str:
    # Header values go out as latin-1; other names use the RFC 5987 form
    quoted = quote(filename)
    if quoted != filename:
        return f"attachment; filename*=utf-8''{quoted}"
    return f'attachment; filename="{filename}"'


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    # Create tables
    database.init_db()
    if settings.sweep_on_startup:
        with database.SessionLocal() as db:
            crud.sweep_orphans(db, get_blob_store(), min_age_seconds=settings.orphan_grace_seconds)
    logger.info("FileVault API started")
    yield


app = FastAPI(title="FileVault API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],  # Allows all methods (GET, POST, DELETE, etc.)
    allow_headers=["*"],  # Allows all headers
)

# --- Rate Limiting ---
request_history = {}

@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    settings = get_settings()
    client_ip = request.client.host if request.client else "unknown"
    now = time.time()

    # Forget clients with no request inside the window
    stale = [ip for ip, times in request_history.items() if now - times[-1] >= settings.rate_limit_window]
    for ip in stale:
        del request_history[ip]

    recent = [t for t in request_history.get(client_ip, []) if now - t < settings.rate_limit_window]
    if len(recent) >= settings.rate_limit_calls:
        request_history[client_ip] = recent
        return Response(
            content=f"Rate limit exceeded ({settings.rate_limit_calls} req/{settings.rate_limit_window:g}s).",
            status_code=429,
        )

    request_history[client_ip] = recent + [now]
    response = await call_next(request)
    return response


@app.exception_handler(VaultError)
async def vault_error_handler(request: Request, exc: VaultError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "code": exc.code})


# --- Routes ---

@app.post("/users/", response_model=schemas.UserResponse)
def create_user(
    user: schemas.UserCreate,
    db: Session = Depends(database.get_db),
    settings: Settings = Depends(get_settings),
):
    return crud.create_user(db=db, user=user, quota_bytes=settings.default_quota_bytes)

@app.get("/users", response_model=List[schemas.UserResponse])
def get_users(user_id: int = Depends(auth.get_current_user_id), db: Session = Depends(database.get_db)):
    """Directory of accounts to share files with"""
    return crud.list_users(db=db)

@app.get("/users/me", response_model=schemas.UserResponse)
def get_me(user_id: int = Depends(auth.get_current_user_id), db: Session = Depends(database.get_db)):
    return crud.get_user(db=db, user_id=user_id)

@app.get("/users/lookup", response_model=schemas.UserResponse)
def lookup_user(email: str, user_id: int = Depends(auth.get_current_user_id), db: Session = Depends(database.get_db)):
    return crud.get_user_by_email(db=db, email=email)

@app.post("/token", response_model=schemas.Token)
def login(
    credentials: schemas.LoginRequest,
    db: Session = Depends(database.get_db),
    provider: auth.IdentityProvider = Depends(auth.get_identity_provider),
):
    user = crud.authenticate_user(db=db, email=credentials.email, password=credentials.password)
    return {"access_token": provider.issue_token(user.id, user.email), "token_type": "bearer"}

@app.post("/upload", response_model=schemas.FileResponse)
def upload_file(
    file: UploadFile = File(...),
    user_id: int = Depends(auth.get_current_user_id),
    db: Session = Depends(database.get_db),
    blob_store: BlobStore = Depends(get_blob_store),
    settings: Settings = Depends(get_settings),
):
    return crud.upload_file(
        db=db,
        blob_store=blob_store,
        user_id=user_id,
        filename=file.filename,
        stream=file.file,
        max_bytes=settings.max_upload_bytes,
        default_quota=settings.default_quota_bytes,
    )

@app.get("/files", response_model=List[schemas.FileResponse])
def get_user_files(user_id: int = Depends(auth.get_current_user_id), db: Session = Depends(database.get_db)):
    return crud.list_user_files(db=db, user_id=user_id)

@app.get("/files/shared", response_model=List[schemas.SharedFileResponse])
def get_shared_files(user_id: int = Depends(auth.get_current_user_id), db: Session = Depends(database.get_db)):
    """Files other users have shared with the caller"""
    return crud.list_shared_files(db=db, user_id=user_id)

@app.get("/download/{file_id}")
def download_file(
    file_id: int,
    user_id: int = Depends(auth.get_current_user_id),
    db: Session = Depends(database.get_db),
    blob_store: BlobStore = Depends(get_blob_store),
):
    """Increments counter and streams the file"""
    user_file, stream = crud.get_downloadable_file(db=db, blob_store=blob_store, file_id=file_id, user_id=user_id)
    return StreamingResponse(
        stream,
        media_type="application/octet-stream",
        headers={"Content-Disposition": content_disposition(user_file.filename)},
    )

@app.delete("/files/{file_id}")
def delete_file(
    file_id: int,
    user_id: int = Depends(auth.get_current_user_id),
    db: Session = Depends(database.get_db),
    blob_store: BlobStore = Depends(get_blob_store),
):
    crud.delete_file(db=db, blob_store=blob_store, file_id=file_id, user_id=user_id)
    return {"status": "deleted successfully"}

@app.post("/files/{file_id}/share", response_model=schemas.ShareResponse)
def share_file(
    file_id: int,
    share: schemas.ShareCreate,
    user_id: int = Depends(auth.get_current_user_id),
    db: Session = Depends(database.get_db),
):
    return crud.share_file(db=db, file_id=file_id, granter_id=user_id, target_user_id=share.target_user_id)

@app.get("/files/{file_id}/shares", response_model=List[schemas.ShareResponse])
def get_file_shares(file_id: int, user_id: int = Depends(auth.get_current_user_id), db: Session = Depends(database.get_db)):
    return crud.list_file_shares(db=db, file_id=file_id, user_id=user_id)

@app.delete("/files/{file_id}/share/{target_user_id}")
def unshare_file(
    file_id: int,
    target_user_id: int,
    user_id: int = Depends(auth.get_current_user_id),
    db: Session = Depends(database.get_db),
):
    crud.unshare_file(db=db, file_id=file_id, granter_id=user_id, target_user_id=target_user_id)
    return {"status": "share revoked"}

@app.get("/stats", response_model=schemas.StatsResponse)
def get_stats(
    user_id: int = Depends(auth.get_current_user_id),
    db: Session = Depends(database.get_db),
    settings: Settings = Depends(get_settings),
):
    """Returns storage insights"""
    return crud.get_user_stats(db=db, user_id=user_id, default_quota=settings.default_quota_bytes)
