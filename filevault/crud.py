import time
from dataclasses import dataclass
from typing import Iterator, List, Tuple

from loguru import logger
from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from . import auth, models, schemas
from .database import transaction
from .errors import (
    BlobNotFound,
    Conflict,
    Forbidden,
    InvalidInput,
    NotFound,
    QuotaExceeded,
    StorageFailure,
    Unauthorized,
)
from .storage import BlobStore
from .utils import stage_upload


def _insert(db: Session, model):
    """Dialect insert supporting ON CONFLICT clauses."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise StorageFailure(f"Unsupported metadata store dialect: {dialect}")


def _ensure_quota(db: Session, user_id: int, default_limit: int) -> None:
    db.execute(
        _insert(db, models.Quota)
        .values(user_id=user_id, used_bytes=0, limit_bytes=default_limit)
        .on_conflict_do_nothing(index_elements=[models.Quota.user_id])
    )


def _get_quota(db: Session, user_id: int):
    return db.scalar(
        select(models.Quota)
        .where(models.Quota.user_id == user_id)
        .execution_options(populate_existing=True)
    )


def _get_user_file(db: Session, file_id: int) -> models.UserFile:
    user_file = db.scalar(
        select(models.UserFile)
        .where(models.UserFile.id == file_id)
        .execution_options(populate_existing=True)
    )
    if user_file is None:
        raise NotFound("File not found")
    return user_file


def _get_owned_file(db: Session, file_id: int, user_id: int) -> models.UserFile:
    user_file = _get_user_file(db, file_id)
    if user_file.user_id != user_id:
        raise Forbidden("Only the owner of a file can do that.")
    return user_file


# --- Accounts ---

def create_user(db: Session, user: schemas.UserCreate, quota_bytes: int):
    username = user.username.strip()
    email = user.email.strip().lower()
    if not username or not email or not user.password:
        raise InvalidInput("Username, email and password are required.")

    with transaction(db):
        if db.scalar(select(models.User.id).where(models.User.email == email)) is not None:
            raise Conflict("Email already registered.")
        if db.scalar(select(models.User.id).where(models.User.username == username)) is not None:
            raise Conflict("Username already taken.")
        db_user = models.User(
            username=username,
            email=email,
            hashed_password=auth.hash_password(user.password),
            created_at=models.utcnow(),
        )
        db.add(db_user)
        db.flush()
        db.add(models.Quota(user_id=db_user.id, used_bytes=0, limit_bytes=quota_bytes))

    logger.info(f"Created user {db_user.id} ({db_user.username}, {db_user.email})")
    return db_user


def get_user(db: Session, user_id: int) -> models.User:
    with transaction(db):
        user = db.get(models.User, user_id)
    if user is None:
        raise NotFound("User not found")
    return user


def get_user_by_email(db: Session, email: str) -> models.User:
    with transaction(db):
        user = db.scalar(select(models.User).where(models.User.email == email.strip().lower()))
    if user is None:
        raise NotFound("User not found")
    return user


def list_users(db: Session) -> List[models.User]:
    """Directory of every account, so owners can find whom to share with."""
    with transaction(db):
        users = db.scalars(select(models.User).order_by(models.User.id)).all()
    return list(users)


def authenticate_user(db: Session, email: str, password: str) -> models.User:
    with transaction(db):
        user = db.scalar(select(models.User).where(models.User.email == email.strip().lower()))
    if user is None or not auth.verify_password(password, user.hashed_password):
        raise Unauthorized("Invalid email or password.")
    return user


# --- Ingest ---

def upload_file(
    db: Session,
    blob_store: BlobStore,
    user_id: int,
    filename: str,
    stream,
    max_bytes: int,
    default_quota: int,
):
    """Store an upload for ``user_id`` and return the new UserFile.

    The payload is hashed into a scratch file first, outside any
    transaction. Then, in one unit of work: charge the quota, insert or
    increment the FileBlob, write the blob only if this upload created the
    row, and add the UserFile. Any failure rolls all of it back.
    """
    filename = (filename or "").strip()
    if not filename:
        raise InvalidInput("A filename is required.")

    with stage_upload(stream, max_bytes, blob_store.scratch_dir) as staged:
        size = staged.size_bytes
        file_hash = staged.content_hash

        with transaction(db):
            if db.get(models.User, user_id) is None:
                raise NotFound("User not found")
            _ensure_quota(db, user_id, default_quota)

            # QUOTA CHECK: conditional increment, so two concurrent uploads
            # can never both pass against the same stale value
            charged = db.execute(
                update(models.Quota)
                .where(
                    models.Quota.user_id == user_id,
                    models.Quota.used_bytes + size <= models.Quota.limit_bytes,
                )
                .values(used_bytes=models.Quota.used_bytes + size)
                .execution_options(synchronize_session=False)
            )
            if charged.rowcount != 1:
                quota = _get_quota(db, user_id)
                raise QuotaExceeded(quota.used_bytes, quota.limit_bytes, size)

            # Insert, or increment if the content is already known
            upsert = _insert(db, models.FileBlob).values(
                content_hash=file_hash,
                file_path=blob_store.location_for(file_hash),
                size_bytes=size,
                ref_count=1,
                created_at=models.utcnow(),
            )
            ref_count = db.execute(
                upsert.on_conflict_do_update(
                    index_elements=[models.FileBlob.content_hash],
                    set_={"ref_count": models.FileBlob.__table__.c.ref_count + 1},
                ).returning(models.FileBlob.ref_count)
            ).scalar_one()

            # Only the upload that brought the count to 1 writes bytes
            created_blob = ref_count == 1
            location = None
            if created_blob:
                location = blob_store.put(file_hash, staged.path)

            try:
                user_file = models.UserFile(
                    filename=filename,
                    user_id=user_id,
                    blob_hash=file_hash,
                    size_bytes=size,
                    upload_date=models.utcnow(),
                    download_count=0,
                )
                db.add(user_file)
                db.flush()
            except Exception:
                # The row lock on the new FileBlob is still ours, so nobody
                # else can be relying on this blob yet
                if location is not None:
                    blob_store.delete(location)
                raise

    logger.info(
        f"User {user_id} uploaded file {user_file.id} ({filename}, {size} bytes, "
        f"hash {file_hash[:12]}, deduplicated={not created_blob})"
    )
    return {
        "id": user_file.id,
        "filename": user_file.filename,
        "size_bytes": size,
        "content_hash": file_hash,
        "upload_date": user_file.upload_date,
        "is_deduplicated": not created_blob,
        "download_count": 0,
    }


# --- Fetch ---

def get_downloadable_file(db: Session, blob_store: BlobStore, file_id: int, user_id: int):
    """
    Handles sharing rules and download counters.
    Returns the UserFile and an iterator over its bytes.
    """
    with transaction(db):
        user_file = _get_user_file(db, file_id)

        # Access Control: Owner OR explicit share
        if user_file.user_id != user_id:
            grant = db.scalar(
                select(models.FileShare.id).where(
                    models.FileShare.file_id == file_id,
                    models.FileShare.granted_to == user_id,
                )
            )
            if grant is None:
                raise Forbidden("Access denied. This file has not been shared with you.")

        location = db.scalar(
            select(models.FileBlob.file_path).where(models.FileBlob.content_hash == user_file.blob_hash)
        )
        if location is None:
            raise NotFound("File not found")

        # Increment download count
        db.execute(
            update(models.UserFile)
            .where(models.UserFile.id == file_id)
            .values(download_count=models.UserFile.download_count + 1)
            .execution_options(synchronize_session=False)
        )

    # Opened after commit: no locks held across disk I/O
    try:
        stream = blob_store.get(location)
    except BlobNotFound:
        logger.warning(f"Blob {location} for file {file_id} vanished before it could be read")
        raise NotFound("File not found") from None

    return user_file, stream


# --- Revoke ---

def delete_file(db: Session, blob_store: BlobStore, file_id: int, user_id: int) -> bool:
    """Delete one of the user's uploads.

    The UserFile, its shares, one reference on the FileBlob and the quota
    charge go away together. If that was the last reference, the FileBlob
    row and the blob itself are released in a second step.
    """
    with transaction(db):
        # Only the uploader can delete
        _get_owned_file(db, file_id, user_id)

        db.execute(delete(models.FileShare).where(models.FileShare.file_id == file_id))
        removed = db.execute(
            delete(models.UserFile)
            .where(models.UserFile.id == file_id, models.UserFile.user_id == user_id)
            .returning(models.UserFile.size_bytes, models.UserFile.blob_hash)
            .execution_options(synchronize_session=False)
        ).one_or_none()
        if removed is None:
            # Lost a race with another delete of the same file
            raise NotFound("File not found")
        size, blob_hash = removed

        remaining = db.execute(
            update(models.FileBlob)
            .where(models.FileBlob.content_hash == blob_hash)
            .values(ref_count=models.FileBlob.ref_count - 1)
            .returning(models.FileBlob.ref_count)
            .execution_options(synchronize_session=False)
        ).scalar_one()

        db.execute(
            update(models.Quota)
            .where(models.Quota.user_id == user_id)
            .values(used_bytes=models.Quota.used_bytes - size)
            .execution_options(synchronize_session=False)
        )

    logger.info(f"User {user_id} deleted file {file_id} ({size} bytes, {remaining} references left)")

    # Delete only when all references are gone
    if remaining == 0:
        try:
            release_content(db, blob_store, blob_hash)
        except StorageFailure as e:
            logger.warning(f"Blob {blob_hash[:12]} left for the orphan sweep: {e}")
    return True


def release_content(db: Session, blob_store: BlobStore, content_hash: str) -> bool:
    """Drop a FileBlob with no references, and its blob.

    The row is deleted conditionally on ref_count being 0, so a concurrent
    upload that has just re-referenced the content wins and nothing is
    removed. The blob is deleted before the row deletion commits.
    """
    with transaction(db):
        location = db.execute(
            delete(models.FileBlob)
            .where(models.FileBlob.content_hash == content_hash, models.FileBlob.ref_count == 0)
            .returning(models.FileBlob.file_path)
            .execution_options(synchronize_session=False)
        ).scalar_one_or_none()
        if location is None:
            return False
        if not blob_store.delete(location):
            logger.warning(f"Blob {location} was already missing when released")
    return True


# --- Share ---

def share_file(db: Session, file_id: int, granter_id: int, target_user_id: int):
    """Grant ``target_user_id`` read access. Re-granting is a no-op."""
    if target_user_id == granter_id:
        raise InvalidInput("You cannot share a file with yourself.")

    with transaction(db):
        _get_owned_file(db, file_id, granter_id)
        if db.get(models.User, target_user_id) is None:
            raise NotFound("Target user not found")

        db.execute(
            _insert(db, models.FileShare)
            .values(
                file_id=file_id,
                granted_by=granter_id,
                granted_to=target_user_id,
                mode="read",
                granted_at=models.utcnow(),
            )
            .on_conflict_do_nothing(index_elements=[models.FileShare.file_id, models.FileShare.granted_to])
        )
        grant = db.scalar(
            select(models.FileShare).where(
                models.FileShare.file_id == file_id,
                models.FileShare.granted_to == target_user_id,
            )
        )

    logger.info(f"User {granter_id} shared file {file_id} with user {target_user_id}")
    return grant


def unshare_file(db: Session, file_id: int, granter_id: int, target_user_id: int) -> bool:
    with transaction(db):
        _get_owned_file(db, file_id, granter_id)
        removed = db.execute(
            delete(models.FileShare)
            .where(
                models.FileShare.file_id == file_id,
                models.FileShare.granted_to == target_user_id,
            )
            .execution_options(synchronize_session=False)
        )
        if removed.rowcount == 0:
            raise NotFound("Share not found")

    logger.info(f"User {granter_id} revoked access to file {file_id} from user {target_user_id}")
    return True


def list_file_shares(db: Session, file_id: int, user_id: int) -> List[models.FileShare]:
    with transaction(db):
        _get_owned_file(db, file_id, user_id)
        grants = db.scalars(
            select(models.FileShare)
            .where(models.FileShare.file_id == file_id)
            .order_by(models.FileShare.granted_at)
        ).all()
    return list(grants)


# --- Listing & stats ---

def list_user_files(db: Session, user_id: int) -> List[dict]:
    with transaction(db):
        rows = db.execute(
            select(models.UserFile, models.FileBlob.ref_count)
            .join(models.FileBlob, models.UserFile.blob_hash == models.FileBlob.content_hash)
            .where(models.UserFile.user_id == user_id)
            .order_by(models.UserFile.upload_date.desc(), models.UserFile.id.desc())
            .execution_options(populate_existing=True)
        ).all()

    results = []
    for f, ref_count in rows:
        results.append({
            "id": f.id,
            "filename": f.filename,
            "size_bytes": f.size_bytes,
            "content_hash": f.blob_hash,
            "upload_date": f.upload_date,
            # Deduplication is active if more than 1 reference exists
            "is_deduplicated": ref_count > 1,
            "download_count": f.download_count,
        })
    return results


def list_shared_files(db: Session, user_id: int) -> List[dict]:
    with transaction(db):
        rows = db.execute(
            select(models.UserFile, models.FileShare.granted_at)
            .join(models.FileShare, models.FileShare.file_id == models.UserFile.id)
            .where(models.FileShare.granted_to == user_id)
            .order_by(models.FileShare.granted_at.desc(), models.FileShare.id.desc())
            .execution_options(populate_existing=True)
        ).all()

    return [
        {
            "id": f.id,
            "filename": f.filename,
            "size_bytes": f.size_bytes,
            "upload_date": f.upload_date,
            "owner_id": f.user_id,
            "shared_at": granted_at,
        }
        for f, granted_at in rows
    ]


def get_user_stats(db: Session, user_id: int, default_quota: int):
    with transaction(db):
        if db.get(models.User, user_id) is None:
            raise NotFound("User not found")
        quota = _get_quota(db, user_id)
        used = quota.used_bytes if quota else 0
        limit = quota.limit_bytes if quota else default_quota

        file_count = db.scalar(
            select(func.count(models.UserFile.id)).where(models.UserFile.user_id == user_id)
        )
        deduplicated = db.scalar(
            select(func.coalesce(func.sum(models.UserFile.size_bytes), 0))
            .join(models.FileBlob, models.UserFile.blob_hash == models.FileBlob.content_hash)
            .where(models.UserFile.user_id == user_id, models.FileBlob.ref_count > 1)
        )

    return {
        "used_bytes": used,
        "limit_bytes": limit,
        "remaining_bytes": max(limit - used, 0),
        "file_count": file_count,
        "deduplicated_bytes": deduplicated,
    }


# --- Reconciliation ---

@dataclass
class SweepReport:
    records_removed: int = 0
    blobs_removed: int = 0


def sweep_orphans(db: Session, blob_store: BlobStore, min_age_seconds: float = 3600) -> SweepReport:
    """Repair what an interrupted delete can leave behind.

    FileBlob rows stuck at ref_count 0 are released, and blobs that no row
    points at are removed once they are older than ``min_age_seconds`` (a
    younger one may belong to an upload that has not committed yet). Safe
    to run repeatedly and alongside normal traffic.
    """
    report = SweepReport()

    with transaction(db):
        zero_ref = db.scalars(select(models.FileBlob.content_hash).where(models.FileBlob.ref_count == 0)).all()
    for content_hash in zero_ref:
        if release_content(db, blob_store, content_hash):
            report.records_removed += 1

    with transaction(db):
        known = set(db.scalars(select(models.FileBlob.file_path)).all())
    cutoff = time.time() - min_age_seconds
    for location, mtime in _unreferenced(blob_store, known):
        if mtime <= cutoff and blob_store.delete(location):
            report.blobs_removed += 1

    logger.info(
        f"Orphan sweep removed {report.records_removed} records and {report.blobs_removed} blobs"
    )
    return report


def _unreferenced(blob_store: BlobStore, known) -> Iterator[Tuple[str, float]]:
    # Materialised first so deletions don't disturb the directory walk
    return iter([(location, mtime) for location, mtime in blob_store.iter_locations() if location not in known])
