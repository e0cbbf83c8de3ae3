"""Tests for the orphan sweep."""

import hashlib
import io
import os
import time

from sqlalchemy import delete, update

from filevault import crud, models
from filevault.utils import stage_upload

from .conftest import blob_of, count_rows


def _crash_after_decrement(db, upload):
    """Leave the state a crash between the two delete phases would leave."""
    db.execute(delete(models.UserFile).where(models.UserFile.id == upload["id"]))
    db.execute(
        update(models.FileBlob)
        .where(models.FileBlob.content_hash == upload["content_hash"])
        .values(ref_count=0)
    )
    db.commit()


def _stray_blob(blob_store, payload):
    with stage_upload(io.BytesIO(payload), 1024, blob_store.scratch_dir) as staged:
        return blob_store.put(staged.content_hash, staged.path)


def test_sweep_releases_zero_ref_records(db, blob_store, make_user, ingest):
    user = make_user()
    upload = ingest(user.id, b"interrupted")
    location = blob_of(db, upload["content_hash"]).file_path
    _crash_after_decrement(db, upload)

    report = crud.sweep_orphans(db, blob_store, min_age_seconds=0)

    assert report.records_removed == 1
    assert blob_of(db, upload["content_hash"]) is None
    assert not blob_store.exists(location)


def test_sweep_removes_unreferenced_blobs(db, blob_store):
    location = _stray_blob(blob_store, b"nobody owns me")

    report = crud.sweep_orphans(db, blob_store, min_age_seconds=0)

    assert report.blobs_removed == 1
    assert not blob_store.exists(location)


def test_sweep_spares_recent_unreferenced_blobs(db, blob_store):
    location = _stray_blob(blob_store, b"maybe mid-upload")

    report = crud.sweep_orphans(db, blob_store, min_age_seconds=3600)

    assert report.blobs_removed == 0
    assert blob_store.exists(location)

    old = time.time() - 7200
    os.utime(blob_store.root / location, (old, old))
    assert crud.sweep_orphans(db, blob_store, min_age_seconds=3600).blobs_removed == 1


def test_sweep_leaves_live_content_alone(db, blob_store, make_user, ingest):
    user = make_user()
    upload = ingest(user.id, b"alive and well")
    location = blob_of(db, upload["content_hash"]).file_path

    report = crud.sweep_orphans(db, blob_store, min_age_seconds=0)

    assert (report.records_removed, report.blobs_removed) == (0, 0)
    assert blob_store.exists(location)
    assert blob_of(db, upload["content_hash"]).ref_count == 1


def test_sweep_is_idempotent(db, blob_store, make_user, ingest):
    user = make_user()
    upload = ingest(user.id, b"swept once")
    _crash_after_decrement(db, upload)
    _stray_blob(blob_store, b"stray")

    first = crud.sweep_orphans(db, blob_store, min_age_seconds=0)
    second = crud.sweep_orphans(db, blob_store, min_age_seconds=0)

    assert (first.records_removed, first.blobs_removed) == (1, 1)
    assert (second.records_removed, second.blobs_removed) == (0, 0)
    assert count_rows(db, models.FileBlob) == 0


def test_reupload_after_crash_restores_blob(db, blob_store, make_user, ingest):
    user = make_user()
    payload = b"phoenix"
    upload = ingest(user.id, payload)
    location = blob_of(db, upload["content_hash"]).file_path
    _crash_after_decrement(db, upload)
    blob_store.delete(location)

    again = ingest(user.id, payload)

    assert again["is_deduplicated"] is False
    assert blob_of(db, hashlib.sha256(payload).hexdigest()).ref_count == 1
    assert b"".join(blob_store.get(location)) == payload
