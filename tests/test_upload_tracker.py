from datetime import timedelta

import pytest

from hand_worker.errors import ConcurrentModificationError, InvalidTransitionError, RecordNotFoundError
from hand_worker.models import UploadStatus, utcnow

from conftest import EVENT_ID, STREAM_ID, TOURNAMENT_ID


def _uploading(tracker, upload_id="upload-1", **kwargs):
    tracker.create(upload_id, **kwargs)
    return tracker.set_status(upload_id, UploadStatus.UPLOADING, progress=0.0)


def _age(store, upload_id, hours):
    store.uploads[upload_id].updated_at = utcnow() - timedelta(hours=hours)


def test_lifecycle_to_uploaded(tracker):
    _uploading(tracker)
    tracker.update_progress("upload-1", 42.123)

    assert tracker.get_status("upload-1").progress == 42.12

    record = tracker.set_status("upload-1", UploadStatus.UPLOADED, blob_uri="memory://memory/a.mp4")

    assert record.progress == 100.0
    assert record.completed_at is not None
    assert record.to_status_dict()['status'] == "uploaded"


def test_failed_keeps_error_message(tracker):
    _uploading(tracker)

    record = tracker.set_status("upload-1", UploadStatus.FAILED, error="Access denied to bucket")

    assert record.error_message == "Access denied to bucket"
    assert tracker.get_status("upload-1").to_status_dict()['errorMessage'] == "Access denied to bucket"


@pytest.mark.parametrize("path", [
    [UploadStatus.UPLOADED],
    [UploadStatus.UPLOADING, UploadStatus.ANALYZING],
    [UploadStatus.UPLOADING, UploadStatus.UPLOADED, UploadStatus.UPLOADING],
    [UploadStatus.FAILED, UploadStatus.UPLOADING],
    [UploadStatus.FAILED, UploadStatus.FAILED],
])
def test_invalid_transitions(tracker, path):
    tracker.create("upload-1")
    *allowed, last = path
    for status in allowed:
        tracker.set_status("upload-1", status)

    with pytest.raises(InvalidTransitionError):
        tracker.set_status("upload-1", last)


def test_full_forward_path(tracker):
    tracker.create("upload-1")
    for status in (UploadStatus.UPLOADING, UploadStatus.UPLOADED, UploadStatus.ANALYZING, UploadStatus.COMPLETED):
        record = tracker.set_status("upload-1", status)
    assert record.status == UploadStatus.COMPLETED

    with pytest.raises(InvalidTransitionError):
        tracker.set_status("upload-1", UploadStatus.FAILED)


def test_progress_only_while_uploading(tracker):
    tracker.create("upload-1")

    with pytest.raises(InvalidTransitionError):
        tracker.update_progress("upload-1", 10.0)


def test_unknown_status_rejected(tracker):
    tracker.create("upload-1")

    with pytest.raises(ValueError):
        tracker.set_status("upload-1", "paused")


def test_stale_after_timeout(tracker, store):
    _uploading(tracker)
    _age(store, "upload-1", 25)

    assert [r.id for r in tracker.find_stale_uploads()] == ["upload-1"]

    record = tracker.reset_stale("upload-1")

    assert record.status == UploadStatus.NONE
    assert record.progress == 0.0
    assert record.resume_token is None


def test_not_stale_before_timeout(tracker, store):
    _uploading(tracker)
    _age(store, "upload-1", 23)

    assert tracker.find_stale_uploads() == []
    with pytest.raises(InvalidTransitionError):
        tracker.reset_stale("upload-1")
    assert tracker.get_status("upload-1").status == UploadStatus.UPLOADING


def test_only_uploading_records_go_stale(tracker, store):
    tracker.create("upload-1")
    _age(store, "upload-1", 48)

    assert not tracker.is_stale(tracker.get_status("upload-1"))


def test_reset_failed(tracker):
    _uploading(tracker)
    tracker.set_status("upload-1", UploadStatus.FAILED, error="boom")

    assert tracker.reset_failed("upload-1").status == UploadStatus.NONE


def test_status_mirrored_to_stream(tracker, store):
    _uploading(tracker, stream_id=STREAM_ID, tournament_id=TOURNAMENT_ID, event_id=EVENT_ID)
    tracker.update_progress("upload-1", 55.0)

    stream = store.get_stream(STREAM_ID)
    assert stream.upload_status == UploadStatus.UPLOADING
    assert stream.upload_progress == 55.0


def test_status_falls_back_to_stream(tracker, store):
    store.upsert_stream(STREAM_ID, TOURNAMENT_ID, EVENT_ID, {
        'upload_status': UploadStatus.UPLOADED,
        'upload_progress': 100.0,
    })

    record = tracker.get_status(STREAM_ID)

    assert record.status == UploadStatus.UPLOADED
    assert record.progress == 100.0


def test_unknown_upload(tracker, store):
    store.upsert_stream(STREAM_ID, TOURNAMENT_ID, EVENT_ID, {})

    with pytest.raises(RecordNotFoundError):
        tracker.get_status("nope")
    with pytest.raises(RecordNotFoundError):
        tracker.get_status(STREAM_ID)


def test_get_or_create_returns_existing(tracker):
    _uploading(tracker)

    assert tracker.get_or_create("upload-1").status == UploadStatus.UPLOADING


def test_write_with_stale_version_rejected(tracker, store):
    record = tracker.create("upload-1")
    tracker.set_status("upload-1", UploadStatus.UPLOADING)

    with pytest.raises(ConcurrentModificationError):
        store.save_upload(record, record.version)
