"""
Upload status tracker.

Owns every UploadRecord: creation, validated status transitions, progress
updates and stale detection. All writes are version-checked
read-modify-write cycles against the document store; a lost race is
retried on a fresh read. Each write is mirrored onto the owning stream's
upload fields so either location answers a status query.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from .adapters.base import DocumentStoreAdapter, is_older_than
from .errors import ConcurrentModificationError, InvalidTransitionError, RecordNotFoundError
from .models import UPLOAD_TRANSITIONS, PipelineStatus, UploadRecord, UploadStatus, utcnow

logger = logging.getLogger("hand_worker")


class UploadStatusTracker:
    """Persisted upload state machine"""

    def __init__(self, store: DocumentStoreAdapter, stale_timeout_hours: float = 24.0,
                 max_write_attempts: int = 5):
        self.store = store
        self.stale_timeout_hours = stale_timeout_hours
        self.max_write_attempts = max_write_attempts

    def create(self, upload_id: str, stream_id: Optional[str] = None,
               tournament_id: Optional[str] = None, event_id: Optional[str] = None) -> UploadRecord:
        """Create a new record in status none"""
        now = utcnow()
        record = UploadRecord(
            id=upload_id,
            status=UploadStatus.NONE,
            created_at=now,
            updated_at=now,
            stream_id=stream_id,
            tournament_id=tournament_id,
            event_id=event_id,
        )
        saved = self.store.save_upload(record, None)
        logger.info(f"Upload {upload_id} created")
        self._mirror(saved)
        return saved

    def get_or_create(self, upload_id: str, stream_id: Optional[str] = None,
                      tournament_id: Optional[str] = None, event_id: Optional[str] = None) -> UploadRecord:
        record = self.store.get_upload(upload_id)
        if record is not None:
            return record
        try:
            return self.create(upload_id, stream_id, tournament_id, event_id)
        except ConcurrentModificationError:
            # Created by another worker between the read and the insert
            return self.store.get_upload(upload_id)

    def get_status(self, upload_id: str) -> UploadRecord:
        """
        Return the upload record, falling back to the stream's own upload fields.

        Raises:
            RecordNotFoundError: if neither location knows the id
        """
        record = self.store.get_upload(upload_id)
        if record is not None:
            return record

        stream = self.store.get_stream(upload_id)
        if stream is not None and stream.upload_status:
            return UploadRecord(
                id=upload_id,
                status=stream.upload_status,
                progress=stream.upload_progress or 0.0,
                error_message=stream.upload_error_message,
                created_at=stream.created_at,
                updated_at=stream.updated_at,
                completed_at=stream.uploaded_at,
                stream_id=stream.id,
                tournament_id=stream.tournament_id,
                event_id=stream.event_id,
                blob_uri=stream.blob_uri,
            )

        raise RecordNotFoundError("Upload", upload_id)

    def set_status(self, upload_id: str, status: str, progress: Optional[float] = None,
                   error: Optional[str] = None, blob_uri: Optional[str] = None) -> UploadRecord:
        """
        Move an upload to a new status.

        Raises:
            InvalidTransitionError: if the state machine does not allow the move
        """
        if status not in UploadStatus.ALL:
            raise ValueError(f"Unknown upload status: {status}")

        def apply(record: UploadRecord) -> None:
            if status != record.status and status not in UPLOAD_TRANSITIONS[record.status]:
                raise InvalidTransitionError(record.status, status, "upload")
            if status == record.status and record.status in UploadStatus.TERMINAL:
                raise InvalidTransitionError(record.status, status, "upload")

            record.status = status
            if progress is not None:
                record.progress = _clamp(progress)
            if status == UploadStatus.UPLOADED:
                record.progress = 100.0
            if status == UploadStatus.FAILED:
                record.error_message = error
            if blob_uri is not None:
                record.blob_uri = blob_uri
            if status in (UploadStatus.UPLOADED, UploadStatus.COMPLETED, UploadStatus.FAILED):
                record.completed_at = utcnow()

        before = self.store.get_upload(upload_id)
        saved = self._mutate(upload_id, apply)
        if before is None or before.status != saved.status:
            log = logger.error if status == UploadStatus.FAILED else logger.info
            suffix = f": {error}" if error else ""
            log(f"Upload {upload_id} -> {status}{suffix}")
        return saved

    def update_progress(self, upload_id: str, progress: float,
                        resume_token: Optional[str] = None) -> UploadRecord:
        """Persist progress of an upload that is in flight"""
        def apply(record: UploadRecord) -> None:
            if record.status != UploadStatus.UPLOADING:
                raise InvalidTransitionError(record.status, UploadStatus.UPLOADING, "upload")
            record.progress = _clamp(progress)
            if resume_token is not None:
                record.resume_token = resume_token

        return self._mutate(upload_id, apply)

    def is_stale(self, record: UploadRecord, now: Optional[datetime] = None) -> bool:
        """An upload stuck in uploading past the stale timeout may be reset"""
        if record.status != UploadStatus.UPLOADING:
            return False
        return is_older_than(record.updated_at, now or utcnow(), self.stale_timeout_hours * 3600)

    def find_stale_uploads(self, now: Optional[datetime] = None) -> List[UploadRecord]:
        now = now or utcnow()
        return [r for r in self.store.list_uploads_by_status(UploadStatus.UPLOADING)
                if self.is_stale(r, now)]

    def reset_stale(self, upload_id: str, now: Optional[datetime] = None) -> UploadRecord:
        """
        Explicitly reset a stale upload back to none.

        Raises:
            InvalidTransitionError: if the upload is not stale
        """
        now = now or utcnow()

        def apply(record: UploadRecord) -> None:
            if not self.is_stale(record, now):
                raise InvalidTransitionError(record.status, UploadStatus.NONE, "non-stale upload")
            _reset(record)

        saved = self._mutate(upload_id, apply)
        logger.warning(f"Stale upload {upload_id} reset to none")
        return saved

    def reset_failed(self, upload_id: str) -> UploadRecord:
        """External cleanup of a failed upload so it can be retried"""
        def apply(record: UploadRecord) -> None:
            if record.status != UploadStatus.FAILED:
                raise InvalidTransitionError(record.status, UploadStatus.NONE, "upload")
            _reset(record)

        saved = self._mutate(upload_id, apply)
        logger.info(f"Failed upload {upload_id} reset to none")
        return saved

    def _mutate(self, upload_id: str, apply: Callable[[UploadRecord], None]) -> UploadRecord:
        for attempt in range(1, self.max_write_attempts + 1):
            record = self.store.get_upload(upload_id)
            if record is None:
                raise RecordNotFoundError("Upload", upload_id)
            expected_version = record.version
            apply(record)
            record.updated_at = utcnow()
            try:
                saved = self.store.save_upload(record, expected_version)
            except ConcurrentModificationError:
                if attempt == self.max_write_attempts:
                    raise
                logger.debug(f"Upload {upload_id} changed concurrently, retrying write ({attempt})")
                continue
            self._mirror(saved)
            return saved

    def _mirror(self, record: UploadRecord) -> None:
        """Copy upload fields onto the owning stream"""
        if not (record.stream_id and record.tournament_id and record.event_id):
            return
        fields = {
            'upload_status': record.status,
            'upload_progress': record.progress,
            'upload_error_message': record.error_message,
        }
        if record.blob_uri:
            fields['blob_uri'] = record.blob_uri
        if record.status == UploadStatus.UPLOADED:
            fields['uploaded_at'] = record.completed_at
            fields['pipeline_status'] = PipelineStatus.UPLOADED
        self.store.upsert_stream(record.stream_id, record.tournament_id, record.event_id, fields)


def _clamp(progress: float) -> float:
    return round(max(0.0, min(100.0, float(progress))), 2)


def _reset(record: UploadRecord) -> None:
    record.status = UploadStatus.NONE
    record.progress = 0.0
    record.error_message = None
    record.resume_token = None
    record.completed_at = None
