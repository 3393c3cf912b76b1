"""
Chunked, resumable upload engine.

Files are split into fixed-size chunks and committed to the blob store
strictly in order: chunk N+1 is sent only after the store acknowledged
chunk N. Up to MAX_CONCURRENT_UPLOADS files upload at once through a
thread pool. Every committed chunk persists progress through the
UploadStatusTracker, and the remote session token is stored on the
record so an interrupted upload resumes from the last committed offset.
"""

import os
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Dict, List, Optional

from .adapters.base import BlobStorageAdapter
from .config import WorkerConfig
from .errors import (
    AuthorizationError, ChunkUploadError, PipelineError, RecordNotFoundError,
    UploadCancelledError,
)
from .models import Chunk, ChunkStatus, UploadRecord, UploadRequest, UploadSession, UploadStatus
from .upload_tracker import UploadStatusTracker

logger = logging.getLogger("hand_worker")


def plan_chunks(total_size: int, chunk_size: int) -> List[Chunk]:
    """Partition [0, total_size) into contiguous chunks of chunk_size bytes"""
    if chunk_size <= 0:
        raise ValueError(f"Chunk size must be positive, got {chunk_size}")
    return [
        Chunk(index=i, offset=offset, length=min(chunk_size, total_size - offset))
        for i, offset in enumerate(range(0, total_size, chunk_size))
    ]


class UploadEngine:
    """Bounded-concurrency uploader of local files to blob storage"""

    def __init__(self, blob_store: BlobStorageAdapter, tracker: UploadStatusTracker,
                 chunk_size: int = 16 * 1024 * 1024, max_concurrent: int = 3,
                 max_retries: int = 3, retry_delay_sec: float = 1.0):
        self.blob_store = blob_store
        self.tracker = tracker
        self.chunk_size = chunk_size
        self.max_concurrent = max_concurrent
        self.max_retries = max_retries
        self.retry_delay_sec = retry_delay_sec

        self._executor = ThreadPoolExecutor(max_workers=max_concurrent, thread_name_prefix="upload")
        self._cancel_events: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: WorkerConfig, blob_store: BlobStorageAdapter,
                    tracker: UploadStatusTracker) -> 'UploadEngine':
        return cls(
            blob_store,
            tracker,
            chunk_size=config.UPLOAD_CHUNK_SIZE_BYTES,
            max_concurrent=config.MAX_CONCURRENT_UPLOADS,
            max_retries=config.UPLOAD_MAX_RETRIES,
            retry_delay_sec=config.upload_retry_delay_sec,
        )

    def submit(self, request: UploadRequest) -> 'Future[UploadRecord]':
        """Queue a file; the future resolves to its final UploadRecord"""
        with self._lock:
            if request.upload_id in self._cancel_events:
                raise ValueError(f"Upload {request.upload_id} is already queued")
            self._cancel_events[request.upload_id] = threading.Event()
        return self._executor.submit(self._run, request)

    def upload(self, request: UploadRequest) -> UploadRecord:
        """Upload one file and wait for the result"""
        return self.submit(request).result()

    def upload_many(self, requests: List[UploadRequest]) -> List[UploadRecord]:
        futures = [self.submit(r) for r in requests]
        return [f.result() for f in futures]

    def cancel(self, upload_id: str) -> bool:
        """
        Stop an upload at the current chunk.

        A chunk request already sent to the blob store cannot be interrupted
        (multipart part uploads are single blocking requests); its outcome is
        kept if acknowledged. Pending retries of a failing chunk are
        abandoned and no further chunks are scheduled. The record stays
        uploading and resumes from its last committed offset.
        """
        with self._lock:
            event = self._cancel_events.get(upload_id)
        if event is None:
            return False
        event.set()
        logger.info(f"Cancellation requested for upload {upload_id}")
        return True

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            for event in self._cancel_events.values():
                event.set()
        self._executor.shutdown(wait=wait)

    def _run(self, request: UploadRequest) -> UploadRecord:
        upload_id = request.upload_id
        cancel_event = self._cancel_events[upload_id]
        session: Optional[UploadSession] = None

        try:
            record = self.tracker.get_or_create(
                upload_id, request.stream_id, request.tournament_id, request.event_id
            )
            if record.status not in (UploadStatus.NONE, UploadStatus.UPLOADING):
                logger.warning(f"Upload {upload_id} is {record.status}; nothing to do")
                return record

            total_size = os.path.getsize(request.file_path)
            if record.status == UploadStatus.NONE:
                record = self.tracker.set_status(upload_id, UploadStatus.UPLOADING, progress=0.0)

            session = self._open_session(request, record, total_size)
            chunks = plan_chunks(total_size, self.chunk_size)
            logger.info(
                f"Uploading {request.file_path} as {upload_id}: {total_size} bytes, "
                f"{len(chunks)} chunks, resuming at byte {session.committed_bytes}"
            )

            with open(request.file_path, 'rb') as f:
                for chunk in chunks:
                    if chunk.end <= session.committed_bytes:
                        chunk.status = ChunkStatus.COMMITTED
                        continue
                    if chunk.offset != session.committed_bytes:
                        raise ChunkUploadError(
                            f"Remote offset {session.committed_bytes} does not align with chunk {chunk.index}"
                        )
                    if cancel_event.is_set():
                        raise UploadCancelledError(upload_id)

                    f.seek(chunk.offset)
                    data = f.read(chunk.length)
                    self._commit_chunk(upload_id, session, chunk, data, cancel_event)

                    progress = 100.0 * session.committed_bytes / total_size
                    self.tracker.update_progress(upload_id, progress)

            uri = self.blob_store.finalize(session)
            return self.tracker.set_status(upload_id, UploadStatus.UPLOADED, progress=100.0, blob_uri=uri)

        except UploadCancelledError:
            logger.info(f"Upload {upload_id} cancelled; resumable from byte "
                        f"{session.committed_bytes if session else 0}")
            return self.tracker.get_status(upload_id)
        except (PipelineError, OSError) as e:
            message = e.message if isinstance(e, PipelineError) else str(e)
            if session is not None:
                self.blob_store.abort(session)
            return self.tracker.set_status(upload_id, UploadStatus.FAILED, error=message)
        finally:
            with self._lock:
                self._cancel_events.pop(upload_id, None)

    def _open_session(self, request: UploadRequest, record: UploadRecord, total_size: int) -> UploadSession:
        if record.resume_token:
            try:
                return self.blob_store.resume_upload(
                    request.destination, record.resume_token, total_size, request.content_type
                )
            except (RecordNotFoundError, ChunkUploadError) as e:
                logger.warning(f"Cannot resume upload {record.id}, starting over: {e.message}")

        session = self.blob_store.initiate_upload(request.destination, total_size, request.content_type)
        self.tracker.update_progress(record.id, 0.0, resume_token=session.resume_token)
        return session

    def _commit_chunk(self, upload_id: str, session: UploadSession, chunk: Chunk, data: bytes,
                      cancel_event: threading.Event) -> None:
        """Send one chunk, retrying transient failures up to max_retries attempts"""
        last_error: Optional[ChunkUploadError] = None

        for attempt in range(1, self.max_retries + 1):
            chunk.attempts = attempt
            chunk.status = ChunkStatus.IN_FLIGHT
            try:
                self.blob_store.upload_chunk(session, chunk, data)
                chunk.status = ChunkStatus.COMMITTED
                return
            except AuthorizationError:
                chunk.status = ChunkStatus.FAILED
                raise
            except ChunkUploadError as e:
                chunk.status = ChunkStatus.FAILED
                last_error = e
                logger.warning(
                    f"Chunk {chunk.index} of upload {upload_id} failed "
                    f"(attempt {attempt}/{self.max_retries}): {e.message}"
                )

            if attempt < self.max_retries and cancel_event.wait(self.retry_delay_sec):
                raise UploadCancelledError(upload_id)

        raise last_error
