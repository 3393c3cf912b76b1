"""
In-memory adapters for blob storage and the document store.

Same semantics as the S3 and Postgres adapters (ordered chunk commits,
version-checked writes, atomic counters) without any external service.
Used for local development and the test suite.
"""

import copy
import logging
import threading
import uuid
from dataclasses import asdict
from typing import Optional, Dict, Any, List

from .base import BlobStorageAdapter, DocumentStoreAdapter
from ..errors import ChunkUploadError, ConcurrentModificationError, RecordNotFoundError
from ..models import (
    AnalysisJob, Chunk, Hand, JobStatus, StreamAggregate, UploadRecord,
    UploadSession, utcnow,
)

logger = logging.getLogger("hand_worker")


class InMemoryBlobStorage(BlobStorageAdapter):
    """Blob store keeping sessions and objects in process memory"""

    def __init__(self, bucket: str = "memory"):
        self.bucket = bucket
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.objects: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def initiate_upload(self, destination: str, total_size: int, content_type: str) -> UploadSession:
        token = uuid.uuid4().hex
        with self._lock:
            self.sessions[token] = {'destination': destination, 'parts': []}
        logger.info(f"Memory upload session {token} started for {destination}")
        return UploadSession(destination=destination, resume_token=token,
                             total_size=total_size, content_type=content_type)

    def resume_upload(self, destination: str, resume_token: str, total_size: int,
                      content_type: str) -> UploadSession:
        with self._lock:
            if resume_token not in self.sessions:
                raise RecordNotFoundError("Upload session", resume_token)
        session = UploadSession(destination=destination, resume_token=resume_token,
                                total_size=total_size, content_type=content_type)
        self.committed_offset(session)
        return session

    def committed_offset(self, session: UploadSession) -> int:
        with self._lock:
            parts = self.sessions[session.resume_token]['parts']
            session.committed_bytes = sum(len(p) for p in parts)
            session.parts = [{'PartNumber': i + 1, 'Size': len(p)} for i, p in enumerate(parts)]
        return session.committed_bytes

    def upload_chunk(self, session: UploadSession, chunk: Chunk, data: bytes) -> None:
        with self._lock:
            parts = self.sessions[session.resume_token]['parts']
            committed = sum(len(p) for p in parts)
            if chunk.offset != committed:
                raise ChunkUploadError(
                    f"Chunk {chunk.index} starts at {chunk.offset}, remote offset is {committed}"
                )
            parts.append(bytes(data))
            session.committed_bytes = committed + len(data)

    def finalize(self, session: UploadSession) -> str:
        uri = f"memory://{self.bucket}/{session.destination}"
        with self._lock:
            parts = self.sessions.pop(session.resume_token)['parts']
            self.objects[uri] = b"".join(parts)
        return uri

    def abort(self, session: UploadSession) -> None:
        with self._lock:
            self.sessions.pop(session.resume_token, None)

    def media_url(self, uri: str, expires_in: int = 3600) -> str:
        return uri


class InMemoryDocumentStore(DocumentStoreAdapter):
    """Thread-safe document store backed by dictionaries"""

    def __init__(self):
        self.uploads: Dict[str, UploadRecord] = {}
        self.streams: Dict[str, StreamAggregate] = {}
        self.jobs: Dict[str, AnalysisJob] = {}
        self.hands: Dict[str, List[Dict[str, Any]]] = {}
        self.write_count = 0
        self._lock = threading.RLock()

    # Upload records

    def get_upload(self, upload_id: str) -> Optional[UploadRecord]:
        with self._lock:
            record = self.uploads.get(upload_id)
            return copy.deepcopy(record) if record else None

    def save_upload(self, record: UploadRecord, expected_version: Optional[int]) -> UploadRecord:
        with self._lock:
            current = self.uploads.get(record.id)
            if expected_version is None:
                if current is not None:
                    raise ConcurrentModificationError("Upload", record.id)
            elif current is None or current.version != expected_version:
                raise ConcurrentModificationError("Upload", record.id)
            stored = copy.deepcopy(record)
            stored.version = 1 if expected_version is None else expected_version + 1
            self.uploads[record.id] = stored
            self.write_count += 1
            return copy.deepcopy(stored)

    def list_uploads_by_status(self, status: str) -> List[UploadRecord]:
        with self._lock:
            return [copy.deepcopy(r) for r in self.uploads.values() if r.status == status]

    # Streams

    def get_stream(self, stream_id: str) -> Optional[StreamAggregate]:
        with self._lock:
            stream = self.streams.get(stream_id)
            return copy.deepcopy(stream) if stream else None

    def upsert_stream(self, stream_id: str, tournament_id: str, event_id: str,
                      fields: Dict[str, Any]) -> StreamAggregate:
        with self._lock:
            stream = self.streams.get(stream_id)
            now = utcnow()
            if stream is None:
                stream = StreamAggregate(id=stream_id, tournament_id=tournament_id,
                                         event_id=event_id, created_at=now)
                self.streams[stream_id] = stream
            known = set(asdict(stream))
            for key, value in fields.items():
                if key not in known:
                    raise ValueError(f"Unknown stream field: {key}")
                setattr(stream, key, value)
            stream.updated_at = now
            self.write_count += 1
            return copy.deepcopy(stream)

    # Analysis jobs

    def create_job(self, job: AnalysisJob) -> AnalysisJob:
        with self._lock:
            stored = copy.deepcopy(job)
            stored.version = 1
            stored.created_at = stored.created_at or utcnow()
            stored.updated_at = stored.created_at
            self.jobs[job.id] = stored
            self.write_count += 1
            return copy.deepcopy(stored)

    def get_job(self, job_id: str) -> Optional[AnalysisJob]:
        with self._lock:
            job = self.jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def update_job(self, job: AnalysisJob, expected_version: int) -> AnalysisJob:
        with self._lock:
            current = self.jobs.get(job.id)
            if current is None or current.version != expected_version:
                raise ConcurrentModificationError("Job", job.id)
            stored = copy.deepcopy(job)
            stored.version = expected_version + 1
            stored.updated_at = utcnow()
            self.jobs[job.id] = stored
            self.write_count += 1
            return copy.deepcopy(stored)

    def record_window_outcome(self, job_id: str, succeeded: bool, hands_found: int) -> AnalysisJob:
        with self._lock:
            job = self.jobs.get(job_id)
            if job is None:
                raise RecordNotFoundError("Job", job_id)
            if succeeded:
                job.completed_windows += 1
                job.hands_found += hands_found
            else:
                job.failed_windows += 1
            job.progress = max(job.progress, self.job_progress(job))
            job.updated_at = utcnow()
            job.version += 1
            self.write_count += 1
            return copy.deepcopy(job)

    def claim_pending_job(self) -> Optional[AnalysisJob]:
        with self._lock:
            pending = [j for j in self.jobs.values() if j.status == JobStatus.PENDING]
            if not pending:
                return None
            job = min(pending, key=lambda j: j.created_at)
            job.status = JobStatus.PROCESSING
            job.updated_at = utcnow()
            job.version += 1
            return copy.deepcopy(job)

    def claim_job(self, job_id: str) -> Optional[AnalysisJob]:
        with self._lock:
            job = self.jobs.get(job_id)
            if job is None or job.status != JobStatus.PENDING:
                return None
            job.status = JobStatus.PROCESSING
            job.updated_at = utcnow()
            job.version += 1
            return copy.deepcopy(job)

    def list_jobs_by_status(self, status: str) -> List[AnalysisJob]:
        with self._lock:
            return [copy.deepcopy(j) for j in self.jobs.values() if j.status == status]

    # Hands

    def replace_stream_hands(self, stream_id: str, job_id: str, hands: List[Hand]) -> int:
        with self._lock:
            self.hands[stream_id] = [dict(h.to_record(), jobId=job_id) for h in hands]
            self.write_count += 1
            return len(hands)

    def list_stream_hands(self, stream_id: str) -> List[Hand]:
        with self._lock:
            return [Hand.from_record(r) for r in self.hands.get(stream_id, [])]

    def count_stream_hands(self, stream_id: str) -> int:
        with self._lock:
            return len(self.hands.get(stream_id, []))

    def delete_stream_hands(self, stream_id: str) -> int:
        with self._lock:
            removed = self.hands.pop(stream_id, [])
            if removed:
                self.write_count += 1
            return len(removed)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            job_counts: Dict[str, int] = {}
            for job in self.jobs.values():
                job_counts[job.status] = job_counts.get(job.status, 0) + 1
            return {
                'jobs': job_counts,
                'uploads': len(self.uploads),
                'streams': len(self.streams),
                'hands': sum(len(h) for h in self.hands.values()),
            }
