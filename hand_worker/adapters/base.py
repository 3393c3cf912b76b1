"""
Abstract base classes for blob storage and document store adapters.

Defines the interface that all adapters must implement, enabling
easy swapping between storage backends (S3, Postgres, in-memory).
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Dict, Any, List

from ..models import (
    AnalysisJob, Chunk, Hand, StreamAggregate, UploadRecord, UploadSession,
)


class BlobStorageAdapter(ABC):
    """Abstract base class for resumable blob storage"""

    def connect(self) -> None:
        pass

    def close(self) -> None:
        pass

    @abstractmethod
    def initiate_upload(self, destination: str, total_size: int, content_type: str) -> UploadSession:
        """
        Start a resumable upload session.

        Args:
            destination: Object key inside the store
            total_size: Size of the file in bytes
            content_type: MIME type of the object

        Returns:
            UploadSession whose resume_token can be persisted
        """
        pass

    @abstractmethod
    def resume_upload(self, destination: str, resume_token: str, total_size: int,
                      content_type: str) -> UploadSession:
        """Reattach to an existing session; committed_offset() tells where to continue."""
        pass

    @abstractmethod
    def committed_offset(self, session: UploadSession) -> int:
        """
        Ask the remote store how many bytes it has acknowledged.

        Returns:
            Byte offset at which the next chunk must start
        """
        pass

    @abstractmethod
    def upload_chunk(self, session: UploadSession, chunk: Chunk, data: bytes) -> None:
        """
        Commit one chunk. The chunk must start at the session's committed offset.

        Raises:
            ChunkUploadError: on transient failure (retryable)
            AuthorizationError: when credentials are rejected
        """
        pass

    @abstractmethod
    def finalize(self, session: UploadSession) -> str:
        """
        Assemble the committed chunks into the final object.

        Returns:
            URI of the stored object
        """
        pass

    @abstractmethod
    def abort(self, session: UploadSession) -> None:
        """Discard a session and its committed chunks."""
        pass

    @abstractmethod
    def media_url(self, uri: str, expires_in: int = 3600) -> str:
        """Readable URL for a stored object, used to feed media tools."""
        pass


class DocumentStoreAdapter(ABC):
    """Abstract base class for the status/record document store"""

    def connect(self) -> None:
        pass

    def close(self) -> None:
        pass

    # Upload records

    @abstractmethod
    def get_upload(self, upload_id: str) -> Optional[UploadRecord]:
        pass

    @abstractmethod
    def save_upload(self, record: UploadRecord, expected_version: Optional[int]) -> UploadRecord:
        """
        Insert or update an upload record.

        Args:
            record: Record to persist
            expected_version: None to insert a new record, otherwise the
                version read before modifying it

        Returns:
            The persisted record with its new version

        Raises:
            ConcurrentModificationError: if the stored version differs
        """
        pass

    @abstractmethod
    def list_uploads_by_status(self, status: str) -> List[UploadRecord]:
        pass

    # Streams

    @abstractmethod
    def get_stream(self, stream_id: str) -> Optional[StreamAggregate]:
        pass

    @abstractmethod
    def upsert_stream(self, stream_id: str, tournament_id: str, event_id: str,
                      fields: Dict[str, Any]) -> StreamAggregate:
        """
        Update the given StreamAggregate attributes, creating the stream if needed.

        Args:
            stream_id: ID of the stream
            tournament_id: Owning tournament
            event_id: Owning event
            fields: Mapping of StreamAggregate attribute name to new value
        """
        pass

    # Analysis jobs

    @abstractmethod
    def create_job(self, job: AnalysisJob) -> AnalysisJob:
        pass

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[AnalysisJob]:
        pass

    @abstractmethod
    def update_job(self, job: AnalysisJob, expected_version: int) -> AnalysisJob:
        """
        Version-checked write of a job record.

        Raises:
            ConcurrentModificationError: if the stored version differs
        """
        pass

    @abstractmethod
    def record_window_outcome(self, job_id: str, succeeded: bool, hands_found: int) -> AnalysisJob:
        """
        Atomically count one finished window and refresh the heartbeat.

        Progress is recomputed from the counters, so it never moves backwards
        regardless of the order in which windows finish.
        """
        pass

    @abstractmethod
    def claim_pending_job(self) -> Optional[AnalysisJob]:
        """Atomically move the oldest pending job to processing and return it."""
        pass

    @abstractmethod
    def claim_job(self, job_id: str) -> Optional[AnalysisJob]:
        """
        Move one specific job from pending to processing.

        Returns:
            The claimed job, or None if the job is no longer pending
        """
        pass

    @abstractmethod
    def list_jobs_by_status(self, status: str) -> List[AnalysisJob]:
        pass

    # Hands

    @abstractmethod
    def replace_stream_hands(self, stream_id: str, job_id: str, hands: List[Hand]) -> int:
        """
        Replace every stored hand of a stream with the given list.

        Returns:
            Number of hands stored
        """
        pass

    @abstractmethod
    def list_stream_hands(self, stream_id: str) -> List[Hand]:
        pass

    @abstractmethod
    def count_stream_hands(self, stream_id: str) -> int:
        pass

    @abstractmethod
    def delete_stream_hands(self, stream_id: str) -> int:
        pass

    def get_stats(self) -> Dict[str, Any]:
        """Get storage statistics for monitoring"""
        return {}

    @staticmethod
    def job_progress(job: AnalysisJob) -> float:
        if job.total_windows <= 0:
            return 0.0
        done = job.completed_windows + job.failed_windows
        return round(min(100.0, 100.0 * done / job.total_windows), 2)


def is_older_than(moment: Optional[datetime], now: datetime, seconds: float) -> bool:
    if moment is None:
        return False
    return (now - moment).total_seconds() > seconds
