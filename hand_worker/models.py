"""
Domain models for the hand history worker.

Defines the core data structures used throughout the system,
providing type safety and clear interfaces between components.
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class UploadStatus:
    NONE = "none"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"

    ALL = (NONE, UPLOADING, UPLOADED, ANALYZING, COMPLETED, FAILED)
    TERMINAL = (COMPLETED, FAILED)


# Forward path of an upload; any non-terminal state may also fail
UPLOAD_TRANSITIONS: Dict[str, tuple] = {
    UploadStatus.NONE: (UploadStatus.UPLOADING, UploadStatus.FAILED),
    UploadStatus.UPLOADING: (UploadStatus.UPLOADED, UploadStatus.FAILED),
    UploadStatus.UPLOADED: (UploadStatus.ANALYZING, UploadStatus.FAILED),
    UploadStatus.ANALYZING: (UploadStatus.COMPLETED, UploadStatus.FAILED),
    UploadStatus.COMPLETED: (),
    UploadStatus.FAILED: (),
}


class JobStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = (COMPLETED, FAILED)


JOB_TRANSITIONS: Dict[str, tuple] = {
    JobStatus.PENDING: (JobStatus.PROCESSING, JobStatus.FAILED),
    JobStatus.PROCESSING: (JobStatus.COMPLETED, JobStatus.FAILED),
    JobStatus.COMPLETED: (),
    JobStatus.FAILED: (),
}


class PipelineStatus:
    """Stream-level pipeline status"""
    PENDING = "pending"
    UPLOADED = "uploaded"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"

    RESETTABLE = (ANALYZING, FAILED, COMPLETED)


class ChunkStatus:
    PENDING = "pending"
    IN_FLIGHT = "in-flight"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass
class UploadRecord:
    """Persisted progress of one file upload"""
    id: str
    status: str = UploadStatus.NONE
    progress: float = 0.0
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    stream_id: Optional[str] = None
    tournament_id: Optional[str] = None
    event_id: Optional[str] = None
    blob_uri: Optional[str] = None
    resume_token: Optional[str] = None
    version: int = 0

    def to_status_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'status': self.status,
            'progress': self.progress,
            'errorMessage': self.error_message,
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at),
            'completedAt': _iso(self.completed_at),
        }


@dataclass
class Chunk:
    """One fixed-size slice of a file being uploaded"""
    index: int
    offset: int
    length: int
    attempts: int = 0
    status: str = ChunkStatus.PENDING

    @property
    def end(self) -> int:
        return self.offset + self.length


@dataclass
class UploadSession:
    """Remote resumable-upload session"""
    destination: str
    resume_token: str
    total_size: int
    content_type: str = "video/mp4"
    committed_bytes: int = 0
    parts: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class UploadRequest:
    """A file queued for upload"""
    upload_id: str
    file_path: str
    destination: str
    stream_id: Optional[str] = None
    tournament_id: Optional[str] = None
    event_id: Optional[str] = None
    content_type: str = "video/mp4"


@dataclass
class AnalysisWindow:
    """Overlapping slice of the stream analyzed independently"""
    index: int
    start: float
    end: float
    overlap_prev: float = 0.0
    overlap_next: float = 0.0

    @property
    def duration(self) -> float:
        return self.end - self.start

    def edge_margin(self, abs_start: float, abs_end: float) -> float:
        """Distance from a hand's range to the nearest window edge"""
        return min(abs_start - self.start, self.end - abs_end)


@dataclass
class HandBoundary:
    """Phase-1 output: window-relative start/end of one complete hand"""
    hand_number: int
    start: str
    end: str
    start_seconds: float
    end_seconds: float


@dataclass
class Hand:
    """Structured hand data; window-relative until stitched"""
    stream_id: str
    number: int
    start_seconds: float
    end_seconds: float
    window_index: int
    provisional_number: Optional[int] = None
    stakes: Optional[str] = None
    pot: float = 0.0
    board: Dict[str, Any] = field(default_factory=dict)
    players: List[Dict[str, Any]] = field(default_factory=list)
    actions: List[Dict[str, Any]] = field(default_factory=list)
    winners: List[Dict[str, Any]] = field(default_factory=list)
    semantic_tags: List[str] = field(default_factory=list)
    ai_analysis: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration(self) -> float:
        return self.end_seconds - self.start_seconds

    @property
    def confidence(self) -> float:
        return float(self.ai_analysis.get('confidence') or 0.0)

    def to_record(self) -> Dict[str, Any]:
        return {
            'streamId': self.stream_id,
            'number': self.number,
            'windowIndex': self.window_index,
            'provisionalNumber': self.provisional_number,
            'videoTimestampStart': self.start_seconds,
            'videoTimestampEnd': self.end_seconds,
            'stakes': self.stakes,
            'pot': self.pot,
            'board': self.board,
            'players': self.players,
            'actions': self.actions,
            'winners': self.winners,
            'semanticTags': self.semantic_tags,
            'aiAnalysis': self.ai_analysis,
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> 'Hand':
        return cls(
            stream_id=data['streamId'],
            number=data['number'],
            start_seconds=data['videoTimestampStart'],
            end_seconds=data['videoTimestampEnd'],
            window_index=data.get('windowIndex', 0),
            provisional_number=data.get('provisionalNumber'),
            stakes=data.get('stakes'),
            pot=data.get('pot') or 0.0,
            board=data.get('board') or {},
            players=data.get('players') or [],
            actions=data.get('actions') or [],
            winners=data.get('winners') or [],
            semantic_tags=data.get('semanticTags') or [],
            ai_analysis=data.get('aiAnalysis') or {},
        )


@dataclass
class WindowOutcome:
    """Terminal per-window result of Phase 1 + Phase 2"""
    index: int
    succeeded: bool
    hands: List[Hand] = field(default_factory=list)
    boundaries_found: int = 0
    error: Optional[str] = None
    cancelled: bool = False
    fatal: bool = False


@dataclass
class Collision:
    """Two overlapping hands that could not be resolved as duplicates"""
    kept: Hand
    rejected: Hand
    overlap_seconds: float
    overlap_ratio: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'keptWindow': self.kept.window_index,
            'keptRange': [self.kept.start_seconds, self.kept.end_seconds],
            'rejectedWindow': self.rejected.window_index,
            'rejectedRange': [self.rejected.start_seconds, self.rejected.end_seconds],
            'overlapSeconds': round(self.overlap_seconds, 3),
            'overlapRatio': round(self.overlap_ratio, 3),
            'rejectedHand': self.rejected.to_record(),
        }


@dataclass
class StitchResult:
    """Canonical hand list plus everything set aside while stitching"""
    hands: List[Hand]
    duplicates_removed: int = 0
    collisions: List[Collision] = field(default_factory=list)


@dataclass
class AnalysisJob:
    """Represents one analysis run over a stream"""
    id: str
    stream_id: str
    tournament_id: str
    event_id: str
    status: str = JobStatus.PENDING
    progress: float = 0.0
    hands_found: int = 0
    total_windows: int = 0
    completed_windows: int = 0
    failed_windows: int = 0
    warning: Optional[str] = None
    error: Optional[str] = None
    collisions: List[Dict[str, Any]] = field(default_factory=list)
    cancel_requested: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: int = 0

    def to_status_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'streamId': self.stream_id,
            'status': self.status,
            'progress': self.progress,
            'handsFound': self.hands_found,
            'totalWindows': self.total_windows,
            'completedWindows': self.completed_windows,
            'failedWindows': self.failed_windows,
            'warning': self.warning,
            'collisions': len(self.collisions),
            'createdAt': _iso(self.created_at),
            'completedAt': _iso(self.completed_at),
            'error': self.error,
        }


@dataclass
class StreamAggregate:
    """Stream document the pipeline reports into"""
    id: str
    tournament_id: str
    event_id: str
    pipeline_status: Optional[str] = None
    pipeline_progress: float = 0.0
    pipeline_error: Optional[str] = None
    current_job_id: Optional[str] = None
    hands_count: int = 0
    blob_uri: Optional[str] = None
    video_duration_seconds: Optional[float] = None
    upload_status: Optional[str] = None
    upload_progress: float = 0.0
    upload_error_message: Optional[str] = None
    uploaded_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class SyncResult:
    success: bool
    stream_id: str
    hands_count: int
    written: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {'success': self.success, 'streamId': self.stream_id, 'handsCount': self.hands_count}
