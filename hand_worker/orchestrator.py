"""
Pipeline orchestration and execution management.

Drives one analysis job over a stream: plan windows, run Phase 1 and
Phase 2 per window with bounded parallelism and per-window retries,
stitch the surviving windows into one hand list, and publish the result
to the hand store and the stream aggregate.
"""

import time
import uuid
import asyncio
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .adapters.base import BlobStorageAdapter, DocumentStoreAdapter, is_older_than
from .config import WorkerConfig
from .errors import (
    AICallTimeoutError, AuthorizationError, ConcurrentModificationError,
    InvalidTransitionError, PipelineError, RecordNotFoundError,
)
from .logging_setup import log_exception
from .models import (
    JOB_TRANSITIONS, UPLOAD_TRANSITIONS, AnalysisJob, AnalysisWindow, JobStatus, PipelineStatus,
    StreamAggregate, SyncResult, UploadStatus, WindowOutcome, utcnow,
)
from .pipeline.boundaries import extract_boundaries
from .pipeline.hands import analyze_hands
from .pipeline.media import probe_duration
from .pipeline.model_client import ModelClient
from .pipeline.segments import plan_windows
from .pipeline.stitch import stitch
from .upload_tracker import UploadStatusTracker

logger = logging.getLogger("hand_worker")

CANCELLED_ERROR = "Job cancelled"


class PipelineOrchestrator:
    """Manages analysis job execution and the stream aggregate it reports into"""

    def __init__(self, config: WorkerConfig, store: DocumentStoreAdapter,
                 blob_store: BlobStorageAdapter, model_client: ModelClient,
                 duration_probe: Callable[[str], float] = probe_duration,
                 tracker: Optional[UploadStatusTracker] = None,
                 max_write_attempts: int = 5):
        self.config = config
        self.store = store
        self.blob_store = blob_store
        self.model_client = model_client
        self.duration_probe = duration_probe
        self.tracker = tracker
        self.max_write_attempts = max_write_attempts
        self._progress_lock = threading.Lock()
        self.stats = {
            'jobs_processed': 0,
            'jobs_failed': 0,
            'hands_stored': 0,
            'total_processing_time': 0.0,
            'start_time': datetime.now()
        }

    # Job lifecycle

    def create_job(self, stream_id: str) -> AnalysisJob:
        """
        Queue a pending analysis job for an uploaded stream.

        Raises:
            RecordNotFoundError: if the stream does not exist
            InvalidTransitionError: if the stream has no media or is already being analyzed
        """
        stream = self.store.get_stream(stream_id)
        if stream is None:
            raise RecordNotFoundError("Stream", stream_id)
        if not stream.blob_uri:
            raise InvalidTransitionError(stream.pipeline_status or PipelineStatus.PENDING,
                                         PipelineStatus.ANALYZING, "stream without uploaded media")
        if stream.current_job_id:
            current = self.store.get_job(stream.current_job_id)
            if current is not None and current.status not in JobStatus.TERMINAL:
                raise InvalidTransitionError(PipelineStatus.ANALYZING, PipelineStatus.ANALYZING, "stream")

        job = self.store.create_job(AnalysisJob(
            id=str(uuid.uuid4()),
            stream_id=stream.id,
            tournament_id=stream.tournament_id,
            event_id=stream.event_id,
            status=JobStatus.PENDING,
            created_at=utcnow(),
        ))
        self.store.upsert_stream(stream.id, stream.tournament_id, stream.event_id, {
            'pipeline_status': PipelineStatus.ANALYZING,
            'pipeline_progress': 0.0,
            'pipeline_error': None,
            'current_job_id': job.id,
        })
        logger.info(f"Queued analysis job {job.id} for stream {stream.id}")
        return job

    def job_status(self, job_id: str) -> Dict[str, Any]:
        job = self.store.get_job(job_id)
        if job is None:
            raise RecordNotFoundError("Job", job_id)
        return job.to_status_dict()

    def request_cancel(self, job_id: str) -> AnalysisJob:
        """
        Ask a job to stop. No new windows are started; results of windows
        already in flight are discarded and the job ends failed.
        """
        def apply(job: AnalysisJob) -> None:
            if job.status in JobStatus.TERMINAL:
                raise InvalidTransitionError(job.status, JobStatus.FAILED, "job")
            job.cancel_requested = True

        job = self._update_job(job_id, apply)
        logger.info(f"Cancellation requested for job {job_id}")
        if job.status == JobStatus.PENDING:
            job = self._fail_job(job_id, CANCELLED_ERROR)
        return job

    def execute_pipeline(self, job: AnalysisJob) -> AnalysisJob:
        """Run a job to a terminal state from synchronous code"""
        return asyncio.run(self.run_job(job))

    async def run_job(self, job: AnalysisJob) -> AnalysisJob:
        """
        Execute the complete analysis pipeline for one job.

        Args:
            job: Pending or already-claimed processing job

        Returns:
            The job in its terminal state
        """
        if job.status == JobStatus.PENDING:
            claimed = await asyncio.to_thread(self.store.claim_job, job.id)
            if claimed is None:
                # Another worker owns the job now, or it was cancelled
                current = await asyncio.to_thread(self.store.get_job, job.id)
                state = current.status if current else "missing"
                logger.info(f"Job {job.id} is no longer pending ({state}); not running it here")
                return current or job
            job = claimed

        start_time = time.time()
        try:
            logger.info(f"Executing pipeline for job {job.id}, stream {job.stream_id}")
            stream = await asyncio.to_thread(self.store.get_stream, job.stream_id)
            if stream is None:
                raise RecordNotFoundError("Stream", job.stream_id)
            if not stream.blob_uri:
                raise RecordNotFoundError("Media for stream", job.stream_id)
            await asyncio.to_thread(self._advance_upload, stream.id, UploadStatus.ANALYZING)

            media_url = self.blob_store.media_url(stream.blob_uri)
            duration = await self._resolve_duration(stream, media_url)
            windows = plan_windows(duration, self.config.WINDOW_LENGTH_SEC, self.config.WINDOW_OVERLAP_SEC)

            def set_windows(j: AnalysisJob) -> None:
                j.total_windows = len(windows)

            job = await asyncio.to_thread(self._update_job, job.id, set_windows)

            outcomes = await self._run_windows(job, stream, media_url, windows)
            job = await asyncio.to_thread(self._finalize, job.id, stream, windows, outcomes)

        except PipelineError as e:
            logger.error(f"Pipeline failed for job {job.id}: {e.message}")
            job = await asyncio.to_thread(self._fail_if_open, job.id, e.message)
        except Exception as e:
            error_msg = f"Unexpected error in pipeline execution: {str(e)}"
            log_exception(logger, error_msg)
            job = await asyncio.to_thread(self._fail_if_open, job.id, error_msg)

        self.stats['total_processing_time'] += time.time() - start_time
        if job.status == JobStatus.COMPLETED:
            self.stats['jobs_processed'] += 1
            self.stats['hands_stored'] += job.hands_found
        else:
            self.stats['jobs_failed'] += 1
        return job

    async def _resolve_duration(self, stream: StreamAggregate, media_url: str) -> float:
        if stream.video_duration_seconds:
            return float(stream.video_duration_seconds)

        duration = await asyncio.to_thread(self.duration_probe, media_url)
        await asyncio.to_thread(self.store.upsert_stream, stream.id, stream.tournament_id,
                                stream.event_id, {'video_duration_seconds': duration})
        return duration

    # Windows

    async def _run_windows(self, job: AnalysisJob, stream: StreamAggregate, media_url: str,
                           windows: List[AnalysisWindow]) -> List[WindowOutcome]:
        semaphore = asyncio.Semaphore(self.config.WINDOW_MAX_CONCURRENT)
        fatal = asyncio.Event()

        async def guarded(window: AnalysisWindow) -> WindowOutcome:
            async with semaphore:
                return await self._process_window(job, stream, media_url, window, fatal)

        return await asyncio.gather(*(guarded(w) for w in windows))

    async def _process_window(self, job: AnalysisJob, stream: StreamAggregate, media_url: str,
                              window: AnalysisWindow, fatal: asyncio.Event) -> WindowOutcome:
        """Phase 1 then Phase 2 for one window, retried as a unit"""
        if fatal.is_set() or await self._cancel_requested(job.id):
            return WindowOutcome(index=window.index, succeeded=False, cancelled=True)

        max_attempts = self.config.WINDOW_MAX_ATTEMPTS
        last_error: Optional[str] = None

        for attempt in range(1, max_attempts + 1):
            try:
                boundaries = await self._with_timeout(extract_boundaries(
                    self.model_client, media_url, window, self.config.PHASE1_MODEL
                ))
                hands = []
                if boundaries:
                    hands = await self._with_timeout(analyze_hands(
                        self.model_client, media_url, window, boundaries, job.stream_id,
                        self.config.PHASE2_MODEL
                    ))
            except AuthorizationError as e:
                fatal.set()
                logger.error(f"Window {window.index} of job {job.id}: {e.message}")
                await asyncio.to_thread(self._record_outcome, job.id, stream, False, 0)
                return WindowOutcome(index=window.index, succeeded=False, error=e.message, fatal=True)
            except PipelineError as e:
                last_error = e.message
                logger.warning(
                    f"Window {window.index} of job {job.id} failed "
                    f"(attempt {attempt}/{max_attempts}): {e.message}"
                )
                if not e.retryable:
                    break
            except Exception as e:
                last_error = str(e)
                log_exception(logger, f"Unexpected error in window {window.index} of job {job.id}: {e}")
                break
            else:
                if fatal.is_set() or await self._cancel_requested(job.id):
                    logger.info(f"Discarding results of window {window.index}: job {job.id} stopping")
                    return WindowOutcome(index=window.index, succeeded=False, cancelled=True)

                await asyncio.to_thread(self._record_outcome, job.id, stream, True, len(hands))
                return WindowOutcome(
                    index=window.index,
                    succeeded=True,
                    hands=hands,
                    boundaries_found=len(boundaries),
                )

            if attempt < max_attempts:
                await asyncio.sleep(self.config.window_retry_delay_sec)

        logger.error(f"Window {window.index} of job {job.id} failed: {last_error}")
        await asyncio.to_thread(self._record_outcome, job.id, stream, False, 0)
        return WindowOutcome(index=window.index, succeeded=False, error=last_error)

    async def _with_timeout(self, call):
        try:
            return await asyncio.wait_for(call, timeout=self.config.AI_CALL_TIMEOUT_SEC)
        except asyncio.TimeoutError as e:
            raise AICallTimeoutError(self.config.AI_CALL_TIMEOUT_SEC) from e

    async def _cancel_requested(self, job_id: str) -> bool:
        job = await asyncio.to_thread(self.store.get_job, job_id)
        return bool(job and job.cancel_requested)

    def _record_outcome(self, job_id: str, stream: StreamAggregate, succeeded: bool,
                        hands_found: int) -> AnalysisJob:
        """Count a finished window and mirror job progress onto the stream"""
        with self._progress_lock:
            job = self.store.record_window_outcome(job_id, succeeded, hands_found)
            self.store.upsert_stream(stream.id, stream.tournament_id, stream.event_id,
                                     {'pipeline_progress': job.progress})
        logger.debug(
            f"Job {job_id} progress {job.progress:.1f}% "
            f"({job.completed_windows} ok, {job.failed_windows} failed of {job.total_windows})"
        )
        return job

    # Finalization

    def _finalize(self, job_id: str, stream: StreamAggregate, windows: List[AnalysisWindow],
                  outcomes: List[WindowOutcome]) -> AnalysisJob:
        fatal = next((o for o in outcomes if o.fatal), None)
        if fatal is not None:
            return self._fail_job(job_id, fatal.error)

        job = self.store.get_job(job_id)
        if job.cancel_requested or any(o.cancelled for o in outcomes):
            return self._fail_job(job_id, CANCELLED_ERROR)

        succeeded = [o for o in outcomes if o.succeeded]
        failed = [o for o in outcomes if not o.succeeded]
        if windows and not succeeded:
            return self._fail_job(job_id, f"All {len(windows)} windows failed; last error: {failed[-1].error}")

        warnings = []
        if failed:
            detail = "; ".join(f"window {o.index}: {o.error}" for o in failed)
            coverage = f"{len(failed)}/{len(windows)} windows failed ({detail})"
            if self.config.PARTIAL_COVERAGE_POLICY == "fail":
                return self._fail_job(job_id, f"Partial coverage: {coverage}")
            warnings.append(f"Partial coverage: {coverage}")

        result = stitch(
            {o.index: o.hands for o in succeeded},
            windows,
            dedup_ratio=self.config.DEDUP_OVERLAP_RATIO,
            tolerance=self.config.STITCH_TOLERANCE_SEC,
        )
        if result.collisions:
            warnings.append(f"{len(result.collisions)} ambiguous hand collisions flagged for review")

        count = self.store.replace_stream_hands(stream.id, job_id, result.hands)
        collisions = [c.to_dict() for c in result.collisions]

        def complete(j: AnalysisJob) -> None:
            _transition(j, JobStatus.COMPLETED)
            j.progress = 100.0
            j.hands_found = count
            j.warning = " | ".join(warnings) or None
            j.collisions = collisions
            j.completed_at = utcnow()

        job = self._update_job(job_id, complete)
        self.store.upsert_stream(stream.id, stream.tournament_id, stream.event_id, {
            'pipeline_status': PipelineStatus.COMPLETED,
            'pipeline_progress': 100.0,
            'pipeline_error': None,
            'hands_count': count,
        })
        self._advance_upload(stream.id, UploadStatus.COMPLETED)

        if job.warning:
            logger.warning(f"Job {job_id} completed with warnings: {job.warning}")
        logger.info(f"Pipeline completed for job {job_id}: {count} hands for stream {stream.id}")
        return job

    def _fail_job(self, job_id: str, error: str) -> AnalysisJob:
        def apply(j: AnalysisJob) -> None:
            _transition(j, JobStatus.FAILED)
            j.error = error
            j.completed_at = utcnow()

        job = self._update_job(job_id, apply)
        stream = self.store.get_stream(job.stream_id)
        if stream is not None and stream.current_job_id == job_id:
            self.store.upsert_stream(stream.id, stream.tournament_id, stream.event_id, {
                'pipeline_status': PipelineStatus.FAILED,
                'pipeline_error': error,
            })
            self._advance_upload(stream.id, UploadStatus.FAILED, error)
        logger.error(f"Job {job_id} failed: {error}")
        return job

    def _advance_upload(self, stream_id: str, status: str, error: Optional[str] = None) -> None:
        """
        Move the stream's upload record along with the analysis phase.

        Upload records owned by a stream share its id. Only a record that
        reached analysis is failed by an analysis failure; records already
        past the target state are left alone.
        """
        if self.tracker is None:
            return
        record = self.store.get_upload(stream_id)
        if record is None or status not in UPLOAD_TRANSITIONS[record.status]:
            return
        if status == UploadStatus.FAILED and record.status != UploadStatus.ANALYZING:
            return
        self.tracker.set_status(stream_id, status, error=error)

    def _fail_if_open(self, job_id: str, error: str) -> AnalysisJob:
        job = self.store.get_job(job_id)
        if job is None:
            raise RecordNotFoundError("Job", job_id)
        if job.status in JobStatus.TERMINAL:
            return job
        return self._fail_job(job_id, error)

    def _update_job(self, job_id: str, apply: Callable[[AnalysisJob], None]) -> AnalysisJob:
        """Version-checked read-modify-write of a job, retried on conflict"""
        for attempt in range(1, self.max_write_attempts + 1):
            job = self.store.get_job(job_id)
            if job is None:
                raise RecordNotFoundError("Job", job_id)
            expected_version = job.version
            apply(job)
            try:
                return self.store.update_job(job, expected_version)
            except ConcurrentModificationError:
                if attempt == self.max_write_attempts:
                    raise
                logger.debug(f"Job {job_id} changed concurrently, retrying write ({attempt})")

    # Stream maintenance

    def sync_stream_hands(self, stream_id: str) -> SyncResult:
        """
        Recompute the stream's hand count from the hand store.

        Idempotent: nothing is written when the stored count and status
        already match.
        """
        stream = self.store.get_stream(stream_id)
        if stream is None:
            raise RecordNotFoundError("Stream", stream_id)

        count = self.store.count_stream_hands(stream_id)
        fields: Dict[str, Any] = {}
        if stream.hands_count != count:
            fields['hands_count'] = count
        if count > 0 and stream.pipeline_status not in (PipelineStatus.COMPLETED, PipelineStatus.ANALYZING):
            fields['pipeline_status'] = PipelineStatus.COMPLETED
            fields['pipeline_progress'] = 100.0

        if fields:
            self.store.upsert_stream(stream.id, stream.tournament_id, stream.event_id, fields)
            logger.info(f"Synced stream {stream_id}: {count} hands")
        return SyncResult(success=True, stream_id=stream_id, hands_count=count, written=bool(fields))

    def reset_stream_analysis(self, stream_id: str) -> StreamAggregate:
        """
        Delete a stream's hands and return it to pending.

        Raises:
            InvalidTransitionError: unless the stream is analyzing, failed or completed
        """
        stream = self.store.get_stream(stream_id)
        if stream is None:
            raise RecordNotFoundError("Stream", stream_id)
        if stream.pipeline_status not in PipelineStatus.RESETTABLE:
            raise InvalidTransitionError(stream.pipeline_status or PipelineStatus.PENDING,
                                         PipelineStatus.PENDING, "stream")

        if stream.current_job_id:
            job = self.store.get_job(stream.current_job_id)
            if job is not None and job.status not in JobStatus.TERMINAL:
                self.request_cancel(job.id)

        deleted = self.store.delete_stream_hands(stream_id)
        stream = self.store.upsert_stream(stream.id, stream.tournament_id, stream.event_id, {
            'pipeline_status': PipelineStatus.PENDING,
            'pipeline_progress': 0.0,
            'pipeline_error': None,
            'current_job_id': None,
            'hands_count': 0,
        })
        logger.info(f"Reset analysis for stream {stream_id}: {deleted} hands deleted")
        return stream

    def is_job_stale(self, job: AnalysisJob, now: Optional[datetime] = None) -> bool:
        """A processing job without a heartbeat past the stale timeout"""
        if job.status != JobStatus.PROCESSING:
            return False
        return is_older_than(job.updated_at, now or utcnow(), self.config.JOB_STALE_TIMEOUT_HOURS * 3600)

    def find_stale_jobs(self, now: Optional[datetime] = None) -> List[AnalysisJob]:
        now = now or utcnow()
        return [j for j in self.store.list_jobs_by_status(JobStatus.PROCESSING) if self.is_job_stale(j, now)]

    def fail_stale_job(self, job_id: str, now: Optional[datetime] = None) -> AnalysisJob:
        """
        Explicitly fail a stale job and its stream.

        Raises:
            InvalidTransitionError: if the job is not stale
        """
        job = self.store.get_job(job_id)
        if job is None:
            raise RecordNotFoundError("Job", job_id)
        if not self.is_job_stale(job, now):
            raise InvalidTransitionError(job.status, JobStatus.FAILED, "non-stale job")
        return self._fail_job(
            job_id, f"Job timed out: no progress for {self.config.JOB_STALE_TIMEOUT_HOURS:g} hours"
        )

    def get_stats(self) -> Dict[str, Any]:
        """Get orchestrator statistics"""
        uptime = (datetime.now() - self.stats['start_time']).total_seconds()
        finished = self.stats['jobs_processed'] + self.stats['jobs_failed']
        return {
            'jobs_processed': self.stats['jobs_processed'],
            'jobs_failed': self.stats['jobs_failed'],
            'hands_stored': self.stats['hands_stored'],
            'total_processing_time': self.stats['total_processing_time'],
            'average_processing_time': (
                self.stats['total_processing_time'] / finished if finished > 0 else 0
            ),
            'uptime_seconds': uptime,
            'success_rate': self.stats['jobs_processed'] / finished if finished > 0 else 0
        }


def _transition(job: AnalysisJob, target: str) -> None:
    if target not in JOB_TRANSITIONS[job.status]:
        raise InvalidTransitionError(job.status, target, "job")
    job.status = target
