"""
Postgres adapter implementation for the document store.

Upload records, stream aggregates, analysis jobs and hands live in four
tables. Every record carries a version column; writes that race against
another writer fail the version check instead of overwriting it.
"""

from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool
from dataclasses import fields as dataclass_fields
from typing import Optional, Dict, Any, List
import logging

from .base import DocumentStoreAdapter
from ..errors import ConcurrentModificationError, RecordNotFoundError
from ..logging_setup import log_exception
from ..models import AnalysisJob, Hand, JobStatus, StreamAggregate, UploadRecord

logger = logging.getLogger("hand_worker")

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS video_uploads (
        id TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        progress DOUBLE PRECISION NOT NULL DEFAULT 0,
        error_message TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        completed_at TIMESTAMPTZ,
        stream_id TEXT,
        tournament_id TEXT,
        event_id TEXT,
        blob_uri TEXT,
        resume_token TEXT,
        version INTEGER NOT NULL DEFAULT 1
    )
    """,
    "CREATE INDEX IF NOT EXISTS video_uploads_status_idx ON video_uploads (status, updated_at)",
    """
    CREATE TABLE IF NOT EXISTS streams (
        id TEXT PRIMARY KEY,
        tournament_id TEXT NOT NULL,
        event_id TEXT NOT NULL,
        pipeline_status TEXT,
        pipeline_progress DOUBLE PRECISION NOT NULL DEFAULT 0,
        pipeline_error TEXT,
        current_job_id TEXT,
        hands_count INTEGER NOT NULL DEFAULT 0,
        blob_uri TEXT,
        video_duration_seconds DOUBLE PRECISION,
        upload_status TEXT,
        upload_progress DOUBLE PRECISION NOT NULL DEFAULT 0,
        upload_error_message TEXT,
        uploaded_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS analysis_jobs (
        id TEXT PRIMARY KEY,
        stream_id TEXT NOT NULL,
        tournament_id TEXT NOT NULL,
        event_id TEXT NOT NULL,
        status TEXT NOT NULL,
        progress DOUBLE PRECISION NOT NULL DEFAULT 0,
        hands_found INTEGER NOT NULL DEFAULT 0,
        total_windows INTEGER NOT NULL DEFAULT 0,
        completed_windows INTEGER NOT NULL DEFAULT 0,
        failed_windows INTEGER NOT NULL DEFAULT 0,
        warning TEXT,
        error TEXT,
        collisions JSONB NOT NULL DEFAULT '[]'::jsonb,
        cancel_requested BOOLEAN NOT NULL DEFAULT false,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        completed_at TIMESTAMPTZ,
        version INTEGER NOT NULL DEFAULT 1
    )
    """,
    "CREATE INDEX IF NOT EXISTS analysis_jobs_status_idx ON analysis_jobs (status, created_at)",
    """
    CREATE TABLE IF NOT EXISTS hands (
        id BIGSERIAL PRIMARY KEY,
        stream_id TEXT NOT NULL,
        job_id TEXT NOT NULL,
        number INTEGER NOT NULL,
        video_timestamp_start DOUBLE PRECISION NOT NULL,
        video_timestamp_end DOUBLE PRECISION NOT NULL,
        data JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (stream_id, number)
    )
    """,
]


def _row_to(cls, row: Dict[str, Any]):
    """Build a dataclass from a dict_row, ignoring unknown columns"""
    names = {f.name for f in dataclass_fields(cls)}
    return cls(**{k: v for k, v in row.items() if k in names})


def _column_names(cls) -> List[str]:
    return [f.name for f in dataclass_fields(cls)]


class PostgresDocumentStore(DocumentStoreAdapter):
    """Postgres implementation of the document store adapter"""

    def __init__(self, database_url: str, pool_size: int = 5, timeout: int = 10):
        self.database_url = database_url
        self.pool_size = pool_size
        self.timeout = timeout
        self.pool = None

    def connect(self):
        """Initialize connection pool"""
        try:
            self.pool = ConnectionPool(
                self.database_url,
                min_size=1,
                max_size=self.pool_size,
                kwargs={
                    "connect_timeout": self.timeout,
                    "application_name": "hand_worker"
                }
            )
            logger.info("Postgres document store connection pool initialized")
            self._bootstrap_schema()
        except Exception as e:
            log_exception(logger, f"Failed to connect to Postgres document store: {e}")
            raise

    def _bootstrap_schema(self):
        """Create tables and indexes that do not exist yet"""
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                for statement in SCHEMA_STATEMENTS:
                    cur.execute(statement)
                conn.commit()
                logger.info("Postgres document store schema validated")

    # Upload records

    def get_upload(self, upload_id: str) -> Optional[UploadRecord]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("SELECT * FROM video_uploads WHERE id = %s", (upload_id,))
                result = cur.fetchone()
                return _row_to(UploadRecord, result) if result else None

    def save_upload(self, record: UploadRecord, expected_version: Optional[int]) -> UploadRecord:
        """Insert a new record or update it when the stored version matches"""
        columns = [c for c in _column_names(UploadRecord) if c not in ('id', 'version')]
        values = {c: getattr(record, c) for c in columns}
        values['id'] = record.id

        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                if expected_version is None:
                    query = sql.SQL("""
                        INSERT INTO video_uploads (id, {cols}, version)
                        VALUES (%(id)s, {vals}, 1)
                        ON CONFLICT (id) DO NOTHING
                        RETURNING *
                    """).format(
                        cols=sql.SQL(', ').join(sql.Identifier(c) for c in columns),
                        vals=sql.SQL(', ').join(sql.Placeholder(c) for c in columns),
                    )
                else:
                    values['expected_version'] = expected_version
                    query = sql.SQL("""
                        UPDATE video_uploads
                        SET {assignments}, version = version + 1
                        WHERE id = %(id)s AND version = %(expected_version)s
                        RETURNING *
                    """).format(
                        assignments=sql.SQL(', ').join(
                            sql.SQL("{} = {}").format(sql.Identifier(c), sql.Placeholder(c)) for c in columns
                        ),
                    )
                cur.execute(query, values)
                result = cur.fetchone()
                if result is None:
                    conn.rollback()
                    raise ConcurrentModificationError("Upload", record.id)
                conn.commit()
                return _row_to(UploadRecord, result)

    def list_uploads_by_status(self, status: str) -> List[UploadRecord]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    "SELECT * FROM video_uploads WHERE status = %s ORDER BY updated_at",
                    (status,)
                )
                return [_row_to(UploadRecord, row) for row in cur.fetchall()]

    # Streams

    def get_stream(self, stream_id: str) -> Optional[StreamAggregate]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("SELECT * FROM streams WHERE id = %s", (stream_id,))
                result = cur.fetchone()
                return _row_to(StreamAggregate, result) if result else None

    def upsert_stream(self, stream_id: str, tournament_id: str, event_id: str,
                      fields: Dict[str, Any]) -> StreamAggregate:
        known = set(_column_names(StreamAggregate))
        for key in fields:
            if key not in known or key in ('id', 'created_at', 'updated_at'):
                raise ValueError(f"Unknown stream field: {key}")

        columns = list(fields)
        params = dict(fields)
        params.update({'id': stream_id, 'tournament_id': tournament_id, 'event_id': event_id})
        insert_columns = ['tournament_id', 'event_id'] + [c for c in columns
                                                          if c not in ('tournament_id', 'event_id')]

        updates = [sql.SQL("{} = EXCLUDED.{}").format(sql.Identifier(c), sql.Identifier(c)) for c in columns]
        updates.append(sql.SQL("updated_at = now()"))

        query = sql.SQL("""
            INSERT INTO streams (id, {cols})
            VALUES (%(id)s, {vals})
            ON CONFLICT (id) DO UPDATE SET {updates}
            RETURNING *
        """).format(
            cols=sql.SQL(', ').join(sql.Identifier(c) for c in insert_columns),
            vals=sql.SQL(', ').join(sql.Placeholder(c) for c in insert_columns),
            updates=sql.SQL(', ').join(updates),
        )

        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(query, params)
                result = cur.fetchone()
                conn.commit()
                return _row_to(StreamAggregate, result)

    # Analysis jobs

    def create_job(self, job: AnalysisJob) -> AnalysisJob:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    INSERT INTO analysis_jobs
                        (id, stream_id, tournament_id, event_id, status, total_windows, collisions, version)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, 1)
                    RETURNING *
                """, (job.id, job.stream_id, job.tournament_id, job.event_id, job.status,
                      job.total_windows, Jsonb(job.collisions)))
                result = cur.fetchone()
                conn.commit()
                logger.info(f"Created analysis job {job.id} for stream {job.stream_id}")
                return _row_to(AnalysisJob, result)

    def get_job(self, job_id: str) -> Optional[AnalysisJob]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("SELECT * FROM analysis_jobs WHERE id = %s", (job_id,))
                result = cur.fetchone()
                return _row_to(AnalysisJob, result) if result else None

    def update_job(self, job: AnalysisJob, expected_version: int) -> AnalysisJob:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    UPDATE analysis_jobs
                    SET status = %s, progress = %s, hands_found = %s, total_windows = %s,
                        completed_windows = %s, failed_windows = %s, warning = %s, error = %s,
                        collisions = %s, cancel_requested = %s, completed_at = %s,
                        updated_at = now(), version = version + 1
                    WHERE id = %s AND version = %s
                    RETURNING *
                """, (job.status, job.progress, job.hands_found, job.total_windows,
                      job.completed_windows, job.failed_windows, job.warning, job.error,
                      Jsonb(job.collisions), job.cancel_requested, job.completed_at,
                      job.id, expected_version))
                result = cur.fetchone()
                if result is None:
                    conn.rollback()
                    raise ConcurrentModificationError("Job", job.id)
                conn.commit()
                return _row_to(AnalysisJob, result)

    def record_window_outcome(self, job_id: str, succeeded: bool, hands_found: int) -> AnalysisJob:
        """Increment the window counters in place; progress only moves forward"""
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    UPDATE analysis_jobs
                    SET completed_windows = completed_windows + %(ok)s,
                        failed_windows = failed_windows + %(failed)s,
                        hands_found = hands_found + %(hands)s,
                        progress = GREATEST(progress, CASE
                            WHEN total_windows > 0 THEN LEAST(100.0, ROUND(
                                (100.0 * (completed_windows + failed_windows + 1) / total_windows)::numeric, 2
                            )::double precision)
                            ELSE 0 END),
                        updated_at = now(),
                        version = version + 1
                    WHERE id = %(id)s
                    RETURNING *
                """, {
                    'ok': 1 if succeeded else 0,
                    'failed': 0 if succeeded else 1,
                    'hands': hands_found if succeeded else 0,
                    'id': job_id,
                })
                result = cur.fetchone()
                if result is None:
                    conn.rollback()
                    raise RecordNotFoundError("Job", job_id)
                conn.commit()
                return _row_to(AnalysisJob, result)

    def claim_pending_job(self) -> Optional[AnalysisJob]:
        """Atomically claim the oldest pending job"""
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    WITH j AS (
                        SELECT id
                        FROM analysis_jobs
                        WHERE status = %s
                        ORDER BY created_at
                        FOR UPDATE SKIP LOCKED
                        LIMIT 1
                    )
                    UPDATE analysis_jobs
                    SET status = %s, updated_at = now(), version = version + 1
                    FROM j
                    WHERE analysis_jobs.id = j.id
                    RETURNING analysis_jobs.*;
                """, (JobStatus.PENDING, JobStatus.PROCESSING))
                result = cur.fetchone()
                conn.commit()
                if result:
                    logger.info(f"Claimed job {result['id']} for stream {result['stream_id']}")
                    return _row_to(AnalysisJob, result)
                return None

    def claim_job(self, job_id: str) -> Optional[AnalysisJob]:
        """Claim one job only if it is still pending"""
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    UPDATE analysis_jobs
                    SET status = %s, updated_at = now(), version = version + 1
                    WHERE id = %s AND status = %s
                    RETURNING *;
                """, (JobStatus.PROCESSING, job_id, JobStatus.PENDING))
                result = cur.fetchone()
                conn.commit()
                if result:
                    logger.info(f"Claimed job {job_id} for stream {result['stream_id']}")
                    return _row_to(AnalysisJob, result)
                return None

    def list_jobs_by_status(self, status: str) -> List[AnalysisJob]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    "SELECT * FROM analysis_jobs WHERE status = %s ORDER BY created_at",
                    (status,)
                )
                return [_row_to(AnalysisJob, row) for row in cur.fetchall()]

    # Hands

    def replace_stream_hands(self, stream_id: str, job_id: str, hands: List[Hand]) -> int:
        """Delete and re-insert the stream's hands in a single transaction"""
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM hands WHERE stream_id = %s", (stream_id,))
                hand_data = [
                    (stream_id, job_id, hand.number, hand.start_seconds, hand.end_seconds,
                     Jsonb(hand.to_record()))
                    for hand in hands
                ]
                if hand_data:
                    cur.executemany("""
                        INSERT INTO hands
                            (stream_id, job_id, number, video_timestamp_start, video_timestamp_end, data)
                        VALUES (%s, %s, %s, %s, %s, %s)
                    """, hand_data)
                conn.commit()
                logger.info(f"Stored {len(hand_data)} hands for stream {stream_id}")
                return len(hand_data)

    def list_stream_hands(self, stream_id: str) -> List[Hand]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    "SELECT data FROM hands WHERE stream_id = %s ORDER BY number",
                    (stream_id,)
                )
                return [Hand.from_record(row['data']) for row in cur.fetchall()]

    def count_stream_hands(self, stream_id: str) -> int:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT COUNT(*) FROM hands WHERE stream_id = %s", (stream_id,))
                return cur.fetchone()[0]

    def delete_stream_hands(self, stream_id: str) -> int:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM hands WHERE stream_id = %s", (stream_id,))
                deleted = cur.rowcount
                conn.commit()
                return deleted

    def get_stats(self) -> Dict[str, Any]:
        """Get storage statistics for monitoring"""
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    SELECT status, COUNT(*) as count
                    FROM analysis_jobs
                    GROUP BY status
                """)
                job_counts = {row[0]: row[1] for row in cur.fetchall()}

                cur.execute("""
                    SELECT status, COUNT(*) as count
                    FROM video_uploads
                    GROUP BY status
                """)
                upload_counts = {row[0]: row[1] for row in cur.fetchall()}

                cur.execute("SELECT COUNT(*) FROM streams")
                stream_count = cur.fetchone()[0]
                cur.execute("SELECT COUNT(*) FROM hands")
                hand_count = cur.fetchone()[0]

                return {
                    "jobs": job_counts,
                    "uploads": upload_counts,
                    "streams": stream_count,
                    "hands": hand_count
                }

    def close(self):
        """Close connection pool"""
        if self.pool:
            self.pool.close()
            logger.info("Postgres document store connection pool closed")
