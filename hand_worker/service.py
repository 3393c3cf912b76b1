"""
Main worker service.

Wires configuration, storage adapters, the upload engine, the upload
status tracker and the analysis orchestrator, and runs the polling loop
that claims pending analysis jobs from the document store.
"""

import time
import sys
import logging
from typing import Optional, Dict, Any

from .config import WorkerConfig
from .adapters.base import BlobStorageAdapter, DocumentStoreAdapter
from .adapters.memory_adapter import InMemoryBlobStorage, InMemoryDocumentStore
from .adapters.postgres_adapter import PostgresDocumentStore
from .adapters.s3_adapter import S3BlobStorageAdapter
from .orchestrator import PipelineOrchestrator
from .pipeline.model_client import ModelClient, OpenAIModelClient
from .upload_engine import UploadEngine
from .upload_tracker import UploadStatusTracker
from .logging_setup import setup_logging, log_exception
from .http_server import start_health_server

logger = logging.getLogger("hand_worker")


class WorkerService:
    """Main worker service with adapter-based architecture"""

    def __init__(self, config: Optional[WorkerConfig] = None,
                 blob_store: Optional[BlobStorageAdapter] = None,
                 store: Optional[DocumentStoreAdapter] = None,
                 model_client: Optional[ModelClient] = None):
        self.config = config or WorkerConfig.from_env()
        self.blob_store = blob_store
        self.store = store
        self.model_client = model_client
        self.tracker: Optional[UploadStatusTracker] = None
        self.upload_engine: Optional[UploadEngine] = None
        self.orchestrator: Optional[PipelineOrchestrator] = None
        self.health_server = None
        self.running = False
        self.backoff_interval = self.config.POLL_INTERVAL_MS
        self.max_backoff = self.config.MAX_BACKOFF_MS

    def initialize(self, start_http: bool = True):
        """Initialize worker with adapters based on configuration"""
        try:
            # Setup logging
            setup_logging(self.config.LOG_LEVEL, self.config.DATA_DIR)

            # Validate configuration
            self.config.validate(require_openai=self.model_client is None)

            # Initialize adapters
            self._initialize_adapters()

            # Initialize components
            self.tracker = UploadStatusTracker(self.store, self.config.UPLOAD_STALE_TIMEOUT_HOURS)
            self.upload_engine = UploadEngine.from_config(self.config, self.blob_store, self.tracker)
            if self.model_client is None:
                self.model_client = OpenAIModelClient(
                    frame_interval_sec=self.config.FRAME_SAMPLE_INTERVAL_SEC,
                    max_frames=self.config.MAX_FRAMES_PER_WINDOW
                )
            self.orchestrator = PipelineOrchestrator(
                self.config, self.store, self.blob_store, self.model_client, tracker=self.tracker
            )

            # Start health server if enabled
            if start_http:
                self.health_server = start_health_server(self)

            logger.info("Worker service initialized successfully")

        except Exception as e:
            log_exception(logger, f"Failed to initialize worker service: {e}")
            raise

    def _initialize_adapters(self):
        """Initialize blob and document store adapters based on configuration"""
        if self.blob_store is None:
            self.blob_store = self._create_blob_store_adapter()
        self.blob_store.connect()

        if self.store is None:
            self.store = self._create_document_store_adapter()
        self.store.connect()

        logger.info(
            f"Initialized adapters: {type(self.blob_store).__name__} blob store, "
            f"{type(self.store).__name__} document store"
        )

    def _create_blob_store_adapter(self) -> BlobStorageAdapter:
        """Create blob store adapter based on configuration"""
        if self.config.BLOB_STORE_TYPE == "s3":
            config = self.config.BLOB_STORE_CONFIG
            return S3BlobStorageAdapter(
                bucket=config["bucket"],
                region=config.get("region", "us-east-1"),
                prefix=config.get("prefix", "videos/")
            )

        elif self.config.BLOB_STORE_TYPE == "memory":
            return InMemoryBlobStorage()

        else:
            raise ValueError(f"Unsupported blob store type: {self.config.BLOB_STORE_TYPE}")

    def _create_document_store_adapter(self) -> DocumentStoreAdapter:
        """Create document store adapter based on configuration"""
        if self.config.DOCUMENT_STORE_TYPE == "postgres":
            config = self.config.DOCUMENT_STORE_CONFIG
            return PostgresDocumentStore(
                database_url=config["database_url"],
                pool_size=config.get("connection_pool_size", 5),
                timeout=config.get("connection_timeout", 10)
            )

        elif self.config.DOCUMENT_STORE_TYPE == "memory":
            return InMemoryDocumentStore()

        else:
            raise ValueError(f"Unsupported document store type: {self.config.DOCUMENT_STORE_TYPE}")

    def start(self):
        """Start the worker service"""
        if self.running:
            logger.warning("Worker service is already running")
            return

        self.running = True
        self.report_stale()
        self._start_polling_loop()

    def _start_polling_loop(self):
        """Poll the document store for pending analysis jobs"""
        logger.info("Worker started, polling for analysis jobs...")

        while self.running:
            try:
                processed = self.run_once()

                if not processed:
                    # No job available, use exponential backoff
                    time.sleep(self.backoff_interval / 1000.0)
                    self.backoff_interval = min(
                        self.backoff_interval * self.config.BACKOFF_MULTIPLIER,
                        self.max_backoff
                    )
                else:
                    # Reset backoff on successful processing
                    self.backoff_interval = self.config.POLL_INTERVAL_MS

            except KeyboardInterrupt:
                logger.info("Received interrupt signal, shutting down...")
                break
            except Exception as e:
                log_exception(logger, f"Unexpected error in worker loop: {str(e)}")
                # Use backoff for errors too
                time.sleep(self.backoff_interval / 1000.0)
                self.backoff_interval = min(
                    self.backoff_interval * self.config.BACKOFF_MULTIPLIER,
                    self.max_backoff
                )

        logger.info("Worker polling loop stopped")

    def run_once(self) -> bool:
        """
        Run one iteration of the worker loop.

        Returns:
            True if a job was claimed and run, False if no job was available
        """
        job = self.store.claim_pending_job()
        if not job:
            return False

        # Reset backoff on successful job claim
        self.backoff_interval = self.config.POLL_INTERVAL_MS

        job = self.orchestrator.execute_pipeline(job)
        logger.info(f"Job {job.id} finished as {job.status}")
        return True

    def report_stale(self) -> Dict[str, int]:
        """Log uploads and jobs eligible for an explicit reset; nothing is reset here"""
        stale_uploads = self.tracker.find_stale_uploads()
        stale_jobs = self.orchestrator.find_stale_jobs()
        for record in stale_uploads:
            logger.warning(f"Upload {record.id} stuck in uploading since {record.updated_at}; eligible for reset")
        for job in stale_jobs:
            logger.warning(f"Job {job.id} has no heartbeat since {job.updated_at}; eligible for fail_stale_job")
        return {'uploads': len(stale_uploads), 'jobs': len(stale_jobs)}

    def stop(self):
        """Stop the worker service"""
        self.running = False

        # Stop health server
        if self.health_server:
            self.health_server.stop()

        if self.upload_engine:
            self.upload_engine.shutdown(wait=False)

        # Close adapters
        if self.blob_store:
            self.blob_store.close()
        if self.store:
            self.store.close()

        logger.info("Worker service stopped")

    def get_stats(self) -> Dict[str, Any]:
        """Get worker statistics"""
        stats = {
            'running': self.running,
            'config': {
                'blob_store_type': self.config.BLOB_STORE_TYPE,
                'document_store_type': self.config.DOCUMENT_STORE_TYPE,
                'window_length_sec': self.config.WINDOW_LENGTH_SEC,
                'window_overlap_sec': self.config.WINDOW_OVERLAP_SEC,
                'poll_interval_ms': self.config.POLL_INTERVAL_MS
            }
        }

        if self.store:
            stats['store'] = self.store.get_stats()
        if self.orchestrator:
            stats['orchestrator'] = self.orchestrator.get_stats()

        return stats


def signal_handler(signum, frame):
    """Handle shutdown signals"""
    logger.info(f"Received signal {signum}, shutting down...")
    sys.exit(0)
