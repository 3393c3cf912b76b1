"""
Configuration management for the hand history worker.

Centralizes all configuration loading from environment variables
and provides type-safe access to configuration values.
"""

import os
from typing import Dict, Any
from dataclasses import dataclass, field


MIB = 1024 * 1024


@dataclass
class WorkerConfig:
    """Configuration for the hand history worker"""

    # Storage settings
    BLOB_STORE_TYPE: str = "s3"  # s3, memory
    BLOB_STORE_CONFIG: Dict[str, Any] = field(default_factory=dict)
    DOCUMENT_STORE_TYPE: str = "postgres"  # postgres, memory
    DOCUMENT_STORE_CONFIG: Dict[str, Any] = field(default_factory=dict)

    # Upload settings
    UPLOAD_CHUNK_SIZE_BYTES: int = 16 * MIB
    MAX_CONCURRENT_UPLOADS: int = 3
    UPLOAD_MAX_RETRIES: int = 3
    UPLOAD_RETRY_DELAY_MS: int = 1000
    UPLOAD_STALE_TIMEOUT_HOURS: float = 24.0

    # Segmentation settings
    WINDOW_LENGTH_SEC: float = 1800.0
    WINDOW_OVERLAP_SEC: float = 120.0

    # Analysis settings
    WINDOW_MAX_CONCURRENT: int = 4
    WINDOW_MAX_ATTEMPTS: int = 3
    WINDOW_RETRY_DELAY_MS: int = 2000
    AI_CALL_TIMEOUT_SEC: float = 600.0
    PHASE1_MODEL: str = "gpt-4o-mini"
    PHASE2_MODEL: str = "gpt-4o"
    FRAME_SAMPLE_INTERVAL_SEC: float = 10.0
    MAX_FRAMES_PER_WINDOW: int = 180
    DEDUP_OVERLAP_RATIO: float = 0.5
    STITCH_TOLERANCE_SEC: float = 2.0
    PARTIAL_COVERAGE_POLICY: str = "warn"  # warn, fail
    JOB_STALE_TIMEOUT_HOURS: float = 24.0

    # Worker loop
    POLL_INTERVAL_MS: int = 1500
    BACKOFF_MULTIPLIER: float = 1.5
    MAX_BACKOFF_MS: int = 12000

    # Logging
    LOG_LEVEL: str = "INFO"

    # HTTP server
    ENABLE_HTTP_SERVER: bool = False
    HTTP_PORT: int = 8000
    API_TOKEN: str = ""

    # Data directory
    DATA_DIR: str = "/app/data"

    @classmethod
    def from_env(cls) -> 'WorkerConfig':
        """Load configuration from environment variables"""
        config = cls()

        # Storage configuration
        config.BLOB_STORE_TYPE = os.getenv("BLOB_STORE_TYPE", "s3")
        config.BLOB_STORE_CONFIG = cls._parse_blob_store_config()
        config.DOCUMENT_STORE_TYPE = os.getenv("DOCUMENT_STORE_TYPE", "postgres")
        config.DOCUMENT_STORE_CONFIG = cls._parse_document_store_config()

        # Upload settings
        config.UPLOAD_CHUNK_SIZE_BYTES = int(os.getenv("UPLOAD_CHUNK_SIZE_BYTES", str(16 * MIB)))
        config.MAX_CONCURRENT_UPLOADS = int(os.getenv("MAX_CONCURRENT_UPLOADS", "3"))
        config.UPLOAD_MAX_RETRIES = int(os.getenv("UPLOAD_MAX_RETRIES", "3"))
        config.UPLOAD_RETRY_DELAY_MS = int(os.getenv("UPLOAD_RETRY_DELAY_MS", "1000"))
        config.UPLOAD_STALE_TIMEOUT_HOURS = float(os.getenv("UPLOAD_STALE_TIMEOUT_HOURS", "24"))

        # Segmentation settings
        config.WINDOW_LENGTH_SEC = float(os.getenv("WINDOW_LENGTH_SEC", "1800"))
        config.WINDOW_OVERLAP_SEC = float(os.getenv("WINDOW_OVERLAP_SEC", "120"))

        # Analysis settings
        config.WINDOW_MAX_CONCURRENT = int(os.getenv("WINDOW_MAX_CONCURRENT", "4"))
        config.WINDOW_MAX_ATTEMPTS = int(os.getenv("WINDOW_MAX_ATTEMPTS", "3"))
        config.WINDOW_RETRY_DELAY_MS = int(os.getenv("WINDOW_RETRY_DELAY_MS", "2000"))
        config.AI_CALL_TIMEOUT_SEC = float(os.getenv("AI_CALL_TIMEOUT_SEC", "600"))
        config.PHASE1_MODEL = os.getenv("PHASE1_MODEL", "gpt-4o-mini")
        config.PHASE2_MODEL = os.getenv("PHASE2_MODEL", "gpt-4o")
        config.FRAME_SAMPLE_INTERVAL_SEC = float(os.getenv("FRAME_SAMPLE_INTERVAL_SEC", "10"))
        config.MAX_FRAMES_PER_WINDOW = int(os.getenv("MAX_FRAMES_PER_WINDOW", "180"))
        config.DEDUP_OVERLAP_RATIO = float(os.getenv("DEDUP_OVERLAP_RATIO", "0.5"))
        config.STITCH_TOLERANCE_SEC = float(os.getenv("STITCH_TOLERANCE_SEC", "2"))
        config.PARTIAL_COVERAGE_POLICY = os.getenv("PARTIAL_COVERAGE_POLICY", "warn").lower()
        config.JOB_STALE_TIMEOUT_HOURS = float(os.getenv("JOB_STALE_TIMEOUT_HOURS", "24"))

        # Worker loop
        config.POLL_INTERVAL_MS = int(os.getenv("WORKER_POLL_MS", "1500"))
        config.BACKOFF_MULTIPLIER = float(os.getenv("WORKER_BACKOFF_MULTIPLIER", "1.5"))
        config.MAX_BACKOFF_MS = int(os.getenv("WORKER_MAX_BACKOFF_MS", "12000"))

        # Logging
        config.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

        # HTTP server
        config.ENABLE_HTTP_SERVER = os.getenv("WORKER_DEV_HTTP", "false").lower() == "true"
        config.HTTP_PORT = int(os.getenv("WORKER_HTTP_PORT", "8000"))
        config.API_TOKEN = os.getenv("WORKER_API_TOKEN", "")

        # Data directory
        config.DATA_DIR = os.getenv("DATA_DIR", "/app/data")

        return config

    @classmethod
    def _parse_blob_store_config(cls) -> Dict[str, Any]:
        """Parse blob store specific configuration"""
        blob_store_type = os.getenv("BLOB_STORE_TYPE", "s3")

        if blob_store_type == "s3":
            return {
                "bucket": os.getenv("AWS_S3_BUCKET"),
                "region": os.getenv("AWS_REGION", "us-east-1"),
                "prefix": os.getenv("S3_PREFIX", "videos/")
            }
        return {}

    @classmethod
    def _parse_document_store_config(cls) -> Dict[str, Any]:
        """Parse document store specific configuration"""
        document_store_type = os.getenv("DOCUMENT_STORE_TYPE", "postgres")

        if document_store_type == "postgres":
            return {
                "database_url": os.getenv("DATABASE_URL"),
                "connection_pool_size": int(os.getenv("POSTGRES_POOL_SIZE", "5")),
                "connection_timeout": int(os.getenv("POSTGRES_TIMEOUT", "10"))
            }
        return {}

    @property
    def upload_retry_delay_sec(self) -> float:
        return self.UPLOAD_RETRY_DELAY_MS / 1000.0

    @property
    def window_retry_delay_sec(self) -> float:
        return self.WINDOW_RETRY_DELAY_MS / 1000.0

    def validate(self, require_openai: bool = True) -> None:
        """Validate configuration and raise errors for missing or inconsistent values"""
        required_vars = []

        if self.DOCUMENT_STORE_TYPE == "postgres" and not self.DOCUMENT_STORE_CONFIG.get("database_url"):
            required_vars.append("DATABASE_URL")

        if self.BLOB_STORE_TYPE == "s3" and not self.BLOB_STORE_CONFIG.get("bucket"):
            required_vars.append("AWS_S3_BUCKET")

        if require_openai and not os.getenv("OPENAI_API_KEY"):
            required_vars.append("OPENAI_API_KEY")

        if required_vars:
            raise ValueError(f"Missing required environment variables: {', '.join(required_vars)}")

        # Overlap is what recovers hands cut at a window edge
        if self.WINDOW_OVERLAP_SEC <= 0:
            raise ValueError("WINDOW_OVERLAP_SEC must be greater than 0")
        if self.WINDOW_OVERLAP_SEC >= self.WINDOW_LENGTH_SEC:
            raise ValueError("WINDOW_OVERLAP_SEC must be smaller than WINDOW_LENGTH_SEC")

        if self.UPLOAD_MAX_RETRIES < 1 or self.WINDOW_MAX_ATTEMPTS < 1:
            raise ValueError("Retry budgets must allow at least one attempt")

        if self.PARTIAL_COVERAGE_POLICY not in ("warn", "fail"):
            raise ValueError(f"Unsupported PARTIAL_COVERAGE_POLICY: {self.PARTIAL_COVERAGE_POLICY}")
