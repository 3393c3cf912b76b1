"""
Adapter pattern implementations for blob storage and document stores.

This module provides abstract base classes and concrete implementations
for resumable blob storage (S3, in-memory) and the status/record
document store (Postgres, in-memory).
"""

from .base import BlobStorageAdapter, DocumentStoreAdapter
from .memory_adapter import InMemoryBlobStorage, InMemoryDocumentStore
from .postgres_adapter import PostgresDocumentStore
from .s3_adapter import S3BlobStorageAdapter

__all__ = [
    'BlobStorageAdapter',
    'DocumentStoreAdapter',
    'InMemoryBlobStorage',
    'InMemoryDocumentStore',
    'PostgresDocumentStore',
    'S3BlobStorageAdapter'
]
