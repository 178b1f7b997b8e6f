"""
Backup module for Stowaway.

This module handles the core backup functionality including:
- Command pipelines with per-stage exit code checks
- Retries for storage operations
- Chunked uploads to object stores (S3 and local)
- Database dumps, archives, compression and encryption
- Directory syncing to object stores
- Execution orchestration
- Retention policy enforcement
"""

from .retry import RetryPolicy, RetryRunner, RetryExhaustedError
from .pipeline import Pipeline, PipelineRun, PipelineError, LaunchError, StageFailure
from .object_store import ObjectStore, StoredObject, StorageError
from .storage import S3ObjectStore, LocalObjectStore
from .uploader import ChunkedUploader, CloudIOError, FileSizeError, ManifestError
from .compression import Gzip, Bzip2, CustomCompressor, create_compressor
from .encryption import OpenSSLEncryptor
from .databases import PostgreSQL, MySQL, DatabaseError
from .sources import Archive, ArchiveError
from .destinations import CloudStorage, SFTPStorage
from .syncers import CloudSyncer, SyncerError
from .executor import BackupExecutor, execute_backup_job
from .retention import RetentionManager

__all__ = [
    'RetryPolicy',
    'RetryRunner',
    'RetryExhaustedError',
    'Pipeline',
    'PipelineRun',
    'PipelineError',
    'LaunchError',
    'StageFailure',
    'ObjectStore',
    'StoredObject',
    'StorageError',
    'S3ObjectStore',
    'LocalObjectStore',
    'ChunkedUploader',
    'CloudIOError',
    'FileSizeError',
    'ManifestError',
    'Gzip',
    'Bzip2',
    'CustomCompressor',
    'create_compressor',
    'OpenSSLEncryptor',
    'PostgreSQL',
    'MySQL',
    'DatabaseError',
    'Archive',
    'ArchiveError',
    'CloudStorage',
    'SFTPStorage',
    'CloudSyncer',
    'SyncerError',
    'BackupExecutor',
    'execute_backup_job',
    'RetentionManager'
]
