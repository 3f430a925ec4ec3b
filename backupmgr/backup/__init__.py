"""
Backup module for Backup Manager.

This module handles the core backup functionality including:
- Artifact production (database dump and application data)
- Compression and archiving
- Storage (S3 object store, SFTP and local directory)
- Execution orchestration
"""

from .executor import BackupExecutor, RunState, EXIT_FATAL, EXIT_SUCCESS
from .sources import ApplicationDataSource, Artifact, ArtifactKind, DatabaseDumpSource
from .compression import create_application_archive, gzip_file
from .storage import LocalStorage, ObjectStorage, SFTPStorage, StorageBackend, create_storage

__all__ = [
    'BackupExecutor',
    'RunState',
    'EXIT_FATAL',
    'EXIT_SUCCESS',
    'ApplicationDataSource',
    'Artifact',
    'ArtifactKind',
    'DatabaseDumpSource',
    'create_application_archive',
    'gzip_file',
    'LocalStorage',
    'ObjectStorage',
    'SFTPStorage',
    'StorageBackend',
    'create_storage',
]
