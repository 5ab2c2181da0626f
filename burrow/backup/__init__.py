"""
Backup module for Burrow.

This module handles the core backup functionality including:
- Exclusion matching and archiving (tar + zstd)
- Container quiescing and pre-backup commands
- Storage (SFTP, S3 and local)
- Execution orchestration
- Retention policy enforcement
"""

from .executor import BackupExecutor, build_executor
from .archive import create_archive, extract_archive
from .container import ContainerController
from .storage import SFTPStorage, S3Storage, LocalStorage, create_storage
from .retention import RetentionManager

__all__ = [
    'BackupExecutor',
    'build_executor',
    'create_archive',
    'extract_archive',
    'ContainerController',
    'SFTPStorage',
    'S3Storage',
    'LocalStorage',
    'create_storage',
    'RetentionManager'
]
