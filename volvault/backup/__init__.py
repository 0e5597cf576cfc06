"""
Backup module for Volvault.

This module handles the core backup functionality including:
- Remote volume acquisition (SSH/SFTP)
- Workload safe-stop/start
- Compression
- Storage (local, S3, SFTP)
- Execution orchestration
- Retention policy enforcement
"""

from .executor import (
    BackupExecutor, BackupOptions, StepOutcome, create_backup, submit_backup,
    delete_backup, get_backup_file
)
from .sources import RemoteVolumeClient
from .workload import WorkloadCoordinator
from .compression import create_archive
from .storage import StorageKind, LocalStorage, S3Storage, SFTPStorage, create_backend
from .retention import RetentionManager, apply_retention

__all__ = [
    'BackupExecutor',
    'BackupOptions',
    'StepOutcome',
    'create_backup',
    'submit_backup',
    'delete_backup',
    'get_backup_file',
    'RemoteVolumeClient',
    'WorkloadCoordinator',
    'create_archive',
    'StorageKind',
    'LocalStorage',
    'S3Storage',
    'SFTPStorage',
    'create_backend',
    'RetentionManager',
    'apply_retention',
]
