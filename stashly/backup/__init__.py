"""
Backup module for Stashly.

This module handles the core backup functionality including:
- Database discovery and dumps (PostgreSQL)
- Archiving
- Optional GPG encryption
- Storage (S3 and local)
- Execution orchestration
- Retention policy enforcement
"""

from .executor import BackupExecutor, execute_backup
from .sources import PostgresSource, parse_database_listing
from .compression import archive_directory
from .encryption import GPGEncryptor
from .storage import S3Storage, LocalStorage, create_storage
from .retention import RetentionManager

__all__ = [
    'BackupExecutor',
    'execute_backup',
    'PostgresSource',
    'parse_database_listing',
    'archive_directory',
    'GPGEncryptor',
    'S3Storage',
    'LocalStorage',
    'create_storage',
    'RetentionManager'
]
