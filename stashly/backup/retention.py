"""
Retention policy enforcement for backups.

Keeps the N most recent backup runs under the storage prefix and deletes
the rest. Backup keys carry a fixed-width timestamp, so sorting the keys
as strings orders them chronologically.
"""

import logging
from typing import List

from .storage import Storage, StorageDeleteError


logger = logging.getLogger(__name__)


def sort_newest_first(keys: List[str]) -> List[str]:
    """Sort timestamp keys in descending chronological order."""
    return sorted(keys, reverse=True)


class RetentionManager:
    """
    Manages retention policy enforcement for one storage prefix.
    """

    def __init__(self, storage: Storage, retention_count: int):
        """
        Initialize retention manager.

        Args:
            storage: Initialized storage backend
            retention_count: Number of most recent backups to keep
        """
        self.storage = storage
        self.retention_count = retention_count

    def select_expired(self, keys: List[str]) -> List[str]:
        """
        Pick the keys beyond the retention count.

        Args:
            keys: Trimmed (timestamp) keys in any order

        Returns:
            Keys to delete, newest first; empty when len(keys) <= retention_count
        """
        ordered = sort_newest_first(keys)
        if len(ordered) <= self.retention_count:
            return []
        return ordered[self.retention_count:]

    def list_backups(self) -> List[str]:
        """
        List stored backups as timestamp keys, newest first.

        Raises:
            StorageError: If listing fails
        """
        keys = self.storage.list()
        if not keys:
            logger.info("No backups found")
            return []
        return sort_newest_first(self.storage.trim_prefix(keys))

    def purge(self) -> List[str]:
        """
        Delete backups exceeding the retention count.

        Stops at the first failed deletion; the next run lists storage again
        and picks up whatever is left.

        Returns:
            Keys deleted (timestamp form)

        Raises:
            StorageError: If listing fails
            StorageDeleteError: On the first failed deletion
        """
        keys_to_delete = self.select_expired(self.list_backups())

        if not keys_to_delete:
            logger.info("No backups to delete")
            return []

        logger.info(
            f"Found {len(keys_to_delete)} backups to delete "
            f"(backup retention {self.retention_count}) {keys_to_delete}"
        )

        deleted = []
        for key in keys_to_delete:
            full_key = self.storage.full_key(key)
            logger.info(f"Deleting backup {full_key}")

            try:
                self.storage.delete(full_key, recursive=True)
            except StorageDeleteError as e:
                logger.error(f"Error deleting backup {full_key}: {e}")
                raise StorageDeleteError(f"Error deleting backup {full_key}: {e}") from e

            deleted.append(key)

        logger.info("Deletion completed successfully")
        return deleted
