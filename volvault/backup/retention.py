"""
Retention policy enforcement for backups.

Keeps the newest N completed backups per (node, storage type) and deletes
the rest, artifact first and then record, through the same path as a
manual delete.
"""

import logging
from typing import List

from volvault import store
from volvault.exceptions import NotFound
from .executor import delete_backup


logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Applies count-based retention to one (node, storage type) pair.

    Only completed runs are considered; pending, running and failed runs
    are never counted or deleted.
    """

    def __init__(self, node_id: int, storage_type: str):
        self.node_id = node_id
        self.storage_type = storage_type

    def select_expired(self, keep: int) -> list:
        """Completed runs beyond the newest `keep`, oldest first."""
        completed = store.list_completed_by_node_and_storage(self.node_id, self.storage_type)
        expired = completed[max(keep, 0):]
        return list(reversed(expired))

    def enforce(self, keep: int) -> List[int]:
        """
        Delete expired runs.

        Returns:
            IDs of the deleted runs
        """
        deleted = []
        for backup in self.select_expired(keep):
            backup_id = backup.id
            try:
                delete_backup(backup_id)
            except NotFound:
                # Removed concurrently
                continue
            deleted.append(backup_id)

        if deleted:
            logger.info(
                f"Retention: deleted {len(deleted)} old backup(s) for node {self.node_id} "
                f"({self.storage_type}, keep {keep})"
            )
        return deleted


def apply_retention(node_id: int, storage_type: str, keep: int) -> List[int]:
    """
    Keep the newest `keep` completed backups for a node and storage type.

    Returns:
        IDs of the deleted runs
    """
    return RetentionManager(node_id, storage_type).enforce(keep)
