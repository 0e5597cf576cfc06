"""
Errors shared by the pipeline, the scheduler and the HTTP layer.

Component-specific failures live next to their component:
- RemoteConnectionError / RemoteTransferError in volvault.backup.sources
- ArchiveError in volvault.backup.compression
- StorageConfigError / StorageOperationError in volvault.backup.storage
"""


class VolvaultError(Exception):
    """Base class for application errors."""
    pass


class NotFound(VolvaultError):
    """Raised when a run, node or schedule lookup fails."""
    pass


class NodeNotFound(NotFound):
    """Raised when a backup targets a node that does not exist."""
    pass


class ValidationError(VolvaultError):
    """Raised for malformed input to create/update operations."""
    pass
