"""
Archive creation for backup runs.

Backups are gzip-compressed tar archives. The archive is written through
tarfile's streaming mode, one member at a time, so the source tree is never
held in memory.
"""

import os
import tarfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from volvault.exceptions import VolvaultError


ARCHIVE_SUFFIX = '.tar.gz'

COMPRESSION_LEVEL = 6


class ArchiveError(VolvaultError):
    """Raised when archive creation fails."""
    pass


def create_archive(source_dir: str, dest_file: str) -> int:
    """
    Stream a directory tree into a .tar.gz file.

    Members are stored relative to source_dir (the directory itself is not
    a member). Returns only after the archive is flushed and closed.

    Args:
        source_dir: Directory to archive
        dest_file: Path of the archive to create

    Returns:
        Size of the finished archive in bytes

    Raises:
        ArchiveError: If the source is missing or writing fails
    """
    source = Path(source_dir)
    if not source.is_dir():
        raise ArchiveError(f"Source directory does not exist: {source_dir}")

    try:
        with open(dest_file, 'wb') as raw:
            with tarfile.open(fileobj=raw, mode='w:gz', compresslevel=COMPRESSION_LEVEL) as tar:
                for entry in sorted(source.iterdir()):
                    tar.add(str(entry), arcname=entry.name, recursive=True)
            raw.flush()
            os.fsync(raw.fileno())
        return os.path.getsize(dest_file)
    except (OSError, tarfile.TarError) as e:
        # Clean up partial archive on failure
        if os.path.exists(dest_file):
            try:
                os.remove(dest_file)
            except OSError:
                pass
        raise ArchiveError(f"Failed to create archive: {e}")


def generate_backup_filename(node_name: str, volume_selector: str, now: Optional[datetime] = None) -> str:
    """
    Artifact name for a run.

    Format: {node}-{selector}-{ISO8601 UTC with ':' and '.' replaced by '-'}.tar.gz
    e.g. alpha-all-volumes-2024-01-15T12-00-00-000Z.tar.gz

    Args:
        node_name: Name of the node
        volume_selector: Volume name or 'all-volumes'
        now: Timestamp to use (defaults to current UTC time)

    Returns:
        Filename (without path)
    """
    if now is None:
        now = datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc).replace(tzinfo=None)

    iso = now.strftime('%Y-%m-%dT%H:%M:%S') + f'.{now.microsecond // 1000:03d}Z'
    timestamp = iso.replace(':', '-').replace('.', '-')

    return f"{node_name}-{volume_selector}-{timestamp}{ARCHIVE_SUFFIX}"


def is_backup_artifact(name: str) -> bool:
    return name.endswith(ARCHIVE_SUFFIX)


def format_size(size_bytes: int) -> str:
    """Format bytes as human-readable string, e.g. '1.50 MB'."""
    units = ['B', 'KB', 'MB', 'GB', 'TB']
    size = float(size_bytes)
    i = 0
    while size >= 1024 and i < len(units) - 1:
        size /= 1024
        i += 1
    return f"{size:.2f} {units[i]}"


def format_duration(seconds: float) -> str:
    """Format a duration as '42s' or '3m 5s'."""
    seconds = int(seconds)
    if seconds > 60:
        return f"{seconds // 60}m {seconds % 60}s"
    return f"{seconds}s"
