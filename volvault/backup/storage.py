"""
Storage backends for backup archives.

Supports:
- LocalStorage: Store in a local directory
- S3Storage: Upload to S3-compatible object storage
- SFTPStorage: Upload to a remote host over SFTP

All backends expose the same capability set (upload, download, delete,
exists, list, get_size) and address artifacts by filename. Connection
settings are read on every operation, never cached.
"""

import logging
import os
import posixpath
import shutil
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import boto3
from boto3.exceptions import S3UploadFailedError
import paramiko
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError

from volvault.exceptions import VolvaultError
from .compression import is_backup_artifact


logger = logging.getLogger(__name__)

SettingsGetter = Callable[[str], Optional[str]]


class StorageError(VolvaultError):
    """Raised when a storage operation fails."""
    pass


class StorageConfigError(StorageError):
    """Raised when a backend is used without its required settings."""
    pass


class StorageOperationError(StorageError):
    """Raised when the backend rejects or fails an operation."""
    pass


class StorageKind(str, Enum):
    """Closed set of storage destinations."""
    LOCAL = 'local'
    CLOUD = 'cloud'
    REMOTE = 'remote'

    @classmethod
    def parse(cls, value) -> 'StorageKind':
        try:
            return cls(value)
        except ValueError:
            raise ValueError(
                f"Invalid storage type: {value}. Valid options: {[k.value for k in cls]}"
            )


class StorageBackend(ABC):
    """Capability set shared by every storage destination."""

    kind: StorageKind

    @abstractmethod
    def upload(self, local_path: str, filename: str) -> str:
        """
        Store a local file under `filename`.

        Returns:
            Storage locator (absolute path, s3:// URL or remote path)
        """

    @abstractmethod
    def download(self, filename: str, local_path: str):
        """Copy a stored artifact to a local path."""

    @abstractmethod
    def delete(self, filename: str):
        """Remove a stored artifact."""

    @abstractmethod
    def exists(self, filename: str) -> bool:
        """True if the artifact is present."""

    @abstractmethod
    def list(self) -> List[str]:
        """Names of stored backup artifacts (other files are never listed)."""

    @abstractmethod
    def get_size(self, filename: str) -> int:
        """Size in bytes, 0 if the artifact is missing."""


class LocalStorage(StorageBackend):
    """
    Handler for storing backups in a local directory.

    Every filename is reduced to its base name before use, so nothing can be
    written or read outside base_path.
    """

    kind = StorageKind.LOCAL

    def __init__(self, base_path: str):
        self.base_path = Path(base_path).resolve()

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageOperationError(f"Failed to create local storage directory: {e}")

    def sanitize_filename(self, filename: str) -> str:
        safe = os.path.basename(filename or '')
        if safe != filename:
            logger.warning(f"Path traversal attempt blocked: {filename} -> {safe}")
        if not safe or safe in ('.', '..'):
            raise StorageOperationError(f"Invalid filename: {filename!r}")
        return safe

    def get_full_path(self, filename: str) -> Path:
        return self.base_path / self.sanitize_filename(filename)

    def upload(self, local_path: str, filename: str) -> str:
        dest = self.get_full_path(filename)
        try:
            shutil.copyfile(local_path, dest)
        except OSError as e:
            raise StorageOperationError(f"Failed to store locally at {dest}: {e}")
        logger.debug(f"Local upload: {dest}")
        return str(dest)

    def download(self, filename: str, local_path: str):
        src = self.get_full_path(filename)
        try:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(src, local_path)
        except OSError as e:
            raise StorageOperationError(f"Failed to read local backup {src}: {e}")

    def delete(self, filename: str):
        path = self.get_full_path(filename)
        try:
            if path.exists():
                path.unlink()
        except OSError as e:
            raise StorageOperationError(f"Failed to delete local file {path}: {e}")

    def exists(self, filename: str) -> bool:
        return self.get_full_path(filename).is_file()

    def list(self) -> List[str]:
        return sorted(
            entry.name for entry in self.base_path.iterdir()
            if entry.is_file() and is_backup_artifact(entry.name)
        )

    def get_size(self, filename: str) -> int:
        path = self.get_full_path(filename)
        return path.stat().st_size if path.is_file() else 0


def normalize_endpoint(endpoint: Optional[str]) -> Optional[str]:
    """Default the scheme to https when an endpoint is given without one."""
    if not endpoint:
        return None
    if not endpoint.startswith(('http://', 'https://')):
        return f'https://{endpoint}'
    return endpoint


class S3Storage(StorageBackend):
    """
    Handler for S3-compatible object storage (AWS, MinIO, B2, R2, ...).

    Objects are stored at the bucket root keyed by filename.
    """

    kind = StorageKind.CLOUD

    def __init__(self, get_setting: SettingsGetter):
        self.get_setting = get_setting

    def _get_config(self) -> dict:
        return {
            'endpoint': self.get_setting('s3_endpoint'),
            'bucket': self.get_setting('s3_bucket'),
            'region': self.get_setting('s3_region') or 'us-east-1',
            'access_key': self.get_setting('s3_access_key'),
            'secret_key': self.get_setting('s3_secret_key'),
        }

    def _get_client(self) -> Tuple[object, str]:
        conf = self._get_config()
        if not conf['bucket'] or not conf['access_key']:
            raise StorageConfigError("S3 configuration missing (bucket and access key are required)")

        client = boto3.client(
            's3',
            endpoint_url=normalize_endpoint(conf['endpoint']),
            aws_access_key_id=conf['access_key'],
            aws_secret_access_key=conf['secret_key'],
            region_name=conf['region'],
            config=BotoConfig(s3={'addressing_style': 'path'})
        )
        return client, conf['bucket']

    def upload(self, local_path: str, filename: str) -> str:
        client, bucket = self._get_client()
        try:
            # upload_file streams from disk and switches to multipart for large files
            client.upload_file(
                local_path, bucket, filename,
                ExtraArgs={'ContentType': 'application/gzip'}
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageOperationError(f"S3 upload failed ({error_code}): {e}")
        except (BotoCoreError, S3UploadFailedError, OSError) as e:
            raise StorageOperationError(f"S3 upload failed: {e}")

        logger.debug(f"S3 upload: {filename}")
        return f"s3://{bucket}/{filename}"

    def download(self, filename: str, local_path: str):
        client, bucket = self._get_client()
        try:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            client.download_file(bucket, filename, local_path)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageOperationError(f"S3 download failed ({error_code}): {e}")
        except (BotoCoreError, OSError) as e:
            raise StorageOperationError(f"S3 download failed: {e}")

    def delete(self, filename: str):
        client, bucket = self._get_client()
        try:
            client.delete_object(Bucket=bucket, Key=filename)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageOperationError(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageOperationError(f"S3 delete failed: {e}")

    def _head(self, filename: str) -> Optional[dict]:
        client, bucket = self._get_client()
        try:
            return client.head_object(Bucket=bucket, Key=filename)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchKey', 'NotFound'):
                return None
            raise StorageOperationError(f"S3 head failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageOperationError(f"S3 head failed: {e}")

    def exists(self, filename: str) -> bool:
        return self._head(filename) is not None

    def list(self) -> List[str]:
        client, bucket = self._get_client()
        names = []
        try:
            paginator = client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=bucket):
                for obj in page.get('Contents', []):
                    if is_backup_artifact(obj['Key']):
                        names.append(obj['Key'])
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageOperationError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageOperationError(f"S3 list failed: {e}")
        return names

    def get_size(self, filename: str) -> int:
        head = self._head(filename)
        return head.get('ContentLength', 0) if head else 0


class SFTPStorage(StorageBackend):
    """
    Handler for storing backups on a remote host over SFTP.

    A fresh SSH connection is opened for every operation and always closed.
    """

    kind = StorageKind.REMOTE

    def __init__(self, get_setting: SettingsGetter, connect_timeout: int = 30):
        self.get_setting = get_setting
        self.connect_timeout = connect_timeout

    def _get_config(self) -> dict:
        host = self.get_setting('sftp_host')
        username = self.get_setting('sftp_user')
        if not host or not username:
            raise StorageConfigError("SFTP configuration missing (host and username are required)")

        try:
            port = int(self.get_setting('sftp_port') or 22)
        except ValueError:
            raise StorageConfigError(f"Invalid SFTP port: {self.get_setting('sftp_port')}")

        remote_dir = self.get_setting('sftp_path') or '/'
        if remote_dir != '/':
            remote_dir = remote_dir.rstrip('/')

        return {
            'host': host,
            'port': port,
            'username': username,
            'password': self.get_setting('sftp_pass'),
            'remote_dir': remote_dir,
        }

    def _get_connection(self, conf: dict) -> Tuple[paramiko.SSHClient, paramiko.SFTPClient]:
        """Create SSH and SFTP connection."""
        ssh = paramiko.SSHClient()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            ssh.connect(
                hostname=conf['host'],
                port=conf['port'],
                username=conf['username'],
                password=conf['password'],
                timeout=self.connect_timeout
            )
            return ssh, ssh.open_sftp()
        except (paramiko.SSHException, OSError) as e:
            ssh.close()
            raise StorageOperationError(f"SFTP connection to {conf['host']}:{conf['port']} failed: {e}")

    def _run(self, operation: Callable, description: str):
        conf = self._get_config()
        ssh, sftp = self._get_connection(conf)
        try:
            return operation(sftp, conf['remote_dir'])
        except StorageError:
            raise
        except (IOError, OSError, paramiko.SSHException) as e:
            raise StorageOperationError(f"SFTP {description} failed: {e}")
        finally:
            sftp.close()
            ssh.close()

    @staticmethod
    def _ensure_remote_dir(sftp: paramiko.SFTPClient, remote_dir: str):
        """Ensure remote directory exists (create if needed)."""
        current_path = ''
        for dir_name in remote_dir.split('/'):
            if not dir_name:
                continue
            current_path += '/' + dir_name
            try:
                sftp.stat(current_path)
            except FileNotFoundError:
                sftp.mkdir(current_path)

    def upload(self, local_path: str, filename: str) -> str:
        def _upload(sftp, remote_dir):
            self._ensure_remote_dir(sftp, remote_dir)
            remote_path = posixpath.join(remote_dir, filename)
            sftp.put(local_path, remote_path)
            logger.debug(f"SFTP upload: {remote_path}")
            return remote_path

        return self._run(_upload, 'upload')

    def download(self, filename: str, local_path: str):
        def _download(sftp, remote_dir):
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            sftp.get(posixpath.join(remote_dir, filename), local_path)

        self._run(_download, 'download')

    def delete(self, filename: str):
        self._run(lambda sftp, remote_dir: sftp.remove(posixpath.join(remote_dir, filename)), 'delete')

    def exists(self, filename: str) -> bool:
        def _exists(sftp, remote_dir):
            try:
                sftp.stat(posixpath.join(remote_dir, filename))
                return True
            except FileNotFoundError:
                return False

        return self._run(_exists, 'stat')

    def list(self) -> List[str]:
        def _list(sftp, remote_dir):
            return sorted(name for name in sftp.listdir(remote_dir) if is_backup_artifact(name))

        return self._run(_list, 'list')

    def get_size(self, filename: str) -> int:
        def _size(sftp, remote_dir):
            try:
                return sftp.stat(posixpath.join(remote_dir, filename)).st_size or 0
            except FileNotFoundError:
                return 0

        return self._run(_size, 'stat')


def create_backend(kind, get_setting: SettingsGetter, local_path: str,
                   connect_timeout: int = 30) -> StorageBackend:
    """
    Build the backend for a storage kind.

    Args:
        kind: StorageKind or its string value
        get_setting: Settings lookup used by the remote backends
        local_path: Base directory for the local backend

    Raises:
        ValueError: If kind is not a known storage kind
    """
    kind = StorageKind.parse(kind)
    if kind is StorageKind.LOCAL:
        return LocalStorage(local_path)
    if kind is StorageKind.CLOUD:
        return S3Storage(get_setting)
    return SFTPStorage(get_setting, connect_timeout=connect_timeout)


def is_configured(kind, get_setting: SettingsGetter) -> bool:
    """Readiness check from settings alone, no I/O against the backend."""
    kind = StorageKind.parse(kind)
    if kind is StorageKind.LOCAL:
        return True
    if kind is StorageKind.CLOUD:
        return bool(get_setting('s3_bucket') and get_setting('s3_access_key'))
    return bool(get_setting('sftp_host') and get_setting('sftp_user'))
