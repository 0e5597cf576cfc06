"""
Remote volume access over SSH/SFTP.

RemoteVolumeClient opens one authenticated session to a node, lists the
volumes under its volumes root and mirrors volume directories to local disk.
"""

import logging
import posixpath
import stat
from pathlib import Path
from typing import List

import paramiko
from paramiko import SSHClient, AutoAddPolicy

from volvault.exceptions import VolvaultError


logger = logging.getLogger(__name__)


class RemoteConnectionError(VolvaultError, ConnectionError):
    """Raised when a session to a node cannot be opened."""
    pass


class RemoteTransferError(VolvaultError):
    """Raised when listing or downloading remote data fails."""
    pass


class RemoteVolumeClient:
    """
    SSH/SFTP session against one node.

    Usable as a context manager; the session is closed on every exit path.
    """

    def __init__(self, node, connect_timeout: int = 30):
        """
        Args:
            node: Node record (host, port, username, auth_type, ssh_key_path, ssh_password)
            connect_timeout: TCP/SSH connect timeout in seconds
        """
        self.node = node
        self.connect_timeout = connect_timeout
        self.ssh_client = None
        self.sftp_client = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    @property
    def connected(self) -> bool:
        return self.sftp_client is not None

    def connect(self):
        """
        Authenticate with key or password depending on the node's auth_type.

        Raises:
            RemoteConnectionError: On network or authentication failure
        """
        node = self.node
        connect_kwargs = {
            'hostname': node.host,
            'port': node.port or 22,
            'username': node.username,
            'timeout': self.connect_timeout,
        }

        if node.auth_type == 'key' and node.ssh_key_path:
            key_path = Path(node.ssh_key_path).expanduser()
            if not key_path.exists():
                raise RemoteConnectionError(f"Private key not found: {node.ssh_key_path}")
            connect_kwargs['key_filename'] = str(key_path)
            connect_kwargs['allow_agent'] = False
        elif node.ssh_password:
            connect_kwargs['password'] = node.ssh_password
            connect_kwargs['look_for_keys'] = False
            connect_kwargs['allow_agent'] = False

        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())
            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()
        except paramiko.AuthenticationException as e:
            self.close()
            raise RemoteConnectionError(f"SSH authentication failed for {node.username}@{node.host}: {e}")
        except (paramiko.SSHException, OSError) as e:
            self.close()
            raise RemoteConnectionError(f"Failed to connect to {node.host}:{node.port}: {e}")

    def list(self, path: str) -> List[str]:
        """
        Immediate subdirectories of a remote path, hidden entries excluded.

        Raises:
            RemoteTransferError: If the directory cannot be listed
        """
        self._require_session()
        try:
            entries = self.sftp_client.listdir_attr(path)
        except (IOError, OSError, paramiko.SSHException) as e:
            raise RemoteTransferError(f"Failed to list {path}: {e}")

        return sorted(
            entry.filename for entry in entries
            if stat.S_ISDIR(entry.st_mode or 0) and not entry.filename.startswith('.')
        )

    def download_directory(self, remote_path: str, local_path: str):
        """
        Recursively mirror a remote directory to local disk.

        Raises:
            RemoteTransferError: If any part of the tree cannot be read
        """
        self._require_session()
        try:
            self._download_tree(remote_path, Path(local_path))
        except RemoteTransferError:
            raise
        except (IOError, OSError, paramiko.SSHException) as e:
            raise RemoteTransferError(f"Failed to download {remote_path}: {e}")

    def _download_tree(self, remote_path: str, local_path: Path):
        local_path.mkdir(parents=True, exist_ok=True)

        for item in self.sftp_client.listdir_attr(remote_path):
            remote_item = posixpath.join(remote_path, item.filename)
            local_item = local_path / item.filename
            mode = item.st_mode or 0

            if stat.S_ISDIR(mode):
                self._download_tree(remote_item, local_item)
            elif stat.S_ISREG(mode):
                self.sftp_client.get(remote_item, str(local_item))
            else:
                # Sockets, symlinks and devices are not part of a volume backup
                logger.debug(f"Skipping non-regular entry: {remote_item}")

    def close(self):
        """Close SFTP and SSH handles. Safe to call more than once."""
        if self.sftp_client:
            try:
                self.sftp_client.close()
            except Exception as e:
                logger.debug(f"Error closing SFTP session: {e}")
            self.sftp_client = None

        if self.ssh_client:
            try:
                self.ssh_client.close()
            except Exception as e:
                logger.debug(f"Error closing SSH session: {e}")
            self.ssh_client = None

    def _require_session(self):
        if self.sftp_client is None:
            raise RemoteTransferError("Not connected")


def volumes_root(node, default_path: str) -> str:
    """Remote directory holding the node's volumes."""
    return node.volumes_path or default_path


def check_node_connection(node, default_path: str, connect_timeout: int = 30) -> bool:
    """
    Connect to a node and list its volumes root.

    Returns:
        True if both succeed, False otherwise
    """
    client = RemoteVolumeClient(node, connect_timeout=connect_timeout)
    try:
        client.connect()
        client.list(volumes_root(node, default_path))
        return True
    except (RemoteConnectionError, RemoteTransferError) as e:
        logger.error(f"Node test failed for {node.name}: {e}")
        return False
    finally:
        client.close()


def get_node_volumes(node, default_path: str, connect_timeout: int = 30) -> List[str]:
    """
    List volume names on a node.

    Raises:
        RemoteConnectionError: If the session cannot be opened
        RemoteTransferError: If the volumes root cannot be listed
    """
    with RemoteVolumeClient(node, connect_timeout=connect_timeout) as client:
        return client.list(volumes_root(node, default_path))
