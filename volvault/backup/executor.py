"""
Backup executor - orchestrates the complete backup workflow for one run.

Workflow:
1. Resolve node, name the artifact, mark the run running (5%)
2. Connect to the node over SSH (10%) and enumerate volumes (15%)
3. Per volume: safe-stop the server, download, safe-start (15-75%)
4. Close the session (75%)
5. Create the compressed archive (85%)
6. Upload to the selected storage backend (95%)
7. Cleanup scratch files, mark completed (100%)

Any failure after the run is marked running marks it failed (progress 0,
truncated error message) and is re-raised to the caller. Per-volume
download errors and safe-stop/start problems are recovered: they are
recorded as warnings and the run continues.
"""

import contextlib
import logging
import math
import os
import shutil
import tempfile
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from flask import current_app

from volvault import store
from volvault.exceptions import NodeNotFound, NotFound, ValidationError
from volvault.models import ALL_VOLUMES
from volvault.notifications import send_webhook
from .compression import create_archive, generate_backup_filename, format_size, format_duration
from .sources import RemoteVolumeClient, RemoteTransferError, volumes_root
from .storage import StorageKind, StorageError, LocalStorage, create_backend
from .workload import WorkloadCoordinator, is_workload_id, OFFLINE


logger = logging.getLogger(__name__)

ERROR_MESSAGE_LIMIT = 200

# Progress milestones
PROGRESS_STARTED = 5
PROGRESS_CONNECTED = 10
PROGRESS_ENUMERATED = 15
PROGRESS_DOWNLOADED = 75
PROGRESS_ARCHIVED = 85
PROGRESS_UPLOADED = 95
PROGRESS_COMPLETED = 100

LOG_LEVELS = {
    'info': logging.INFO,
    'warn': logging.WARNING,
    'error': logging.ERROR,
}


@dataclass
class BackupOptions:
    """What to back up and where to store it."""
    node_id: int
    storage_type: str
    volume_name: Optional[str] = None
    backup_id: Optional[int] = None


@dataclass
class StepOutcome:
    """Result of a best-effort step (safe_stop, download, safe_start, cleanup)."""
    step: str
    target: str
    ok: bool = True
    error: Optional[str] = None

    def describe(self) -> str:
        return f"{self.step} failed for {self.target}: {self.error}"


@dataclass
class BackupFile:
    """A completed artifact available on local disk."""
    path: str
    filename: str
    size: int
    temporary: bool = False

    def open(self):
        return open(self.path, 'rb')


class NodeLocks:
    """Per-node advisory locks, used when NODE_LOCKING is enabled."""

    def __init__(self):
        self._locks = {}
        self._guard = threading.Lock()

    def get(self, node_id: int) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(node_id, threading.Lock())


def validate_volume_selector(volume_name: Optional[str]) -> str:
    """
    Volume selector for a run: a single volume directory name or 'all-volumes'.

    Raises:
        ValidationError: If the name could escape the volumes root
    """
    selector = volume_name or ALL_VOLUMES
    if '/' in selector or '\\' in selector or selector.startswith('.'):
        raise ValidationError(f"Invalid volume name: {selector}")
    return selector


class BackupExecutor:
    """
    Runs the backup pipeline for one Backup record.

    Must be used inside a Flask app context. Each executor owns its own SSH
    session, scratch directory (TEMP_DIR/backup-<id>) and archive path.
    """

    def __init__(self, options: BackupOptions):
        self.options = options
        self.config = current_app.config
        self.coordinator = WorkloadCoordinator(
            store.get_setting,
            timeout=self.config.get('WORKLOAD_API_TIMEOUT', 15)
        )
        self.node = None
        self.backup_id = options.backup_id
        self.volume_selector = None
        self.storage_kind = None
        self.filename = None
        self.client = None
        self.scratch_dir = None
        self.archive_path = None
        self.storage_path = None
        self.size = 0
        self.outcomes: List[StepOutcome] = []
        self.recovered: List[StepOutcome] = []

    def execute(self) -> int:
        """
        Execute the backup.

        Returns:
            ID of the Backup record

        Raises:
            NodeNotFound: If the node does not exist
            ValidationError: If the volume selector or storage type is invalid
            Exception: Any pipeline-fatal error, after the run is marked failed
        """
        started = time.monotonic()

        try:
            self._prepare()
        except (NotFound, ValidationError) as e:
            if self.backup_id is not None:
                store.fail(self.backup_id, str(e)[:ERROR_MESSAGE_LIMIT])
            raise

        try:
            self._start_run()
            with self._node_lock():
                self._execute_workflow()
            self._finish(started)
        except Exception as e:
            if self.backup_id is None:
                raise
            self._cleanup()
            self._fail(e)
            raise

        return self.backup_id

    def _prepare(self):
        node = store.get_node(self.options.node_id)
        if node is None:
            raise NodeNotFound(f"Node not found: {self.options.node_id}")
        self.node = node

        self.volume_selector = validate_volume_selector(self.options.volume_name)
        try:
            self.storage_kind = StorageKind.parse(self.options.storage_type)
        except ValueError as e:
            raise ValidationError(str(e))

        self.filename = generate_backup_filename(node.name, self.volume_selector)

    def _start_run(self):
        fields = {
            'filename': self.filename,
            'volume_name': self.volume_selector,
            'storage_type': self.storage_kind.value,
            'status': 'running',
            'started_at': datetime.utcnow(),
        }
        if self.backup_id is not None:
            store.update_backup(self.backup_id, **fields)
        else:
            record = store.create_backup_record(
                node_id=self.node.id,
                volume_name=self.volume_selector,
                filename=self.filename,
                storage_type=self.storage_kind.value,
                status='running'
            )
            self.backup_id = record.id

        temp_dir = self.config['TEMP_DIR']
        self.scratch_dir = os.path.join(temp_dir, f'backup-{self.backup_id}')
        self.archive_path = os.path.join(temp_dir, self.filename)

        self._log('info', f"Starting backup: {self.filename}")
        self._progress(PROGRESS_STARTED)
        self._notify('info', 'Backup Started', f"**{self.node.name}** - {self.volume_selector}", [
            {'name': 'Storage Type', 'value': self.storage_kind.value, 'inline': True},
        ])

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        node = self.node
        root = volumes_root(node, self.config['DEFAULT_VOLUMES_PATH'])

        # Step 1: Connect and enumerate volumes
        self._log('info', f"Connecting to {node.name} ({node.host})")
        self.client = RemoteVolumeClient(node, connect_timeout=self.config.get('SSH_CONNECT_TIMEOUT', 30))
        try:
            self.client.connect()
            self._progress(PROGRESS_CONNECTED)

            if self.volume_selector == ALL_VOLUMES:
                volumes = self.client.list(root)
                self._log('info', f"Found {len(volumes)} volumes")
            else:
                volumes = [self.volume_selector]
            self._progress(PROGRESS_ENUMERATED)

            # Step 2: Download volumes
            os.makedirs(self.scratch_dir, exist_ok=True)
            for index, volume in enumerate(volumes):
                self._backup_volume(root, volume, index, len(volumes))
        finally:
            self.client.close()

        self._log('info', "Download complete")
        self._progress(PROGRESS_DOWNLOADED)

        # Step 3: Create archive
        self._log('info', "Compressing backup...")
        self.size = create_archive(self.scratch_dir, self.archive_path)
        store.update_backup(self.backup_id, size=self.size)
        self._log('info', f"Archive created: {format_size(self.size)}")
        self._progress(PROGRESS_ARCHIVED)

        # Step 4: Upload
        self._log('info', f"Uploading to {self.storage_kind.value} storage...")
        backend = create_backend(
            self.storage_kind,
            store.get_setting,
            self.config['LOCAL_BACKUP_DIR'],
            connect_timeout=self.config.get('SSH_CONNECT_TIMEOUT', 30)
        )
        self.storage_path = backend.upload(self.archive_path, self.filename)
        self._progress(PROGRESS_UPLOADED)

        # Step 5: Cleanup
        self._cleanup()

    def _backup_volume(self, root: str, volume: str, index: int, total: int):
        local_path = os.path.join(self.scratch_dir, volume)
        os.makedirs(local_path, exist_ok=True)

        was_running = False
        if is_workload_id(volume):
            outcome, was_running = self._safe_stop(volume)
            self._record(outcome)

        self._log('info', f"Downloading volume: {volume} ({index + 1}/{total})")
        self._record(self._download(f"{root.rstrip('/')}/{volume}", volume, local_path))

        if was_running:
            self._record(self._safe_start(volume))

        self._progress(PROGRESS_ENUMERATED + math.floor((index + 1) / total * (PROGRESS_DOWNLOADED - PROGRESS_ENUMERATED)))

    def _safe_stop(self, volume: str):
        """
        Stop a running server and wait for it to go offline.

        Returns:
            (StepOutcome, was_running). A server that does not reach offline
            within the polling window is copied anyway.
        """
        state = self.coordinator.get_state(volume)
        if not state or state == OFFLINE:
            return StepOutcome('safe_stop', volume), False

        self._log('info', f"[Safe Backup] Stopping server {volume}...")
        if not self.coordinator.set_state(volume, 'stop'):
            return StepOutcome('safe_stop', volume, ok=False, error="stop request was not accepted"), True

        interval = self.config.get('SAFE_STOP_POLL_INTERVAL', 5)
        max_polls = self.config.get('SAFE_STOP_MAX_POLLS', 12)
        for _ in range(max_polls):
            time.sleep(interval)
            if self.coordinator.get_state(volume) == OFFLINE:
                return StepOutcome('safe_stop', volume), True

        return StepOutcome(
            'safe_stop', volume, ok=False,
            error=f"server not offline after {max_polls * interval}s, copying live data"
        ), True

    def _download(self, remote_path: str, volume: str, local_path: str) -> StepOutcome:
        try:
            self.client.download_directory(remote_path, local_path)
            return StepOutcome('download', volume)
        except RemoteTransferError as e:
            return StepOutcome('download', volume, ok=False, error=str(e))

    def _safe_start(self, volume: str) -> StepOutcome:
        self._log('info', f"[Safe Backup] Restoring server {volume}...")
        if self.coordinator.set_state(volume, 'start'):
            return StepOutcome('safe_start', volume)
        return StepOutcome('safe_start', volume, ok=False, error="failed to restart server")

    def _cleanup(self) -> List[StepOutcome]:
        """Remove scratch directory and temp archive. Failures are only logged."""
        outcomes = []
        if self.scratch_dir and os.path.exists(self.scratch_dir):
            try:
                shutil.rmtree(self.scratch_dir)
                outcomes.append(StepOutcome('cleanup', self.scratch_dir))
            except OSError as e:
                outcomes.append(StepOutcome('cleanup', self.scratch_dir, ok=False, error=str(e)))

        if self.archive_path and os.path.exists(self.archive_path):
            try:
                os.remove(self.archive_path)
                outcomes.append(StepOutcome('cleanup', self.archive_path))
            except OSError as e:
                outcomes.append(StepOutcome('cleanup', self.archive_path, ok=False, error=str(e)))

        for outcome in outcomes:
            self._record(outcome)
        return outcomes

    def _finish(self, started: float):
        store.update_backup(
            self.backup_id,
            storage_path=self.storage_path,
            size=self.size,
            status='completed',
            progress=PROGRESS_COMPLETED,
            completed_at=datetime.utcnow()
        )

        duration = format_duration(time.monotonic() - started)
        size = format_size(self.size)
        self._log('info', f"Backup completed: {size} in {duration}")
        self._notify('success', 'Backup Completed', f"**{self.node.name}** - {self.volume_selector}", [
            {'name': 'Size', 'value': size, 'inline': True},
            {'name': 'Duration', 'value': duration, 'inline': True},
            {'name': 'Filename', 'value': self.filename, 'inline': False},
        ])

    def _fail(self, error: Exception):
        message = str(error) or error.__class__.__name__
        store.fail(self.backup_id, message[:ERROR_MESSAGE_LIMIT])
        self._log('error', f"Backup failed: {message}")
        self._notify('error', 'Backup Failed', f"**{self.node.name}** - {self.volume_selector}", [
            {'name': 'Error', 'value': message[:ERROR_MESSAGE_LIMIT]},
        ])

    @contextlib.contextmanager
    def _node_lock(self):
        if not self.config.get('NODE_LOCKING'):
            yield
            return

        locks = current_app.extensions['volvault.node_locks']
        lock = locks.get(self.node.id)
        if not lock.acquire(blocking=False):
            self._log('info', f"Waiting for another backup of {self.node.name} to finish")
            lock.acquire()
        try:
            yield
        finally:
            lock.release()

    def _record(self, outcome: StepOutcome):
        self.outcomes.append(outcome)
        if not outcome.ok:
            self.recovered.append(outcome)
            self._log('warn', outcome.describe())

    def _progress(self, value: int):
        store.update_progress(self.backup_id, value)

    def _log(self, level: str, message: str):
        logger.log(LOG_LEVELS[level], f"[backup {self.backup_id}] {message}")
        store.add_log(self.backup_id, level, message)

    def _notify(self, kind: str, title: str, description: str, fields: list):
        send_webhook(
            kind, title, description, fields,
            get_setting=store.get_setting,
            timeout=self.config.get('WEBHOOK_TIMEOUT', 10)
        )


def create_backup(options: BackupOptions) -> int:
    """
    Run the backup pipeline synchronously.

    Returns:
        ID of the Backup record

    Raises:
        NodeNotFound, ValidationError, or the pipeline-fatal error
    """
    return BackupExecutor(options).execute()


def submit_backup(app, node_id: int, storage_type: str, volume_name: Optional[str] = None) -> int:
    """
    Create a pending run and execute it on a background thread.

    Errors from the run are logged, never raised to the caller.

    Returns:
        ID of the pending Backup record

    Raises:
        NodeNotFound: If the node does not exist
        ValidationError: If the selector or storage type is invalid
    """
    if store.get_node(node_id) is None:
        raise NodeNotFound(f"Node not found: {node_id}")
    selector = validate_volume_selector(volume_name)
    try:
        kind = StorageKind.parse(storage_type)
    except ValueError as e:
        raise ValidationError(str(e))

    record = store.create_backup_record(
        node_id=node_id,
        volume_name=selector,
        filename='pending',
        storage_type=kind.value,
        status='pending'
    )
    options = BackupOptions(
        node_id=node_id,
        storage_type=kind.value,
        volume_name=selector,
        backup_id=record.id
    )

    thread = threading.Thread(
        target=_run_in_background,
        args=(app, options),
        name=f"backup-{record.id}"
    )
    thread.start()
    return record.id


def _run_in_background(app, options: BackupOptions):
    with app.app_context():
        try:
            create_backup(options)
        except Exception as e:
            logger.error(f"Backup {options.backup_id} failed: {e}")


def delete_backup(backup_id: int):
    """
    Delete a run: best-effort removal of its artifact, then the record.

    Raises:
        NotFound: If the run does not exist
    """
    backup = store.get_backup(backup_id)
    if backup is None:
        raise NotFound(f"Backup not found: {backup_id}")

    config = current_app.config
    try:
        backend = create_backend(
            backup.storage_type,
            store.get_setting,
            config['LOCAL_BACKUP_DIR'],
            connect_timeout=config.get('SSH_CONNECT_TIMEOUT', 30)
        )
        backend.delete(backup.filename)
    except (StorageError, ValueError) as e:
        logger.warning(f"Failed to delete file for backup {backup_id}: {e}")

    store.delete_backup_record(backup_id)
    logger.info(f"Deleted backup {backup_id}")


def get_backup_file(backup_id: int) -> Optional[BackupFile]:
    """
    Locate the artifact of a completed run on local disk.

    Local artifacts are served in place. Other backends are first downloaded
    to TEMP_DIR/downloads, which may take a long time for large archives.

    Returns:
        BackupFile, or None if the run is not completed or the local file is missing

    Raises:
        StorageError: If a remote download fails
    """
    backup = store.get_backup(backup_id)
    if backup is None or backup.status != 'completed':
        return None

    config = current_app.config
    kind = StorageKind.parse(backup.storage_type)

    if kind is StorageKind.LOCAL:
        path = LocalStorage(config['LOCAL_BACKUP_DIR']).get_full_path(backup.filename)
        if not path.is_file():
            return None
        return BackupFile(str(path), backup.filename, path.stat().st_size)

    backend = create_backend(
        kind, store.get_setting, config['LOCAL_BACKUP_DIR'],
        connect_timeout=config.get('SSH_CONNECT_TIMEOUT', 30)
    )
    download_dir = os.path.join(config['TEMP_DIR'], 'downloads')
    os.makedirs(download_dir, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(prefix=f"{backup.id}-", suffix=f"-{backup.filename}", dir=download_dir)
    os.close(fd)
    try:
        backend.download(backup.filename, temp_path)
    except Exception:
        os.remove(temp_path)
        raise
    return BackupFile(temp_path, backup.filename, os.path.getsize(temp_path), temporary=True)
