"""
Backup routes - run submission, progress, logs, download and deletion.
"""

import logging
import os
from flask import Blueprint, jsonify, request, send_file, current_app

from volvault import store
from volvault.exceptions import NotFound, ValidationError
from volvault.backup.executor import submit_backup, delete_backup, get_backup_file
from volvault.backup.storage import StorageError


bp = Blueprint('backups', __name__, url_prefix='/api/backups')
logger = logging.getLogger(__name__)


@bp.route('', methods=['GET'])
def list_backups():
    """
    Get backup runs, newest first.

    Query parameters:
        - limit: Maximum number of runs (default: 100)

    Returns:
        JSON array of backup runs
    """
    limit = request.args.get('limit', 100, type=int)
    return jsonify([backup.to_dict() for backup in store.list_backups(limit=limit)])


@bp.route('/running', methods=['GET'])
def list_running():
    return jsonify([backup.to_dict() for backup in store.list_running()])


@bp.route('', methods=['POST'])
def start_backup():
    """
    Start a backup in the background and return immediately.

    Request body:
        - node_id: Node to back up (required)
        - storage_type: 'local', 'cloud' or 'remote' (required)
        - volume_name: Single volume (default: all volumes)

    Returns:
        JSON with the pending backup id
    """
    data = request.get_json(silent=True) or {}

    node_id = data.get('node_id')
    if not isinstance(node_id, int) or isinstance(node_id, bool):
        raise ValidationError('node_id is required')
    if not data.get('storage_type'):
        raise ValidationError('storage_type is required')

    backup_id = submit_backup(
        current_app._get_current_object(),
        node_id=node_id,
        storage_type=data['storage_type'],
        volume_name=data.get('volume_name')
    )

    return jsonify({'id': backup_id, 'message': 'Backup started'}), 202


@bp.route('/<int:backup_id>', methods=['GET'])
def get_backup(backup_id):
    backup = store.get_backup(backup_id)
    if backup is None:
        raise NotFound('Backup not found')
    return jsonify(backup.to_dict())


@bp.route('/<int:backup_id>/logs', methods=['GET'])
def get_logs(backup_id):
    """
    Get the log trail of a run.

    Returns:
        JSON array of log entries in order
    """
    return jsonify([entry.to_dict() for entry in store.get_logs(backup_id)])


@bp.route('/<int:backup_id>/download', methods=['GET'])
def download_backup(backup_id):
    """
    Download the archive of a completed run.

    Archives held by remote backends are fetched to the scratch area first.
    """
    try:
        backup_file = get_backup_file(backup_id)
    except StorageError as e:
        logger.error(f"Failed to fetch backup {backup_id}: {e}")
        return jsonify({'error': str(e)}), 500

    if backup_file is None:
        return jsonify({'error': 'Backup not found or not completed'}), 404

    response = send_file(
        backup_file.path,
        mimetype='application/gzip',
        as_attachment=True,
        download_name=backup_file.filename
    )

    if backup_file.temporary:
        def _remove_temp():
            try:
                os.remove(backup_file.path)
            except OSError as e:
                logger.warning(f"Failed to remove temp download {backup_file.path}: {e}")

        response.call_on_close(_remove_temp)

    return response


@bp.route('/<int:backup_id>', methods=['DELETE'])
def remove_backup(backup_id):
    delete_backup(backup_id)
    return jsonify({'message': 'Deleted'})
