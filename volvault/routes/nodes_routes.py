"""
Node routes - CRUD operations, connection tests and volume listing.
"""

import logging
from flask import Blueprint, jsonify, request, current_app

from volvault import store
from volvault.exceptions import NotFound, ValidationError
from volvault.backup.sources import (
    RemoteConnectionError, RemoteTransferError, check_node_connection, get_node_volumes
)
from volvault.scheduler import get_registry


bp = Blueprint('nodes', __name__, url_prefix='/api/nodes')
logger = logging.getLogger(__name__)

AUTH_TYPES = ('key', 'password')

EDITABLE_FIELDS = (
    'name', 'host', 'port', 'username', 'auth_type',
    'ssh_key_path', 'ssh_password', 'volumes_path',
)


def validate_node(data: dict, partial: bool = False):
    """
    Validate node input.

    Args:
        data: Request body
        partial: Only validate the fields present (updates)

    Raises:
        ValidationError: On the first invalid field
    """
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')

    if not partial or 'name' in data:
        name = data.get('name')
        if not isinstance(name, str) or not 1 <= len(name) <= 100:
            raise ValidationError('Name is required (1-100 characters)')

    if not partial or 'host' in data:
        if not isinstance(data.get('host'), str) or not data.get('host'):
            raise ValidationError('Host is required')

    if data.get('port') is not None:
        port = data['port']
        if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
            raise ValidationError('Port must be between 1 and 65535')

    if not partial or 'username' in data:
        if not isinstance(data.get('username'), str) or not data.get('username'):
            raise ValidationError('Username is required')

    if data.get('auth_type') is not None and data['auth_type'] not in AUTH_TYPES:
        raise ValidationError('auth_type must be "key" or "password"')


def _node_fields(data: dict) -> dict:
    return {key: data[key] for key in EDITABLE_FIELDS if key in data and data[key] is not None}


def _get_node_or_404(node_id):
    node = store.get_node(node_id)
    if node is None:
        raise NotFound('Node not found')
    return node


@bp.route('', methods=['GET'])
def list_nodes():
    """
    Get list of all nodes.

    Returns:
        JSON array of nodes (passwords are never returned)
    """
    return jsonify([node.to_dict() for node in store.list_nodes()])


@bp.route('', methods=['POST'])
def create_node():
    """
    Create a new node.

    Request body:
        - name: Node name, 1-100 characters (required, unique)
        - host: Hostname or IP (required)
        - port: SSH port (default: 22)
        - username: SSH user (required)
        - auth_type: 'key' or 'password' (default: key)
        - ssh_key_path / ssh_password: Credentials for the chosen auth type
        - volumes_path: Volumes root (default: configured DEFAULT_VOLUMES_PATH)

    Returns:
        JSON with created node id
    """
    data = request.get_json(silent=True)
    validate_node(data)

    names = {node.name for node in store.list_nodes()}
    if data['name'] in names:
        raise ValidationError('Node name already exists')

    node = store.create_node(**_node_fields(data))
    logger.info(f"Created node {node.name} ({node.host})")

    return jsonify({'id': node.id, 'message': 'Node created'}), 201


@bp.route('/<int:node_id>', methods=['PUT', 'PATCH'])
def update_node(node_id):
    """Update an existing node (all fields optional)."""
    _get_node_or_404(node_id)
    data = request.get_json(silent=True)
    validate_node(data, partial=True)

    store.update_node(node_id, **_node_fields(data))

    return jsonify({'message': 'Node updated'})


@bp.route('/<int:node_id>', methods=['DELETE'])
def delete_node(node_id):
    """Delete a node and its schedules, cancelling their timers."""
    _get_node_or_404(node_id)
    registry = get_registry()
    for schedule in store.list_schedules_by_node(node_id):
        registry.remove_job(schedule.id)
    store.delete_node(node_id)
    return jsonify({'message': 'Deleted'})


@bp.route('/<int:node_id>/test', methods=['POST'])
def test_node(node_id):
    """
    Test SSH connectivity and record the node status.

    Returns:
        JSON with success flag and new status (online/offline)
    """
    node = _get_node_or_404(node_id)
    ok = check_node_connection(
        node,
        current_app.config['DEFAULT_VOLUMES_PATH'],
        connect_timeout=current_app.config.get('SSH_CONNECT_TIMEOUT', 30)
    )
    status = 'online' if ok else 'offline'
    store.update_node_status(node.id, status)

    return jsonify({'success': ok, 'status': status})


@bp.route('/<int:node_id>/volumes', methods=['GET'])
def list_volumes(node_id):
    """
    List volume directories on a node.

    Returns:
        JSON array of volume names
    """
    node = _get_node_or_404(node_id)
    try:
        volumes = get_node_volumes(
            node,
            current_app.config['DEFAULT_VOLUMES_PATH'],
            connect_timeout=current_app.config.get('SSH_CONNECT_TIMEOUT', 30)
        )
    except (RemoteConnectionError, RemoteTransferError) as e:
        logger.error(f"Failed to list volumes on {node.name}: {e}")
        return jsonify({'error': str(e)}), 500

    return jsonify(volumes)
