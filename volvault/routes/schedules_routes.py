"""
Schedule routes - CRUD operations, toggling and manual runs.

Every change is mirrored into the schedule registry so the active timer
always matches the stored schedule.
"""

import logging
from flask import Blueprint, jsonify, request

from volvault import store
from volvault.exceptions import NotFound, ValidationError
from volvault.backup.storage import StorageKind
from volvault.scheduler import get_registry, parse_cron


bp = Blueprint('schedules', __name__, url_prefix='/api/schedules')
logger = logging.getLogger(__name__)


def validate_schedule(data: dict, partial: bool = False):
    """
    Validate schedule input.

    Raises:
        ValidationError: On the first invalid field
    """
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')

    if not partial or 'name' in data:
        if not isinstance(data.get('name'), str) or not data.get('name'):
            raise ValidationError('Schedule name is required')

    if not partial or 'node_id' in data:
        node_id = data.get('node_id')
        if not isinstance(node_id, int) or store.get_node(node_id) is None:
            raise ValidationError('Valid node_id is required')

    if not partial or 'cron_expression' in data:
        expression = data.get('cron_expression')
        if not isinstance(expression, str) or parse_cron(expression) is None:
            raise ValidationError('Invalid cron expression')

    if not partial or 'storage_type' in data:
        try:
            StorageKind.parse(data.get('storage_type'))
        except ValueError as e:
            raise ValidationError(str(e))

    if 'retention_count' in data:
        count = data['retention_count']
        if isinstance(count, bool) or not isinstance(count, int) or count < 1:
            raise ValidationError('retention_count must be a positive integer')

    if 'enabled' in data and not isinstance(data['enabled'], bool):
        raise ValidationError('enabled must be a boolean')


def _schedule_fields(data: dict) -> dict:
    fields = ('node_id', 'name', 'cron_expression', 'storage_type', 'retention_count', 'enabled')
    return {key: data[key] for key in fields if key in data}


def _get_schedule_or_404(schedule_id):
    schedule = store.get_schedule(schedule_id)
    if schedule is None:
        raise NotFound('Schedule not found')
    return schedule


def _sync(schedule):
    registry = get_registry()
    if schedule.enabled:
        registry.add_job(schedule)
    else:
        registry.remove_job(schedule.id)


@bp.route('', methods=['GET'])
def list_schedules():
    return jsonify([schedule.to_dict() for schedule in store.list_schedules()])


@bp.route('/jobs', methods=['GET'])
def list_jobs():
    """
    Get active timers.

    Returns:
        JSON array of jobs with next run time
    """
    return jsonify(get_registry().get_jobs())


@bp.route('', methods=['POST'])
def create_schedule():
    """
    Create a new schedule.

    Request body:
        - name: Schedule name (required)
        - node_id: Node to back up (required)
        - cron_expression: 5-field cron expression (required)
        - storage_type: 'local', 'cloud' or 'remote' (required)
        - retention_count: Completed backups to keep (default: 7)
        - enabled: Enable schedule (default: true)

    Returns:
        JSON with created schedule id
    """
    data = request.get_json(silent=True)
    validate_schedule(data)

    schedule = store.create_schedule(**_schedule_fields(data))
    _sync(schedule)
    logger.info(f"Created schedule {schedule.name} ({schedule.cron_expression})")

    return jsonify({'id': schedule.id, 'message': 'Schedule created'}), 201


@bp.route('/<int:schedule_id>', methods=['PUT', 'PATCH'])
def update_schedule(schedule_id):
    """Update an existing schedule (all fields optional)."""
    _get_schedule_or_404(schedule_id)
    data = request.get_json(silent=True)
    validate_schedule(data, partial=True)

    schedule = store.update_schedule(schedule_id, **_schedule_fields(data))
    _sync(schedule)

    return jsonify({'message': 'Schedule updated'})


@bp.route('/<int:schedule_id>/toggle', methods=['POST', 'PATCH'])
def toggle_schedule(schedule_id):
    schedule = _get_schedule_or_404(schedule_id)
    schedule = store.update_schedule(schedule_id, enabled=not schedule.enabled)
    _sync(schedule)

    return jsonify({'enabled': schedule.enabled})


@bp.route('/<int:schedule_id>', methods=['DELETE'])
def delete_schedule(schedule_id):
    _get_schedule_or_404(schedule_id)
    get_registry().remove_job(schedule_id)
    store.delete_schedule(schedule_id)

    return jsonify({'message': 'Deleted'})


@bp.route('/<int:schedule_id>/run', methods=['POST'])
def run_schedule(schedule_id):
    """
    Run a schedule now and wait for the backup to finish.

    Returns:
        JSON with the backup id, or the error if the run failed
    """
    _get_schedule_or_404(schedule_id)
    try:
        backup_id = get_registry().run_now(schedule_id)
    except (NotFound, ValidationError):
        raise
    except Exception as e:
        logger.error(f"Manual run of schedule {schedule_id} failed: {e}")
        return jsonify({'error': str(e)}), 500

    return jsonify({'backup_id': backup_id})
