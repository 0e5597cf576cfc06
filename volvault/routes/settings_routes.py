"""
Settings routes - storage, panel and webhook configuration.
"""

import logging
from flask import Blueprint, jsonify, request

from volvault import store
from volvault.exceptions import ValidationError
from volvault.backup.storage import StorageKind, is_configured


bp = Blueprint('settings', __name__, url_prefix='/api/settings')
logger = logging.getLogger(__name__)

SETTING_KEYS = (
    's3_endpoint', 's3_bucket', 's3_region', 's3_access_key', 's3_secret_key',
    'sftp_host', 'sftp_port', 'sftp_user', 'sftp_pass', 'sftp_path',
    'ptero_url', 'ptero_key',
    'discord_webhook_url',
)

SECRET_KEYS = ('s3_secret_key', 'sftp_pass', 'ptero_key')

MASK = '••••••••'


def mask_settings(settings: dict) -> dict:
    """Replace secret values with a fixed mask (empty secrets stay empty)."""
    return {
        key: (MASK if key in SECRET_KEYS and value else value)
        for key, value in settings.items()
    }


@bp.route('', methods=['GET'])
def get_settings():
    """
    Get all settings (secret values are masked).

    Returns:
        JSON with settings and per-storage-kind readiness
    """
    settings = mask_settings(store.all_settings())
    storage_status = {
        kind.value: is_configured(kind, store.get_setting)
        for kind in StorageKind
    }

    return jsonify({'settings': settings, 'isConfigured': storage_status})


@bp.route('', methods=['POST'])
def update_settings():
    """
    Save settings.

    Request body: object of setting key -> value. Unknown keys are rejected;
    a masked value leaves the stored secret unchanged.

    Returns:
        JSON with success message
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')

    unknown = sorted(set(data) - set(SETTING_KEYS))
    if unknown:
        raise ValidationError(f'Unknown settings: {unknown}')

    for key, value in data.items():
        if key in SECRET_KEYS and value == MASK:
            continue
        store.set_setting(key, None if value is None else str(value))

    logger.info(f"Updated settings: {sorted(data)}")

    return jsonify({'message': 'Saved'})
