"""
Dashboard routes - overview statistics.
"""

from flask import Blueprint, jsonify

from volvault import store


bp = Blueprint('dashboard', __name__, url_prefix='/api')


@bp.route('/stats', methods=['GET'])
def get_stats():
    """
    Get dashboard statistics.

    Returns:
        JSON with backup counts by status, total stored size,
        node and schedule counts, and the 5 most recent runs
    """
    stats = store.aggregate_stats()

    return jsonify({
        **stats,
        'nodes': len(store.list_nodes()),
        'schedules': len(store.list_schedules()),
        'recent': [backup.to_dict() for backup in store.list_backups(limit=5)],
    })
