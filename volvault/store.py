"""
Record store used by the pipeline and scheduler.

Thin repository functions over the SQLAlchemy models. Every write touches a
single row and commits immediately, so concurrent runs (each in its own app
context and session) never need a shared transaction.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import case, func

from volvault import db
from volvault.exceptions import NotFound
from volvault.models import Node, Backup, BackupLog, Schedule, Setting


BACKUP_COLUMNS = {
    'node_id', 'volume_name', 'filename', 'size', 'storage_type', 'storage_path',
    'status', 'progress', 'error_message', 'started_at', 'completed_at',
}
SCHEDULE_COLUMNS = {
    'node_id', 'name', 'cron_expression', 'storage_type', 'retention_count',
    'enabled', 'last_run',
}
NODE_COLUMNS = {
    'name', 'host', 'port', 'username', 'auth_type', 'ssh_key_path',
    'ssh_password', 'volumes_path', 'status',
}


def _apply(record, data: dict, allowed: set):
    unknown = set(data) - allowed
    if unknown:
        raise ValueError(f"Unknown fields: {sorted(unknown)}")
    for key, value in data.items():
        setattr(record, key, value)


# Nodes

def get_node(node_id: int) -> Optional[Node]:
    return db.session.get(Node, node_id)


def list_nodes() -> List[Node]:
    return Node.query.order_by(Node.name).all()


def create_node(**fields) -> Node:
    node = Node()
    _apply(node, fields, NODE_COLUMNS)
    db.session.add(node)
    db.session.commit()
    return node


def update_node(node_id: int, **fields) -> Node:
    node = get_node(node_id)
    if node is None:
        raise NotFound(f"Node not found: {node_id}")
    _apply(node, fields, NODE_COLUMNS)
    db.session.commit()
    return node


def update_node_status(node_id: int, status: str):
    Node.query.filter_by(id=node_id).update({'status': status})
    db.session.commit()


def delete_node(node_id: int):
    """Delete a node together with its schedules. Backup records are kept."""
    Schedule.query.filter_by(node_id=node_id).delete()
    Node.query.filter_by(id=node_id).delete()
    db.session.commit()


# Backups

def get_backup(backup_id: int) -> Optional[Backup]:
    return db.session.get(Backup, backup_id)


def list_backups(limit: int = 100) -> List[Backup]:
    return Backup.query.order_by(Backup.created_at.desc(), Backup.id.desc()).limit(limit).all()


def list_by_node(node_id: int) -> List[Backup]:
    return Backup.query.filter_by(node_id=node_id).order_by(Backup.created_at.desc()).all()


def list_completed_by_node_and_storage(node_id: int, storage_type: str) -> List[Backup]:
    """Completed runs for a node/storage pair, newest first."""
    return (
        Backup.query
        .filter_by(node_id=node_id, storage_type=storage_type, status='completed')
        .order_by(Backup.created_at.desc(), Backup.id.desc())
        .all()
    )


def list_running() -> List[Backup]:
    return Backup.query.filter_by(status='running').order_by(Backup.started_at.desc()).all()


def create_backup_record(node_id: int, volume_name: str, filename: str,
                         storage_type: str, status: str = 'running') -> Backup:
    backup = Backup(
        node_id=node_id,
        volume_name=volume_name,
        filename=filename,
        storage_type=storage_type,
        status=status,
        progress=0,
        started_at=datetime.utcnow() if status == 'running' else None,
    )
    db.session.add(backup)
    db.session.commit()
    return backup


def update_backup(backup_id: int, **fields):
    unknown = set(fields) - BACKUP_COLUMNS
    if unknown:
        raise ValueError(f"Unknown fields: {sorted(unknown)}")
    Backup.query.filter_by(id=backup_id).update(fields)
    db.session.commit()


def update_progress(backup_id: int, progress: int):
    Backup.query.filter_by(id=backup_id).update({'progress': progress})
    db.session.commit()


def fail(backup_id: int, error_message: str):
    Backup.query.filter_by(id=backup_id).update({
        'status': 'failed',
        'error_message': error_message,
        'progress': 0,
        'storage_path': None,
        'completed_at': datetime.utcnow(),
    })
    db.session.commit()


def delete_backup_record(backup_id: int):
    BackupLog.query.filter_by(backup_id=backup_id).delete()
    Backup.query.filter_by(id=backup_id).delete()
    db.session.commit()


def aggregate_stats() -> dict:
    row = db.session.query(
        func.count(Backup.id),
        func.sum(case((Backup.status == 'completed', 1), else_=0)),
        func.sum(case((Backup.status == 'failed', 1), else_=0)),
        func.sum(case((Backup.status == 'running', 1), else_=0)),
        func.sum(Backup.size),
    ).one()
    total, completed, failed, running, total_size = row
    return {
        'total': total or 0,
        'completed': completed or 0,
        'failed': failed or 0,
        'running': running or 0,
        'total_size': total_size or 0,
    }


# Backup logs

def add_log(backup_id: int, level: str, message: str):
    db.session.add(BackupLog(backup_id=backup_id, level=level, message=message))
    db.session.commit()


def get_logs(backup_id: int) -> List[BackupLog]:
    return BackupLog.query.filter_by(backup_id=backup_id).order_by(BackupLog.id).all()


# Schedules

def get_schedule(schedule_id: int) -> Optional[Schedule]:
    return db.session.get(Schedule, schedule_id)


def list_schedules() -> List[Schedule]:
    return Schedule.query.order_by(Schedule.name).all()


def list_enabled_schedules() -> List[Schedule]:
    return Schedule.query.filter_by(enabled=True).all()


def list_schedules_by_node(node_id: int) -> List[Schedule]:
    return Schedule.query.filter_by(node_id=node_id).all()


def create_schedule(**fields) -> Schedule:
    schedule = Schedule()
    _apply(schedule, fields, SCHEDULE_COLUMNS)
    db.session.add(schedule)
    db.session.commit()
    return schedule


def update_schedule(schedule_id: int, **fields) -> Schedule:
    schedule = get_schedule(schedule_id)
    if schedule is None:
        raise NotFound(f"Schedule not found: {schedule_id}")
    _apply(schedule, fields, SCHEDULE_COLUMNS)
    db.session.commit()
    return schedule


def delete_schedule(schedule_id: int):
    Schedule.query.filter_by(id=schedule_id).delete()
    db.session.commit()


# Settings

def get_setting(key: str, default: Optional[str] = None) -> Optional[str]:
    setting = db.session.get(Setting, key)
    if setting is None or setting.value in (None, ''):
        return default
    return setting.value


def set_setting(key: str, value: Optional[str]):
    setting = db.session.get(Setting, key)
    if setting is None:
        db.session.add(Setting(key=key, value=value))
    else:
        setting.value = value
    db.session.commit()


def all_settings() -> dict:
    return {s.key: s.value for s in Setting.query.order_by(Setting.key).all()}
