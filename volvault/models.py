from datetime import datetime
from volvault import db


ALL_VOLUMES = 'all-volumes'

BACKUP_STATUSES = ('pending', 'running', 'completed', 'failed')


def _iso(value):
    return value.isoformat() if value else None


class Node(db.Model):
    """Remote host holding workload volumes"""
    __tablename__ = 'nodes'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    host = db.Column(db.String(255), nullable=False)
    port = db.Column(db.Integer, default=22, nullable=False)
    username = db.Column(db.String(255), nullable=False)
    auth_type = db.Column(db.String(20), default='key', nullable=False)  # 'key' or 'password'
    ssh_key_path = db.Column(db.String(500))
    ssh_password = db.Column(db.Text)
    volumes_path = db.Column(db.String(500))
    status = db.Column(db.String(20), default='unknown', nullable=False)  # unknown, online, offline
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    backups = db.relationship('Backup', back_populates='node', lazy='dynamic')
    schedules = db.relationship('Schedule', back_populates='node', lazy='dynamic')

    def to_dict(self):
        # Credentials are write-only
        return {
            'id': self.id,
            'name': self.name,
            'host': self.host,
            'port': self.port,
            'username': self.username,
            'auth_type': self.auth_type,
            'ssh_key_path': self.ssh_key_path,
            'has_password': bool(self.ssh_password),
            'volumes_path': self.volumes_path,
            'status': self.status,
            'created_at': _iso(self.created_at),
        }

    def __repr__(self):
        return f'<Node {self.name} host={self.host} auth={self.auth_type}>'


class Backup(db.Model):
    """One execution of the backup pipeline"""
    __tablename__ = 'backups'

    id = db.Column(db.Integer, primary_key=True)
    node_id = db.Column(db.Integer, db.ForeignKey('nodes.id'), nullable=False)
    volume_name = db.Column(db.String(255), nullable=False, default=ALL_VOLUMES)
    filename = db.Column(db.String(500), nullable=False)
    size = db.Column(db.BigInteger, default=0, nullable=False)
    storage_type = db.Column(db.String(20), nullable=False)  # local, cloud, remote
    storage_path = db.Column(db.String(1000))
    status = db.Column(db.String(20), default='pending', nullable=False)
    progress = db.Column(db.Integer, default=0, nullable=False)
    error_message = db.Column(db.Text)
    started_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    node = db.relationship('Node', back_populates='backups')
    logs = db.relationship(
        'BackupLog', back_populates='backup', cascade='all, delete-orphan',
        order_by='BackupLog.id', lazy='dynamic'
    )

    def to_dict(self):
        return {
            'id': self.id,
            'node_id': self.node_id,
            'node_name': self.node.name if self.node else None,
            'volume_name': self.volume_name,
            'filename': self.filename,
            'size': self.size,
            'storage_type': self.storage_type,
            'storage_path': self.storage_path,
            'status': self.status,
            'progress': self.progress,
            'error_message': self.error_message,
            'started_at': _iso(self.started_at),
            'completed_at': _iso(self.completed_at),
            'created_at': _iso(self.created_at),
        }

    def __repr__(self):
        return f'<Backup {self.id} node_id={self.node_id} status={self.status} progress={self.progress}>'


class BackupLog(db.Model):
    """Append-only log line attached to a backup run"""
    __tablename__ = 'backup_logs'

    id = db.Column(db.Integer, primary_key=True)
    backup_id = db.Column(db.Integer, db.ForeignKey('backups.id', ondelete='CASCADE'), nullable=False)
    level = db.Column(db.String(10), default='info', nullable=False)  # info, warn, error
    message = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    backup = db.relationship('Backup', back_populates='logs')

    def to_dict(self):
        return {
            'id': self.id,
            'backup_id': self.backup_id,
            'level': self.level,
            'message': self.message,
            'created_at': _iso(self.created_at),
        }


class Schedule(db.Model):
    """Cron-driven recurring backup of a node"""
    __tablename__ = 'schedules'

    id = db.Column(db.Integer, primary_key=True)
    node_id = db.Column(db.Integer, db.ForeignKey('nodes.id'), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    cron_expression = db.Column(db.String(100), nullable=False)
    storage_type = db.Column(db.String(20), nullable=False)
    retention_count = db.Column(db.Integer, default=7, nullable=False)
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    last_run = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    node = db.relationship('Node', back_populates='schedules')

    def to_dict(self):
        return {
            'id': self.id,
            'node_id': self.node_id,
            'node_name': self.node.name if self.node else None,
            'name': self.name,
            'cron_expression': self.cron_expression,
            'storage_type': self.storage_type,
            'retention_count': self.retention_count,
            'enabled': self.enabled,
            'last_run': _iso(self.last_run),
            'created_at': _iso(self.created_at),
        }

    def __repr__(self):
        return f'<Schedule {self.name} cron={self.cron_expression} enabled={self.enabled}>'


class Setting(db.Model):
    """Flat key-value storage configuration"""
    __tablename__ = 'settings'

    key = db.Column(db.String(100), primary_key=True)
    value = db.Column(db.Text)

    def __repr__(self):
        return f'<Setting {self.key}>'
