"""
Shared pytest fixtures for Volvault tests.

This module provides fixtures for:
- Flask app and test client
- Database setup with a temp-file SQLite database
- Node, backup and schedule fixtures
- Mock fixtures for external services (S3, SSH)
- Temporary file fixtures
"""

import os
import shutil
import tempfile
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from volvault import create_app, db as _db
from volvault import store


@pytest.fixture(scope='function')
def app():
    """
    Create Flask app with test configuration.

    Uses a temp-file SQLite database so background threads see the same data.
    """
    temp_dir = tempfile.mkdtemp()

    app = create_app('testing', {
        'DATA_DIR': temp_dir,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{os.path.join(temp_dir, 'test.db')}",
        'TEMP_DIR': os.path.join(temp_dir, 'temp'),
        'LOCAL_BACKUP_DIR': os.path.join(temp_dir, 'backups'),
        'LOG_DIR': os.path.join(temp_dir, 'logs'),
    })

    yield app

    # Cleanup
    with app.app_context():
        _db.engine.dispose()
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture(scope='function')
def db(app):
    """
    Database with all tables inside an app context.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app, db):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def node(db):
    """Node using key authentication."""
    return store.create_node(
        name='alpha',
        host='alpha.example.com',
        port=22,
        username='root',
        auth_type='key',
        ssh_key_path='/root/.ssh/id_ed25519',
        volumes_path='/var/lib/pterodactyl/volumes'
    )


@pytest.fixture(scope='function')
def password_node(db):
    """Node using password authentication and the default volumes root."""
    return store.create_node(
        name='beta',
        host='10.0.0.2',
        port=2222,
        username='backup',
        auth_type='password',
        ssh_password='hunter2'
    )


@pytest.fixture(scope='function')
def make_backup(db, node):
    """
    Factory for Backup records.

    Completed backups get increasing created_at values (oldest first).
    """
    base = datetime(2024, 1, 1, 12, 0, 0)
    counter = {'n': 0}

    def _make(status='completed', storage_type='local', node_id=None, filename=None):
        counter['n'] += 1
        n = counter['n']
        backup = store.create_backup_record(
            node_id=node_id or node.id,
            volume_name='all-volumes',
            filename=filename or f'alpha-all-volumes-2024-01-{n:02d}T12-00-00-000Z.tar.gz',
            storage_type=storage_type,
            status=status
        )
        backup.created_at = base + timedelta(days=n)
        db.session.commit()
        return backup

    return _make


@pytest.fixture(scope='function')
def schedule(db, node):
    """Enabled nightly schedule keeping 3 local backups."""
    return store.create_schedule(
        node_id=node.id,
        name='nightly',
        cron_expression='0 3 * * *',
        storage_type='local',
        retention_count=3,
        enabled=True
    )


@pytest.fixture
def s3_settings(db):
    """S3 settings pointing at the moto bucket."""
    store.set_setting('s3_bucket', 'test-bucket')
    store.set_setting('s3_region', 'us-east-1')
    store.set_setting('s3_access_key', 'testing')
    store.set_setting('s3_secret_key', 'testing')


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SSH/SFTP testing.

    Returns a MagicMock that simulates SSH connections.
    """
    with patch('paramiko.SSHClient') as mock_ssh:
        # Mock SFTP client
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp

        # Mock connection success
        mock_ssh.return_value.connect.return_value = None

        yield mock_ssh


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - test_file1.txt
    - test_file2.log
    - nested/test_file3.txt
    """
    source = tmp_path / 'source'
    source.mkdir()
    (source / 'test_file1.txt').write_text('Test content 1')
    (source / 'test_file2.log').write_text('Test log content')

    nested_dir = source / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    return source


@pytest.fixture
def sample_archive(tmp_path):
    """
    Create a sample archive file for testing.
    """
    import tarfile

    test_dir = tmp_path / 'test_data'
    test_dir.mkdir()
    (test_dir / 'file1.txt').write_text('Content 1')
    (test_dir / 'file2.txt').write_text('Content 2')

    archive_path = tmp_path / 'test_archive.tar.gz'
    with tarfile.open(archive_path, 'w:gz') as tar:
        tar.add(test_dir, arcname='test_data')

    return archive_path
