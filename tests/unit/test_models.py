"""
Unit tests for models and the record store (volvault/models.py, volvault/store.py).
"""

import pytest

from volvault import store
from volvault.exceptions import NotFound


class TestNode:

    def test_to_dict_redacts_password(self, password_node):
        data = password_node.to_dict()

        assert data['has_password'] is True
        assert 'ssh_password' not in data
        assert data['status'] == 'unknown'

    def test_update_node(self, node):
        store.update_node(node.id, host='10.0.0.9')

        assert store.get_node(node.id).host == '10.0.0.9'

    def test_update_unknown_field_rejected(self, node):
        with pytest.raises(ValueError):
            store.update_node(node.id, is_admin=True)

    def test_update_missing(self, db):
        with pytest.raises(NotFound):
            store.update_node(999, host='x')

    def test_update_status(self, node):
        store.update_node_status(node.id, 'online')

        db_node = store.get_node(node.id)
        assert db_node.status == 'online'

    def test_delete_keeps_backups_drops_schedules(self, node, schedule, make_backup):
        backup = make_backup()

        store.delete_node(node.id)

        assert store.get_node(node.id) is None
        assert store.list_schedules_by_node(node.id) == []
        assert store.get_backup(backup.id).to_dict()['node_name'] is None

    def test_list_sorted_by_name(self, node, password_node):
        assert [n.name for n in store.list_nodes()] == ['alpha', 'beta']

    def test_repr(self, node):
        assert repr(node) == '<Node alpha host=alpha.example.com auth=key>'


class TestBackupRecords:

    def test_create_defaults(self, node):
        backup = store.create_backup_record(
            node_id=node.id, volume_name='vol1', filename='x.tar.gz', storage_type='local'
        )

        assert backup.status == 'running'
        assert backup.progress == 0
        assert backup.size == 0
        assert backup.to_dict()['node_name'] == 'alpha'

    def test_fail_resets_progress_and_locator(self, make_backup):
        backup = make_backup(status='running')
        store.update_backup(backup.id, progress=85, storage_path='/tmp/x')

        store.fail(backup.id, 'upload failed')

        failed = store.get_backup(backup.id)
        assert failed.status == 'failed'
        assert failed.progress == 0
        assert failed.storage_path is None
        assert failed.error_message == 'upload failed'
        assert failed.completed_at is not None

    def test_list_completed_newest_first(self, make_backup):
        first = make_backup()
        make_backup(status='failed')
        third = make_backup()
        make_backup(storage_type='cloud')

        completed = store.list_completed_by_node_and_storage(first.node_id, 'local')

        assert [b.id for b in completed] == [third.id, first.id]

    def test_list_running(self, make_backup):
        make_backup()
        running = make_backup(status='running')

        assert [b.id for b in store.list_running()] == [running.id]

    def test_logs_in_order_and_deleted_with_record(self, make_backup):
        backup = make_backup()
        store.add_log(backup.id, 'info', 'one')
        store.add_log(backup.id, 'error', 'two')

        assert [(e.level, e.message) for e in store.get_logs(backup.id)] == [('info', 'one'), ('error', 'two')]

        store.delete_backup_record(backup.id)
        assert store.get_logs(backup.id) == []
        assert store.get_backup(backup.id) is None

    def test_aggregate_stats(self, make_backup):
        a = make_backup()
        make_backup(status='failed')
        make_backup(status='running')
        store.update_backup(a.id, size=2048)

        stats = store.aggregate_stats()

        assert stats == {'total': 3, 'completed': 1, 'failed': 1, 'running': 1, 'total_size': 2048}

    def test_aggregate_stats_empty(self, db):
        assert store.aggregate_stats()['total'] == 0


class TestSchedules:

    def test_defaults(self, node):
        schedule = store.create_schedule(
            node_id=node.id, name='daily', cron_expression='0 2 * * *', storage_type='local'
        )

        assert schedule.retention_count == 7
        assert schedule.enabled is True
        assert schedule.last_run is None

    def test_list_enabled(self, schedule, node):
        store.create_schedule(
            node_id=node.id, name='off', cron_expression='0 2 * * *',
            storage_type='local', enabled=False
        )

        assert [s.id for s in store.list_enabled_schedules()] == [schedule.id]

    def test_update_missing(self, db):
        with pytest.raises(NotFound):
            store.update_schedule(999, enabled=False)


class TestSettings:

    def test_get_default(self, db):
        assert store.get_setting('s3_bucket') is None
        assert store.get_setting('s3_region', 'us-east-1') == 'us-east-1'

    def test_set_and_overwrite(self, db):
        store.set_setting('s3_bucket', 'one')
        store.set_setting('s3_bucket', 'two')

        assert store.get_setting('s3_bucket') == 'two'
        assert store.all_settings() == {'s3_bucket': 'two'}

    def test_empty_value_is_unset(self, db):
        store.set_setting('sftp_path', '')

        assert store.get_setting('sftp_path', '/') == '/'
