"""
Unit tests for the schedule registry (volvault/scheduler.py).

Tests timer registration, replacement and removal, firing behaviour and
manual runs.
"""

from unittest.mock import MagicMock, PropertyMock, patch

import pytest
from apscheduler.schedulers.background import BackgroundScheduler
from freezegun import freeze_time

from volvault import store
from volvault.exceptions import NotFound
from volvault.scheduler import ScheduleRegistry, get_registry, parse_cron, run_schedule


@pytest.fixture
def registry(app):
    """Registry on an unstarted scheduler (jobs stay pending)."""
    registry = ScheduleRegistry(scheduler=BackgroundScheduler(timezone='UTC')).init(app)
    yield registry
    registry.stop_all()


class TestParseCron:

    def test_valid(self):
        assert parse_cron('*/15 * * * *') is not None

    @pytest.mark.parametrize('expression', ['not a cron', '99 * * * *', '* * *', ''])
    def test_invalid_returns_none(self, expression):
        assert parse_cron(expression) is None


class TestScheduleRegistry:
    """Test timer bookkeeping."""

    def test_add_job(self, db, registry, schedule):
        job = registry.add_job(schedule)

        assert job is not None
        assert job.id == f'schedule_{schedule.id}'
        assert registry.has_job(schedule.id)
        assert len(registry.scheduler.get_jobs()) == 1

    def test_add_job_replaces_existing(self, db, registry, schedule):
        registry.add_job(schedule)
        schedule = store.update_schedule(schedule.id, cron_expression='30 1 * * *')

        job = registry.add_job(schedule)

        jobs = registry.scheduler.get_jobs()
        assert len(jobs) == 1
        assert jobs[0] is job
        assert 'minute=\'30\'' in str(job.trigger)

    def test_invalid_cron_leaves_no_timer(self, db, registry, schedule):
        registry.add_job(schedule)
        schedule = store.update_schedule(schedule.id, cron_expression='every day')

        assert registry.add_job(schedule) is None
        assert not registry.has_job(schedule.id)
        assert registry.scheduler.get_jobs() == []

    def test_disabled_schedule_not_registered(self, db, registry, schedule):
        schedule = store.update_schedule(schedule.id, enabled=False)

        assert registry.add_job(schedule) is None
        assert not registry.has_job(schedule.id)

    def test_remove_job(self, db, registry, schedule):
        registry.add_job(schedule)

        registry.remove_job(schedule.id)

        assert not registry.has_job(schedule.id)
        assert registry.scheduler.get_jobs() == []

    def test_remove_unknown_job_is_noop(self, registry):
        registry.remove_job(42)

    def test_load_enabled(self, db, registry, node, schedule):
        store.create_schedule(
            node_id=node.id, name='disabled', cron_expression='0 4 * * *',
            storage_type='local', retention_count=2, enabled=False
        )
        store.create_schedule(
            node_id=node.id, name='broken', cron_expression='bad',
            storage_type='local', retention_count=2, enabled=True
        )

        assert registry.load_enabled() == 1
        assert registry.has_job(schedule.id)

    def test_get_jobs(self, db, registry, schedule):
        registry.add_job(schedule)

        jobs = registry.get_jobs()

        assert len(jobs) == 1
        assert jobs[0]['schedule_id'] == schedule.id
        assert jobs[0]['name'] == 'Backup: nightly'

    def test_get_jobs_tolerates_concurrent_removal(self, registry):
        """Test a timer removed while jobs are being listed."""
        first, second = MagicMock(id='schedule_1'), MagicMock(id='schedule_2')
        first.name, second.name = 'Backup: one', 'Backup: two'

        def remove_second():
            registry._jobs.pop(2, None)
            return None

        type(first).next_run_time = PropertyMock(side_effect=remove_second)
        second.next_run_time = None
        registry._jobs.update({1: first, 2: second})

        jobs = registry.get_jobs()

        assert [job['schedule_id'] for job in jobs] == [1, 2]
        assert not registry.has_job(2)

    def test_stop_all(self, db, app, schedule):
        registry = ScheduleRegistry(scheduler=BackgroundScheduler(timezone='UTC')).init(app)
        registry.start()
        assert registry.scheduler.running
        assert registry.has_job(schedule.id)

        registry.stop_all()

        assert registry.get_jobs() == []
        assert not registry.scheduler.running

    def test_start_requires_init(self):
        with pytest.raises(RuntimeError):
            ScheduleRegistry().start()

    def test_app_registry_extension(self, app):
        assert isinstance(get_registry(app), ScheduleRegistry)

    def test_default_scheduler_job_defaults(self, app):
        registry = ScheduleRegistry().init(app)

        assert isinstance(registry.scheduler, BackgroundScheduler)
        assert registry.scheduler._job_defaults['max_instances'] == 1
        assert registry.scheduler._job_defaults['coalesce'] is True
        assert registry.scheduler._job_defaults['misfire_grace_time'] == 300


class TestFire:
    """Test what happens when a timer fires."""

    @freeze_time('2024-05-01 03:00:00')
    def test_fire_runs_backup_updates_last_run_and_prunes(self, db, registry, schedule):
        with patch('volvault.scheduler.create_backup', return_value=7) as mock_create, \
                patch('volvault.scheduler.apply_retention') as mock_retention:
            registry._fire(schedule.id)

        options = mock_create.call_args.args[0]
        assert options.node_id == schedule.node_id
        assert options.storage_type == 'local'
        assert options.volume_name == 'all-volumes'
        mock_retention.assert_called_once_with(schedule.node_id, 'local', 3)

        db.session.expire_all()
        assert store.get_schedule(schedule.id).last_run.isoformat() == '2024-05-01T03:00:00'

    def test_fire_prunes_to_retention_count(self, db, registry, schedule, make_backup):
        """Test 5 completed runs with retention 3 leave the 3 newest."""
        backups = [make_backup() for _ in range(5)]

        with patch('volvault.scheduler.create_backup', return_value=backups[-1].id):
            registry._fire(schedule.id)

        db.session.expire_all()
        remaining = store.list_completed_by_node_and_storage(schedule.node_id, 'local')
        assert [b.id for b in remaining] == [b.id for b in reversed(backups[2:])]

    def test_fire_skips_disabled(self, db, registry, schedule):
        store.update_schedule(schedule.id, enabled=False)

        with patch('volvault.scheduler.create_backup') as mock_create:
            registry._fire(schedule.id)

        mock_create.assert_not_called()

    def test_fire_skips_deleted(self, db, registry, schedule):
        schedule_id = schedule.id
        store.delete_schedule(schedule_id)

        with patch('volvault.scheduler.create_backup') as mock_create:
            registry._fire(schedule_id)

        mock_create.assert_not_called()

    def test_fire_swallows_errors(self, db, registry, schedule):
        with patch('volvault.scheduler.create_backup', side_effect=RuntimeError('boom')), \
                patch('volvault.scheduler.apply_retention') as mock_retention:
            registry._fire(schedule.id)

        mock_retention.assert_not_called()
        db.session.expire_all()
        assert store.get_schedule(schedule.id).last_run is None


class TestRunNow:

    def test_run_now_returns_backup_id(self, db, registry, schedule):
        with patch('volvault.scheduler.create_backup', return_value=11), \
                patch('volvault.scheduler.apply_retention'):
            assert registry.run_now(schedule.id) == 11

    def test_run_now_runs_disabled_schedule(self, db, registry, schedule):
        store.update_schedule(schedule.id, enabled=False)

        with patch('volvault.scheduler.create_backup', return_value=3) as mock_create, \
                patch('volvault.scheduler.apply_retention'):
            registry.run_now(schedule.id)

        mock_create.assert_called_once()

    def test_run_now_unknown(self, db, registry):
        with pytest.raises(NotFound):
            registry.run_now(999)

    def test_run_schedule_propagates_errors(self, db, schedule):
        with patch('volvault.scheduler.create_backup', side_effect=RuntimeError('boom')):
            with pytest.raises(RuntimeError):
                run_schedule(schedule)
