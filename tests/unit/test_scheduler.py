"""
Unit tests for scheduler (burrow/scheduler.py).

Tests APScheduler configuration and per-service job scheduling.
"""

from unittest.mock import MagicMock, patch

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from burrow import scheduler as scheduler_module
from burrow.config import ConfigError
from burrow.models import Service


@pytest.fixture
def scheduled_app(app, burrow_runner, make_settings, service_tree):
    """App whose runner has one scheduled and one unscheduled service."""
    burrow_runner.executor.settings = make_settings([
        Service(name='app', path=str(service_tree), schedule='0 2 * * *'),
        Service(name='manual', path=str(service_tree)),
    ])
    return app


class TestSchedulerInitialization:
    """Test scheduler initialization."""

    def teardown_method(self):
        """Clean up after each test."""
        # Reset global scheduler
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None

    @patch('burrow.scheduler.BackgroundScheduler')
    def test_init_scheduler(self, mock_scheduler_class, app):
        """Test scheduler initialization."""
        mock_scheduler = MagicMock()
        mock_scheduler_class.return_value = mock_scheduler

        result = scheduler_module.init_scheduler(app)

        assert result == mock_scheduler
        assert scheduler_module.scheduler == mock_scheduler
        assert scheduler_module.flask_app == app

        # Verify scheduler was configured correctly
        call_kwargs = mock_scheduler_class.call_args[1]
        assert 'executors' in call_kwargs
        assert call_kwargs['job_defaults']['coalesce'] is True
        assert call_kwargs['job_defaults']['max_instances'] == 1
        assert call_kwargs['timezone'] == 'UTC'

    @patch('burrow.scheduler.BackgroundScheduler')
    def test_init_scheduler_only_once(self, mock_scheduler_class, app):
        """Test scheduler is only initialized once."""
        mock_scheduler_class.return_value = MagicMock()

        result1 = scheduler_module.init_scheduler(app)
        result2 = scheduler_module.init_scheduler(app)

        assert result1 == result2
        mock_scheduler_class.assert_called_once()


class TestSchedulerLifecycle:
    """Test scheduler start/stop operations."""

    def setup_method(self):
        """Set up before each test."""
        self.mock_scheduler = MagicMock()
        self.mock_scheduler.running = False
        self.mock_scheduler.state = 0
        self.mock_scheduler.get_jobs.return_value = []
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None

    def test_start_scheduler(self):
        scheduler_module.start_scheduler()
        self.mock_scheduler.start.assert_called_once()

    def test_start_scheduler_already_running(self):
        self.mock_scheduler.running = True
        scheduler_module.start_scheduler()
        self.mock_scheduler.start.assert_not_called()

    def test_start_scheduler_not_initialized(self):
        scheduler_module.scheduler = None
        with pytest.raises(RuntimeError, match='not initialized'):
            scheduler_module.start_scheduler()

    def test_stop_scheduler_sets_cancel_event(self, app, burrow_runner):
        """Test that stopping cancels in-flight work before shutting down."""
        scheduler_module.flask_app = app
        self.mock_scheduler.running = True

        scheduler_module.stop_scheduler()

        assert burrow_runner.cancel_event.is_set()
        self.mock_scheduler.shutdown.assert_called_once()

    def test_is_scheduler_running(self):
        assert scheduler_module.is_scheduler_running() is False
        self.mock_scheduler.running = True
        assert scheduler_module.is_scheduler_running() is True


class TestJobSync:
    """Test syncing services to scheduler jobs."""

    def setup_method(self):
        self.mock_scheduler = MagicMock()
        self.mock_scheduler.get_jobs.return_value = []
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None

    def test_sync_adds_cron_job_per_scheduled_service(self, scheduled_app):
        scheduler_module.flask_app = scheduled_app

        scheduler_module.sync_service_jobs()

        self.mock_scheduler.add_job.assert_called_once()
        kwargs = self.mock_scheduler.add_job.call_args.kwargs
        assert kwargs['id'] == 'backup_app'
        assert kwargs['args'] == ['app']
        assert isinstance(kwargs['trigger'], CronTrigger)

    def test_sync_removes_orphaned_jobs(self, scheduled_app):
        scheduler_module.flask_app = scheduled_app
        orphan = MagicMock()
        orphan.id = 'backup_removed'
        self.mock_scheduler.get_jobs.return_value = [orphan]

        scheduler_module.sync_service_jobs()

        self.mock_scheduler.remove_job.assert_called_once_with('backup_removed')

    def test_sync_invalid_schedule(self, app, burrow_runner, make_settings, service_tree):
        burrow_runner.executor.settings = make_settings([
            Service(name='bad', path=str(service_tree), schedule='every day')
        ])
        scheduler_module.flask_app = app

        with pytest.raises(ConfigError, match='Invalid schedule'):
            scheduler_module.sync_service_jobs()

    def test_trigger_backup_now(self, scheduled_app):
        scheduler_module.flask_app = scheduled_app

        job_id = scheduler_module.trigger_backup_now('app')

        kwargs = self.mock_scheduler.add_job.call_args.kwargs
        assert job_id.startswith('manual_app_')
        assert kwargs['args'] == ['app']
        assert isinstance(kwargs['trigger'], DateTrigger)

    def test_trigger_unknown_service(self, scheduled_app):
        scheduler_module.flask_app = scheduled_app

        with pytest.raises(ConfigError):
            scheduler_module.trigger_backup_now('ghost')


class TestJobExecution:
    """Test the scheduled job wrapper."""

    def teardown_method(self):
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None

    def test_wrapper_runs_backup_then_cleanup(self, app, burrow_runner):
        """Test that a scheduled run records a backup and a cleanup."""
        scheduler_module.flask_app = app

        scheduler_module._execute_backup_wrapper('app')

        kinds = [(r.kind, r.status) for r in burrow_runner.history.recent()]
        assert kinds == [('cleanup', 'success'), ('backup', 'success')]

    def test_wrapper_logs_failure(self, app, burrow_runner):
        """Test that a failing backup is recorded and not raised."""
        scheduler_module.flask_app = app

        scheduler_module._execute_backup_wrapper('ghost')

        record = burrow_runner.history.recent()[0]
        assert record.status == 'failed'
        assert 'Service not found' in record.error_message
