"""
Unit tests for container lifecycle control (burrow/backup/container.py).

Uses a MagicMock Docker client; no daemon is needed.
"""

import threading
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError

from burrow.backup.cancellation import OperationCancelled
from burrow.backup.container import ContainerController, ContainerState, LifecycleError


def _controller(client, **kwargs):
    kwargs.setdefault('poll_interval', 0.001)
    kwargs.setdefault('health_poll_interval', 0.001)
    kwargs.setdefault('timeout', 1)
    return ContainerController(client, **kwargs)


class TestStopStart:
    """Test stop and start transitions."""

    def test_stop_running_container(self, docker_client):
        container = docker_client.add_container('web')
        controller = _controller(docker_client)

        controller.stop('web')

        container.stop.assert_called_once_with(timeout=30)
        assert controller.states['web'] == ContainerState.STOPPED

    def test_stop_timeout(self, docker_client):
        """Test that a container that keeps running times out."""
        container = docker_client.add_container('web')
        container.stop.side_effect = None
        controller = _controller(docker_client, timeout=0.01)

        with pytest.raises(LifecycleError, match='Timeout'):
            controller.stop('web')

    def test_start_without_health_check(self, docker_client):
        docker_client.add_container('web', running=False)
        controller = _controller(docker_client)

        assert controller.start('web') == ContainerState.RUNNING

    def test_start_waits_for_healthy(self, docker_client):
        """Test that a health-checked container must report healthy."""
        container = docker_client.add_container('db', running=False, health='starting')
        polls = {'count': 0}
        state = container.attrs['State']

        def attrs_getter():
            polls['count'] += 1
            if polls['count'] >= 3:
                state['Health']['Status'] = 'healthy'
            return {'State': state}

        type(container).attrs = property(lambda self: attrs_getter())
        controller = _controller(docker_client)

        assert controller.start('db') == ContainerState.HEALTHY
        assert polls['count'] >= 3

    def test_start_unhealthy(self, docker_client):
        docker_client.add_container('db', running=False, health='unhealthy')
        controller = _controller(docker_client)

        with pytest.raises(LifecycleError, match='unhealthy'):
            controller.start('db')

    def test_start_exits_nonzero(self, docker_client):
        """Test that a container that exits on start is reported."""
        container = docker_client.add_container('web', running=False, exit_code=1)
        container.start.side_effect = None
        controller = _controller(docker_client)

        with pytest.raises(LifecycleError, match='exit code: 1'):
            controller.start('web')

    def test_container_not_found(self, docker_client):
        controller = _controller(docker_client)

        with pytest.raises(LifecycleError, match='not found'):
            controller.stop('ghost')

    def test_daemon_error_on_stop(self, docker_client):
        container = docker_client.add_container('web')
        container.stop.side_effect = APIError('daemon down')
        controller = _controller(docker_client)

        with pytest.raises(LifecycleError, match='Failed to stop'):
            controller.stop('web')

    def test_validate(self, docker_client):
        docker_client.add_container('web')
        controller = _controller(docker_client)

        controller.validate('web')
        with pytest.raises(LifecycleError):
            controller.validate('ghost')


class TestCancellation:
    """Test cancellation of waits."""

    def test_stop_cancelled_before_start(self, docker_client):
        container = docker_client.add_container('web')
        event = threading.Event()
        event.set()
        controller = _controller(docker_client, cancel_event=event)

        with pytest.raises(OperationCancelled):
            controller.stop('web')
        container.stop.assert_not_called()

    def test_poll_cancelled_while_waiting(self, docker_client):
        """Test that setting the event ends a poll loop early."""
        container = docker_client.add_container('web')
        container.stop.side_effect = None
        event = threading.Event()
        controller = _controller(docker_client, cancel_event=event, timeout=30, poll_interval=0.05)

        timer = threading.Timer(0.1, event.set)
        timer.start()
        try:
            with pytest.raises(OperationCancelled):
                controller.stop('web')
        finally:
            timer.cancel()


class TestQuiesced:
    """Test the stop/start context manager."""

    def test_quiesced_stops_and_starts(self, docker_client):
        container = docker_client.add_container('web')
        controller = _controller(docker_client)

        with controller.quiesced('web'):
            assert container.attrs['State']['Running'] is False

        assert container.attrs['State']['Running'] is True

    def test_quiesced_resumes_after_error(self, docker_client):
        """Test that the container is started again when the body fails."""
        container = docker_client.add_container('web')
        controller = _controller(docker_client)

        with pytest.raises(ValueError):
            with controller.quiesced('web'):
                raise ValueError('archive failed')

        container.start.assert_called_once()
        assert container.attrs['State']['Running'] is True

    def test_failed_resume_after_error_keeps_original(self, docker_client):
        """Test that the body's error wins over a failing restart."""
        container = docker_client.add_container('web')
        container.start.side_effect = APIError('cannot start')
        controller = _controller(docker_client, logger=MagicMock())

        with pytest.raises(ValueError, match='archive failed'):
            with controller.quiesced('web'):
                raise ValueError('archive failed')

        controller.logger.error.assert_called_once()

    def test_failed_resume_after_success_raises(self, docker_client):
        container = docker_client.add_container('web')
        container.start.side_effect = APIError('cannot start')
        controller = _controller(docker_client)

        with pytest.raises(LifecycleError, match='Failed to start'):
            with controller.quiesced('web'):
                pass

    def test_stop_timeout_still_resumes(self, docker_client):
        """Test that a stop that timed out is followed by a start attempt."""
        container = docker_client.add_container('web')
        container.stop.side_effect = None
        controller = _controller(docker_client, timeout=0.01)

        with pytest.raises(LifecycleError, match='Timeout'):
            with controller.quiesced('web'):
                pytest.fail('body must not run')

        container.start.assert_called_once()
