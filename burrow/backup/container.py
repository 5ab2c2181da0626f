"""
Container lifecycle control around backups and restores.

A bound container is stopped before its data is read or overwritten and
started again afterwards:

    Running -> Stopping -> Stopped          (quiesce)
    Stopped -> Starting -> Healthy|Running  (resume)

Every wait is bounded by an overall timeout and wakes early when the shared
cancellation event is set.
"""

import logging
import threading
import time
from contextlib import contextmanager
from enum import Enum
from typing import Callable, Dict, Optional

import docker
from docker.errors import DockerException, NotFound

from .cancellation import OperationCancelled, check_cancelled, wait


STOP_GRACE_SECONDS = 30
OPERATION_TIMEOUT = 120  # seconds
POLL_INTERVAL = 0.1  # seconds
HEALTH_POLL_INTERVAL = 1.0  # seconds


class LifecycleError(Exception):
    """Raised when a container cannot be stopped, started, or inspected."""
    pass


class ContainerState(str, Enum):
    RUNNING = 'running'
    STOPPING = 'stopping'
    STOPPED = 'stopped'
    STARTING = 'starting'
    HEALTHY = 'healthy'


def create_docker_client():
    """
    Connect to the Docker daemon using the standard environment variables.

    Raises:
        LifecycleError: If the daemon is unreachable
    """
    try:
        return docker.from_env()
    except DockerException as e:
        raise LifecycleError(f"Failed to create Docker client: {e}") from e


class ContainerController:
    """
    Drives named containers through stop and start transitions.
    """

    def __init__(
        self,
        client,
        logger: Optional[logging.Logger] = None,
        cancel_event: Optional[threading.Event] = None,
        stop_grace: int = STOP_GRACE_SECONDS,
        poll_interval: float = POLL_INTERVAL,
        health_poll_interval: float = HEALTH_POLL_INTERVAL,
        timeout: float = OPERATION_TIMEOUT
    ):
        """
        Initialize the controller.

        Args:
            client: docker.DockerClient (or compatible)
            logger: Logger for progress messages
            cancel_event: Shared cancellation event
            stop_grace: Seconds a container gets to shut down gracefully
            poll_interval: Seconds between state polls
            health_poll_interval: Seconds between health polls
            timeout: Overall bound for each stop or start, in seconds
        """
        self.client = client
        self.logger = logger or logging.getLogger(__name__)
        self.cancel_event = cancel_event
        self.stop_grace = stop_grace
        self.poll_interval = poll_interval
        self.health_poll_interval = health_poll_interval
        self.timeout = timeout
        self.states: Dict[str, ContainerState] = {}

    def _set_state(self, name: str, state: ContainerState):
        self.states[name] = state
        self.logger.debug(f"Container {name}: {state.value}")

    def _get(self, name: str):
        try:
            return self.client.containers.get(name)
        except NotFound as e:
            raise LifecycleError(f"Container not found: {name}") from e
        except DockerException as e:
            raise LifecycleError(f"Failed to inspect container {name}: {e}") from e

    def inspect_state(self, name: str) -> dict:
        """
        Return the container's State block (Running, ExitCode, Health, ...).

        Raises:
            LifecycleError: If the container is missing or the daemon fails
        """
        return self._get(name).attrs.get('State') or {}

    def validate(self, name: str):
        """Check that a container exists and can be inspected."""
        self.inspect_state(name)

    def _poll(self, name: str, deadline: float, interval: float, done: Callable[[dict], bool], what: str):
        while True:
            check_cancelled(self.cancel_event, f"waiting for container {name} to {what}")
            if done(self.inspect_state(name)):
                return
            if time.monotonic() >= deadline:
                raise LifecycleError(f"Timeout waiting for container {name} to {what}")
            if wait(self.cancel_event, interval):
                raise OperationCancelled(f"Cancelled while waiting for container {name} to {what}")

    def stop(self, name: str):
        """
        Stop a container and wait until it reports not running.

        Raises:
            LifecycleError: On inspection failure or timeout
            OperationCancelled: If cancellation was requested
        """
        check_cancelled(self.cancel_event, f"stopping container {name}")
        deadline = time.monotonic() + self.timeout

        self.logger.info(f"Stopping container: {name}")
        container = self._get(name)
        self._set_state(name, ContainerState.STOPPING)
        try:
            container.stop(timeout=self.stop_grace)
        except DockerException as e:
            raise LifecycleError(f"Failed to stop container {name}: {e}") from e

        self._poll(name, deadline, self.poll_interval, lambda s: not s.get('Running'), 'stop')

        self._set_state(name, ContainerState.STOPPED)
        self.logger.info(f"Container {name} stopped")

    def start(self, name: str) -> ContainerState:
        """
        Start a container and wait until it is healthy (or running, without a health check).

        The start request is always issued; only the waiting honours cancellation.

        Returns:
            ContainerState.HEALTHY or ContainerState.RUNNING

        Raises:
            LifecycleError: If the container turns unhealthy, exits nonzero, or times out
            OperationCancelled: If cancellation was requested while waiting
        """
        deadline = time.monotonic() + self.timeout

        self.logger.info(f"Starting container: {name}")
        container = self._get(name)
        self._set_state(name, ContainerState.STARTING)
        try:
            container.start()
        except DockerException as e:
            raise LifecycleError(f"Failed to start container {name}: {e}") from e

        if self.inspect_state(name).get('Health'):
            self.logger.info(f"Waiting for container {name} to be healthy")

            def healthy(state: dict) -> bool:
                status = (state.get('Health') or {}).get('Status')
                if status == 'unhealthy':
                    raise LifecycleError(f"Container {name} is unhealthy after start")
                return status == 'healthy'

            self._poll(name, deadline, self.health_poll_interval, healthy, 'become healthy')
            result = ContainerState.HEALTHY
        else:
            def running(state: dict) -> bool:
                if state.get('Running'):
                    return True
                exit_code = state.get('ExitCode') or 0
                if exit_code != 0:
                    raise LifecycleError(f"Container {name} failed to start (exit code: {exit_code})")
                return False

            self._poll(name, deadline, self.poll_interval, running, 'start')
            result = ContainerState.RUNNING

        self._set_state(name, result)
        self.logger.info(f"Container {name} is {result.value}")
        return result

    @contextmanager
    def quiesced(self, name: str):
        """
        Keep a container stopped for the duration of the block.

        The container is started again on every exit path, including a stop
        that timed out or was cancelled half way. If anything failed before
        the restart, a failing restart is logged and the original error wins.
        """
        try:
            self.stop(name)
            yield
        except BaseException:
            self._resume_best_effort(name)
            raise
        else:
            self.start(name)

    def _resume_best_effort(self, name: str):
        try:
            self.start(name)
        except Exception as e:
            self.logger.error(f"Failed to resume container {name} after error: {e}")
