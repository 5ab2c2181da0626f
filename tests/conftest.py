"""
Shared pytest fixtures for Burrow tests.

This module provides fixtures for:
- Encryption keys and an initialized CryptoManager
- Service trees, settings and local storage backends
- A wired executor, retention manager and runner
- Flask app and test client
- Mock fixtures for external services (S3, SSH, Docker, scheduler)
"""

import os
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from burrow import create_app
from burrow.backup.executor import BackupExecutor
from burrow.backup.retention import RetentionManager
from burrow.backup.storage import LocalStorage
from burrow.history import RunHistory
from burrow.models import BackendSettings, Service, Settings
from burrow.runner import Runner
from burrow.utils.crypto import CryptoManager, EncryptionKey, KEY_SIZE, SALT_SIZE


API_TOKEN = 'test-api-token'


@pytest.fixture
def encryption_key():
    """
    Random key material.

    Skips the Argon2id derivation, which is tested separately.
    """
    return EncryptionKey(key=os.urandom(KEY_SIZE), salt=os.urandom(SALT_SIZE))


@pytest.fixture
def crypto_manager(encryption_key):
    """CryptoManager holding a random key."""
    return CryptoManager(encryption_key)


@pytest.fixture
def service_tree(tmp_path):
    """
    Create a service directory with files that should and should not be archived.

    Creates:
    - config.yml
    - data/app.db
    - data/cache/tmp.bin (excluded via '**/cache/**')
    - link -> config.yml (symlink)
    """
    root = tmp_path / 'srv' / 'app'
    (root / 'data' / 'cache').mkdir(parents=True)
    (root / 'config.yml').write_text('setting: true\n')
    (root / 'data' / 'app.db').write_bytes(b'\x00\x01database\x02' * 64)
    (root / 'data' / 'cache' / 'tmp.bin').write_bytes(b'scratch')
    os.symlink('config.yml', root / 'link')
    return root


@pytest.fixture
def make_settings(tmp_path):
    """Factory building Settings for a set of services."""
    def _make(services, retain_backups=7, backends=None):
        return Settings(
            key_file=str(tmp_path / 'key'),
            services={s.name: s for s in services},
            retain_backups=retain_backups,
            backends=backends or [],
        )
    return _make


@pytest.fixture
def app_service(service_tree):
    return Service(name='app', path=str(service_tree), exclude=('**/cache/**',))


@pytest.fixture
def local_backends(tmp_path):
    """Two local directory backends, primary first."""
    return [
        LocalStorage('primary', str(tmp_path / 'store' / 'primary')),
        LocalStorage('secondary', str(tmp_path / 'store' / 'secondary')),
    ]


@pytest.fixture
def executor(make_settings, app_service, crypto_manager, local_backends, tmp_path):
    """Executor backing up the 'app' service to two local backends."""
    settings = make_settings([app_service])
    return BackupExecutor(
        settings,
        crypto_manager,
        local_backends,
        staging_dir=str(tmp_path / 'staging')
    )


@pytest.fixture
def burrow_runner(executor, local_backends):
    retention = RetentionManager(executor.settings, local_backends)
    return Runner(executor, retention, RunHistory())


@pytest.fixture(scope='function')
def app(burrow_runner):
    """
    Create Flask app with test configuration.

    The scheduler is disabled and the runner is injected, so no config file
    or key file is read.
    """
    app = create_app('testing', runner=burrow_runner)
    app.config.update({
        'TESTING': True,
        'API_TOKEN': API_TOKEN,
    })
    yield app


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture
def auth_headers():
    return {'X-API-Token': API_TOKEN}


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        # Create mock S3 resource
        s3 = boto3.resource('s3', region_name='us-east-1')

        # Create test bucket
        s3.create_bucket(Bucket='test-bucket')

        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP testing.

    Returns a MagicMock that simulates SSH connections.
    """
    with patch('burrow.backup.storage.SSHClient') as mock_ssh:
        # Mock SFTP client
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp

        # Mock connection success
        mock_ssh.return_value.connect.return_value = None

        yield mock_ssh


@pytest.fixture
def docker_client():
    """
    MagicMock standing in for docker.DockerClient.

    Each container keeps a State dict the test can adjust; stop() and start()
    flip State.Running the way the daemon would.
    """
    client = MagicMock()
    containers = {}

    def add(name, running=True, health=None, exit_code=0):
        container = MagicMock()
        container.name = name
        state = {'Running': running, 'ExitCode': exit_code}
        if health is not None:
            state['Health'] = {'Status': health}
        container.attrs = {'State': state}

        def stop(timeout=None):
            state['Running'] = False

        def start():
            state['Running'] = True

        container.stop.side_effect = stop
        container.start.side_effect = start
        containers[name] = container
        return container

    def get(name):
        from docker.errors import NotFound
        if name not in containers:
            raise NotFound(f"No such container: {name}")
        return containers[name]

    client.containers.get.side_effect = get
    client.add_container = add
    return client


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('burrow.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        # Mock scheduler methods
        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance
