"""
Backup executor - orchestrates the backup and restore workflows.

Backup workflow:
1. Resolve the service
2. Run the pre-backup command (if configured)
3. Stop the bound container (if any)
4. Create the compressed archive
5. Encrypt it
6. Stage the artifact in a private temp directory
7. Upload to every backend, in configured order
8. Start the container again and clean up temporary files

Restore runs the inverse: download (falling back across backends), decrypt,
stop the container, extract into the service path, start the container.
"""

import io
import logging
import os
import shutil
import tempfile
import threading
from contextlib import nullcontext
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from burrow.config import ConfigError
from burrow.models import BackupArtifact, BackupFile, Service, Settings, artifact_name, is_artifact_of
from burrow.utils.crypto import CryptoManager
from .archive import create_archive, extract_archive
from .cancellation import check_cancelled
from .commands import run_command
from .container import ContainerController, create_docker_client
from .storage import StorageBackend, StorageError, create_storage


class BackupExecutor:
    """
    Runs backups and restores for configured services.
    """

    def __init__(
        self,
        settings: Settings,
        crypto: CryptoManager,
        backends: Sequence[StorageBackend],
        containers: Optional[ContainerController] = None,
        logger: Optional[logging.Logger] = None,
        cancel_event: Optional[threading.Event] = None,
        staging_dir: Optional[str] = None
    ):
        """
        Initialize backup executor.

        Args:
            settings: Loaded service configuration
            crypto: Initialized CryptoManager
            backends: Storage backends in priority order
            containers: Controller for services bound to a container
            logger: Logger for progress messages
            cancel_event: Shared cancellation event
            staging_dir: Parent directory for temporary files (system default if None)
        """
        self.settings = settings
        self.crypto = crypto
        self.backends = list(backends)
        self.containers = containers
        self.logger = logger or logging.getLogger(__name__)
        self.cancel_event = cancel_event
        self.staging_dir = staging_dir

    def _resolve(self, service_name: str) -> Service:
        service = self.settings.get_service(service_name)
        if service is None:
            raise ConfigError(f"Service not found: {service_name}")
        return service

    def _quiesced(self, service: Service):
        """Context keeping the service's container stopped, if it has one."""
        if not service.container:
            return nullcontext()
        if self.containers is None:
            raise ConfigError(
                f"Service {service.name} is bound to container {service.container} "
                f"but no container controller is available"
            )
        return self.containers.quiesced(service.container)

    def _make_temp_dir(self, prefix: str) -> str:
        if self.staging_dir:
            os.makedirs(self.staging_dir, exist_ok=True)
        # mkdtemp creates the directory with mode 0700
        return tempfile.mkdtemp(prefix=prefix, dir=self.staging_dir)

    def _cleanup(self, temp_dir: Optional[str]):
        """Remove temporary directory and files."""
        if temp_dir and os.path.exists(temp_dir):
            try:
                shutil.rmtree(temp_dir)
            except OSError as e:
                self.logger.warning(f"Failed to cleanup temp directory {temp_dir}: {e}")

    def create_backup(self, service_name: str) -> BackupArtifact:
        """
        Back up one service to every backend.

        Args:
            service_name: Name of a configured service

        Returns:
            The uploaded artifact

        Raises:
            ConfigError: If the service is unknown
            CommandError: If the pre-backup command fails
            LifecycleError: If the container cannot be stopped or started
            ArchiveError: If the archive cannot be built
            StorageError: If an upload fails (names the backend)
            OperationCancelled: If shutdown was requested
        """
        service = self._resolve(service_name)
        self.logger.info(f"Starting backup of service: {service.name}")

        if service.pre_backup:
            check_cancelled(self.cancel_event, f"preparing backup of {service.name}")
            self.logger.info(f"Running pre-backup command for {service.name}")
            run_command(service.pre_backup, service.path, self.cancel_event, self.logger)

        name = artifact_name(service.name, datetime.now(timezone.utc))

        # The container stays stopped until the artifact is on every backend
        with self._quiesced(service):
            check_cancelled(self.cancel_event, f"archiving {service.name}")
            buffer = io.BytesIO()
            entries = create_archive(service.path, service.exclude, buffer)
            self.logger.info(
                f"Archived {len(entries)} entries from {service.path} "
                f"({buffer.tell() / 1024 / 1024:.2f} MB compressed)"
            )

            payload = self.crypto.encrypt(buffer.getvalue())
            del buffer

            temp_dir = self._make_temp_dir('burrow_backup_')
            try:
                artifact_path = os.path.join(temp_dir, name)
                with open(artifact_path, 'wb') as f:
                    f.write(payload)

                uploaded = self._upload_everywhere(artifact_path, name)
            finally:
                self._cleanup(temp_dir)

        self.logger.info(f"Backup of {service.name} complete: {name} ({len(payload)} bytes)")
        return BackupArtifact(
            service=service.name,
            name=name,
            size=len(payload),
            backends=tuple(uploaded)
        )

    def _upload_everywhere(self, artifact_path: str, name: str) -> List[str]:
        uploaded = []
        for backend in self.backends:
            check_cancelled(self.cancel_event, f"uploading {name}")
            self.logger.info(f"Uploading {name} to {backend.name}")
            try:
                backend.upload(artifact_path, name)
            except StorageError as e:
                if uploaded:
                    self.logger.warning(
                        f"Upload of {name} failed on {backend.name}; "
                        f"copies remain on: {', '.join(uploaded)}"
                    )
                raise StorageError(f"Upload of {name} to {backend.name} failed: {e}", backend.name) from e
            uploaded.append(backend.name)
        return uploaded

    def restore_backup(self, service_name: str, name: str):
        """
        Restore an artifact into the service's directory.

        Args:
            service_name: Name of a configured service
            name: Artifact name (e.g. gitea-2024-01-01T02-00-00Z.enc)

        Raises:
            ConfigError: If the service is unknown
            StorageError: If no backend could provide the artifact
            DecryptionError: If the artifact fails authentication
            ArchiveError: If extraction fails
            LifecycleError: If the container cannot be stopped or started
            OperationCancelled: If shutdown was requested
        """
        service = self._resolve(service_name)
        if not name or os.path.basename(name) != name or name in ('.', '..'):
            raise ConfigError(f"Invalid artifact name: {name!r}")
        self.logger.info(f"Restoring {name} into service {service.name}")

        temp_dir = self._make_temp_dir('burrow_restore_')
        try:
            artifact_path = os.path.join(temp_dir, name)
            self._download_any(name, artifact_path)
            with open(artifact_path, 'rb') as f:
                payload = f.read()
        finally:
            self._cleanup(temp_dir)

        plaintext = self.crypto.decrypt(payload)
        del payload

        with self._quiesced(service):
            check_cancelled(self.cancel_event, f"restoring {service.name}")
            entries = extract_archive(io.BytesIO(plaintext), service.path)

        self.logger.info(f"Restored {len(entries)} entries into {service.path}")

    def _download_any(self, name: str, local_path: str) -> str:
        """Download from the first backend that has the artifact."""
        if not self.backends:
            raise StorageError(f"No backends configured to download {name}")

        errors = []
        for backend in self.backends:
            check_cancelled(self.cancel_event, f"downloading {name}")
            try:
                backend.download(name, local_path)
                self.logger.info(f"Downloaded {name} from {backend.name}")
                return backend.name
            except StorageError as e:
                self.logger.warning(f"Download of {name} from {backend.name} failed: {e}")
                errors.append(f"{backend.name}: {e}")

        raise StorageError(f"Failed to download {name} from any backend: {'; '.join(errors)}")

    def list_backups(self, service_name: Optional[str] = None) -> Dict[str, Dict[str, List[BackupFile]]]:
        """
        List artifacts per service per backend, newest first.

        Args:
            service_name: Restrict to one service (None lists all)

        Returns:
            {service: {backend: [BackupFile, ...]}}

        Raises:
            ConfigError: If the service is unknown
            StorageError: If a backend cannot be listed
        """
        if service_name is not None:
            services = [self._resolve(service_name)]
        else:
            services = sorted(self.settings.services.values(), key=lambda s: s.name)

        listing = {}
        for service in services:
            listing[service.name] = {}
            for backend in self.backends:
                files = [f for f in backend.list(f"{service.name}-") if is_artifact_of(service.name, f.name)]
                files.sort(key=lambda f: f.parsed_time, reverse=True)
                listing[service.name][backend.name] = files
        return listing

    def close(self):
        """
        Close every backend.

        Raises:
            StorageError: Listing every backend that failed to close
        """
        errors = []
        for backend in self.backends:
            try:
                backend.close()
            except StorageError as e:
                errors.append(f"{backend.name}: {e}")
        if errors:
            raise StorageError(f"Errors closing backends: {'; '.join(errors)}")


def build_executor(
    settings: Settings,
    cancel_event: Optional[threading.Event] = None,
    logger: Optional[logging.Logger] = None,
    staging_dir: Optional[str] = None
) -> BackupExecutor:
    """
    Wire an executor from loaded settings.

    Opens the key file, creates every configured backend and, when any
    service is bound to a container, connects to the Docker daemon.

    Raises:
        CryptoError: If the key file cannot be loaded
        StorageError: If a backend descriptor is invalid
        LifecycleError: If containers are configured but Docker is unreachable
    """
    logger = logger or logging.getLogger(__name__)

    crypto = CryptoManager.from_key_file(settings.key_file)
    backends = [create_storage(backend) for backend in settings.backends]

    containers = None
    if any(service.container for service in settings.services.values()):
        containers = ContainerController(create_docker_client(), logger=logger, cancel_event=cancel_event)

    logger.info(
        f"Executor ready: {len(settings.services)} services, "
        f"backends: {', '.join(b.name for b in backends) or 'none'}"
    )
    return BackupExecutor(
        settings,
        crypto,
        backends,
        containers=containers,
        logger=logger,
        cancel_event=cancel_event,
        staging_dir=staging_dir
    )
