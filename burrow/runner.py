"""
Run tracking around executor and retention operations.

Both the scheduler and the HTTP API go through a Runner so every backup,
restore and cleanup leaves a RunRecord behind.
"""

import logging
import threading
from typing import Dict, Optional

from burrow.backup.cancellation import OperationCancelled
from burrow.backup.executor import BackupExecutor
from burrow.backup.retention import RetentionError, RetentionManager
from burrow.history import RunHistory
from burrow.models import BackupArtifact


class Runner:
    """
    Executes operations and records their outcome in the run history.
    """

    def __init__(
        self,
        executor: BackupExecutor,
        retention: RetentionManager,
        history: Optional[RunHistory] = None,
        cancel_event: Optional[threading.Event] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.executor = executor
        self.retention = retention
        self.history = history or RunHistory()
        self.cancel_event = cancel_event or threading.Event()
        self.logger = logger or logging.getLogger(__name__)

    @property
    def settings(self):
        return self.executor.settings

    def _tracked(self, kind: str, service: Optional[str], operation, artifact: Optional[str] = None):
        record = self.history.start(kind, service)
        try:
            result = operation()
        except OperationCancelled as e:
            self.history.finish(record, 'cancelled', artifact=artifact, error_message=str(e))
            raise
        except Exception as e:
            self.history.finish(record, 'failed', artifact=artifact, error_message=str(e))
            raise

        if isinstance(result, BackupArtifact):
            artifact = result.name
        self.history.finish(record, 'success', artifact=artifact)
        return result

    def backup(self, service_name: str) -> BackupArtifact:
        """Back up a service and record the run."""
        return self._tracked('backup', service_name, lambda: self.executor.create_backup(service_name))

    def restore(self, service_name: str, artifact: str):
        """Restore an artifact and record the run."""
        return self._tracked(
            'restore',
            service_name,
            lambda: self.executor.restore_backup(service_name, artifact),
            artifact=artifact
        )

    def cleanup(self, service_name: Optional[str] = None) -> Dict[str, Dict[str, int]]:
        """Enforce retention and record the run."""
        return self._tracked('cleanup', service_name, lambda: self.retention.cleanup_backups(service_name))

    def backup_and_cleanup(self, service_name: str) -> BackupArtifact:
        """
        Scheduled unit of work: back up, then enforce retention for the service.

        Cleanup only runs after a successful backup. A failed cleanup is logged
        and recorded but does not undo the backup.
        """
        artifact = self.backup(service_name)
        try:
            self.cleanup(service_name)
        except RetentionError as e:
            self.logger.error(f"Retention after backup of {service_name} failed: {e}")
        return artifact

    def close(self):
        self.executor.close()
