"""
Retention policy enforcement for backups.

Keeps the newest N artifacts of each service on each backend and deletes
the rest. N comes from the service's retain_backups, else the global default.
"""

import logging
from typing import Dict, List, Optional, Sequence

from burrow.config import ConfigError
from burrow.models import Service, Settings, is_artifact_of
from .storage import ArtifactNotFoundError, StorageBackend, StorageError


class RetentionError(Exception):
    """
    Raised when one or more backends could not be cleaned up.

    Carries the deletions that did happen alongside the failures.
    """

    def __init__(self, deleted: Dict[str, Dict[str, int]], errors: List[str]):
        super().__init__(f"Retention cleanup finished with {len(errors)} error(s): {'; '.join(errors)}")
        self.deleted = deleted
        self.errors = errors


class RetentionManager:
    """
    Manages retention policy enforcement across all backends.
    """

    def __init__(
        self,
        settings: Settings,
        backends: Sequence[StorageBackend],
        logger: Optional[logging.Logger] = None
    ):
        self.settings = settings
        self.backends = list(backends)
        self.logger = logger or logging.getLogger(__name__)

    def cleanup_backups(self, service_filter: Optional[str] = None) -> Dict[str, Dict[str, int]]:
        """
        Enforce retention for every service, or only the named one.

        Args:
            service_filter: Service name to restrict cleanup to

        Returns:
            {service: {backend: deleted_count}}

        Raises:
            ConfigError: If service_filter names an unknown service
            RetentionError: If any backend failed; carries the partial counts
        """
        if service_filter is not None:
            service = self.settings.get_service(service_filter)
            if service is None:
                raise ConfigError(f"Service not found: {service_filter}")
            services = [service]
        else:
            services = sorted(self.settings.services.values(), key=lambda s: s.name)

        deleted = {}
        errors = []

        for service in services:
            keep = self.settings.retain_count(service)
            self.logger.info(f"Enforcing retention for {service.name}: keeping {keep} per backend")
            deleted[service.name] = {}

            for backend in self.backends:
                count, error = self._cleanup_backend(service, backend, keep)
                deleted[service.name][backend.name] = count
                if error:
                    errors.append(error)

        total = sum(sum(per_backend.values()) for per_backend in deleted.values())
        self.logger.info(f"Retention enforcement complete. Deleted: {total}, Errors: {len(errors)}")

        if errors:
            raise RetentionError(deleted, errors)
        return deleted

    def _cleanup_backend(self, service: Service, backend: StorageBackend, keep: int):
        """
        Delete the service's artifacts beyond the newest `keep` on one backend.

        Returns:
            (deleted_count, error message or None)
        """
        deleted = 0
        try:
            files = [f for f in backend.list(f"{service.name}-") if is_artifact_of(service.name, f.name)]
        except StorageError as e:
            error_msg = f"Failed to list {service.name} backups on {backend.name}: {e}"
            self.logger.error(error_msg)
            return deleted, error_msg

        files.sort(key=lambda f: f.parsed_time, reverse=True)

        for backup_file in files[keep:]:
            try:
                backend.delete(backup_file.name)
            except ArtifactNotFoundError:
                self.logger.debug(f"Already gone from {backend.name}: {backup_file.name}")
                continue
            except StorageError as e:
                error_msg = f"Failed to delete {backup_file.name} from {backend.name}: {e}"
                self.logger.error(error_msg)
                return deleted, error_msg

            deleted += 1
            self.logger.info(f"Deleted old backup from {backend.name}: {backup_file.name}")

        return deleted, None
