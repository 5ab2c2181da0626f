import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple


# Exchange format for artifact modification times across every backend
MOD_TIME_FORMAT = '%Y-%m-%d %H:%M:%S UTC'

# Timestamp embedded in artifact names
ARTIFACT_TIME_FORMAT = '%Y-%m-%dT%H-%M-%SZ'
ARTIFACT_SUFFIX = '.enc'


@dataclass(frozen=True)
class CommandSpec:
    """Shell command run before a backup"""
    command: str
    working_dir: Optional[str] = None
    environment: Dict[str, str] = field(default_factory=dict)
    timeout: float = 300.0  # seconds


@dataclass(frozen=True)
class Service:
    """A directory tree subject to backup and restore"""
    name: str
    path: str
    exclude: Tuple[str, ...] = ()
    retain_backups: Optional[int] = None
    pre_backup: Optional[CommandSpec] = None
    container: Optional[str] = None
    schedule: Optional[str] = None  # Cron expression

    def __repr__(self):
        return f'<Service {self.name} path={self.path} container={self.container}>'


@dataclass(frozen=True)
class BackendSettings:
    """Connection descriptor for one storage backend"""
    name: str
    type: str  # 'sftp', 's3' or 'local'
    options: Dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class Settings:
    """Everything loaded from the service configuration file"""
    key_file: str
    services: Dict[str, Service]
    retain_backups: int
    backends: List[BackendSettings]

    def get_service(self, name: str) -> Optional[Service]:
        return self.services.get(name)

    def retain_count(self, service: Service) -> int:
        """Effective retention: the service override, else the global default."""
        if service.retain_backups is not None:
            return service.retain_backups
        return self.retain_backups


@dataclass(frozen=True)
class BackupFile:
    """One artifact as reported by a storage backend"""
    name: str
    size: int
    mod_time: str  # MOD_TIME_FORMAT
    backend: str = ''

    @property
    def parsed_time(self) -> datetime:
        """Modification time; unparsable values sort as the oldest possible."""
        try:
            return datetime.strptime(self.mod_time, MOD_TIME_FORMAT)
        except (TypeError, ValueError):
            return datetime.min

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'size': self.size,
            'mod_time': self.mod_time,
            'backend': self.backend,
        }


@dataclass(frozen=True)
class BackupArtifact:
    """Result of a successful backup run"""
    service: str
    name: str
    size: int
    backends: Tuple[str, ...]

    def __repr__(self):
        return f'<BackupArtifact {self.name} size={self.size} backends={list(self.backends)}>'


def artifact_name(service_name: str, when: datetime) -> str:
    """Build `<service>-<UTC timestamp>.enc`."""
    return f"{service_name}-{when.strftime(ARTIFACT_TIME_FORMAT)}{ARTIFACT_SUFFIX}"


def is_artifact_of(service_name: str, name: str) -> bool:
    """True if name is exactly an artifact of service_name, not of a service sharing its prefix."""
    pattern = rf"{re.escape(service_name)}-\d{{4}}-\d{{2}}-\d{{2}}T\d{{2}}-\d{{2}}-\d{{2}}Z{re.escape(ARTIFACT_SUFFIX)}"
    return re.fullmatch(pattern, name) is not None


@dataclass
class RunRecord:
    """Execution record for a backup, restore or cleanup run"""
    id: int
    kind: str  # backup, restore, cleanup
    service: Optional[str]
    status: str = 'running'  # running, success, failed, cancelled
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    artifact: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'kind': self.kind,
            'service': self.service,
            'status': self.status,
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'artifact': self.artifact,
            'error_message': self.error_message,
        }

    def __repr__(self):
        return f'<RunRecord {self.kind} service={self.service} status={self.status}>'
