import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from burrow.models import BackendSettings, CommandSpec, Service, Settings


DEFAULT_CONFIG_DIR = os.path.join(os.path.expanduser('~'), '.config', 'burrow')
DEFAULT_COMMAND_TIMEOUT = 5 * 60  # seconds
DEFAULT_RETAIN_BACKUPS = 7

BACKEND_TYPES = ('sftp', 's3', 'local')


class ConfigError(Exception):
    """Raised when configuration is missing, invalid, or names an unknown service."""
    pass


def _env_flag(name: str, default: str = 'false') -> bool:
    return os.environ.get(name, default).lower() in ('1', 'true', 'yes')


class Config:
    """Base configuration"""

    # Service definitions and key material
    BURROW_CONFIG = os.environ.get('BURROW_CONFIG') or os.path.join(DEFAULT_CONFIG_DIR, 'config.yaml')
    BURROW_KEY_FILE = os.environ.get('BURROW_KEY_FILE')  # Overrides encryption.key_file

    # API
    API_TOKEN = os.environ.get('BURROW_API_TOKEN')

    # Logging
    VERBOSE = _env_flag('BURROW_VERBOSE')
    LOG_DIR = os.environ.get('LOG_DIR') or os.path.join(DEFAULT_CONFIG_DIR, 'logs')

    # Staging area for artifacts in flight
    TEMP_DIR = os.environ.get('TEMP_DIR') or None

    # Scheduler
    SCHEDULER_ENABLED = _env_flag('SCHEDULER_ENABLED', 'true')
    SCHEDULER_TIMEZONE = 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    VERBOSE = True

    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Test configuration - no scheduler, no files outside the test sandbox"""
    TESTING = True
    DEBUG = False
    SCHEDULER_ENABLED = False
    API_TOKEN = 'test-api-token'
    LOG_DIR = None


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


_DURATION_RE = re.compile(r'(\d+(?:\.\d+)?)(ms|h|m|s)')
_DURATION_UNITS = {'ms': 0.001, 's': 1, 'm': 60, 'h': 3600}


def parse_duration(value: Any) -> float:
    """
    Parse a duration into seconds.

    Accepts numbers (seconds) or strings such as '30s', '5m', '1h30m', '250ms'.

    Raises:
        ConfigError: If the value cannot be parsed or is not positive
    """
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}")

    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip()
        if re.fullmatch(r'\d+(\.\d+)?', text):
            seconds = float(text)
        else:
            parts = _DURATION_RE.findall(text)
            if not parts or ''.join(n + u for n, u in parts) != text:
                raise ConfigError(f"Invalid duration: {value!r}")
            seconds = sum(float(n) * _DURATION_UNITS[u] for n, u in parts)

    if seconds <= 0:
        raise ConfigError(f"Duration must be positive: {value!r}")
    return seconds


def _parse_retain(value: Any, where: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigError(f"{where}.retain_backups must be a non-negative integer, got {value!r}")
    return value


def _parse_command(data: Any, service_name: str) -> CommandSpec:
    where = f"services.{service_name}.pre_backup"
    if not isinstance(data, dict) or not data.get('command'):
        raise ConfigError(f"{where}.command is required")

    environment = data.get('environment') or {}
    if not isinstance(environment, dict):
        raise ConfigError(f"{where}.environment must be a mapping")

    timeout = data.get('timeout')
    return CommandSpec(
        command=str(data['command']),
        working_dir=data.get('working_dir') or None,
        environment={str(k): str(v) for k, v in environment.items()},
        timeout=parse_duration(timeout) if timeout is not None else float(DEFAULT_COMMAND_TIMEOUT),
    )


def _parse_service(name: str, data: Any) -> Service:
    where = f"services.{name}"
    if not isinstance(data, dict):
        raise ConfigError(f"{where} must be a mapping")
    if not data.get('path'):
        raise ConfigError(f"{where}.path is required")

    exclude = data.get('exclude') or []
    if not isinstance(exclude, list):
        raise ConfigError(f"{where}.exclude must be a list of patterns")

    # Accept both `container: name` and `docker: {container: name}`
    container = data.get('container')
    docker = data.get('docker')
    if container is None and isinstance(docker, dict):
        container = docker.get('container')

    retain = data.get('retain_backups')
    pre_backup = data.get('pre_backup')

    return Service(
        name=name,
        path=os.path.expanduser(str(data['path'])),
        exclude=tuple(str(p) for p in exclude),
        retain_backups=_parse_retain(retain, where) if retain is not None else None,
        pre_backup=_parse_command(pre_backup, name) if pre_backup else None,
        container=str(container) if container else None,
        schedule=data.get('schedule') or None,
    )


def _parse_backends(backup: Dict[str, Any]) -> List[BackendSettings]:
    raw = backup.get('backends')
    if raw is None:
        raise ConfigError("backup.backends is required")
    if not isinstance(raw, list) or not raw:
        raise ConfigError("backup.backends must be a non-empty list")

    backends = []
    seen = set()
    for index, item in enumerate(raw):
        where = f"backup.backends[{index}]"
        if not isinstance(item, dict):
            raise ConfigError(f"{where} must be a mapping")

        backend_type = item.get('type')
        if backend_type not in BACKEND_TYPES:
            raise ConfigError(f"{where}.type must be one of {list(BACKEND_TYPES)}, got {backend_type!r}")

        name = str(item.get('name') or backend_type)
        if name in seen:
            raise ConfigError(f"{where}.name duplicates backend {name!r}")
        seen.add(name)

        options = {k: v for k, v in item.items() if k not in ('name', 'type')}
        backends.append(BackendSettings(name=name, type=backend_type, options=options))

    return backends


def parse_settings(data: Any) -> Settings:
    """
    Build Settings from a parsed configuration document.

    Raises:
        ConfigError: If required keys are missing or malformed
    """
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping")

    encryption = data.get('encryption') or {}
    key_file = encryption.get('key_file') or os.path.join(DEFAULT_CONFIG_DIR, 'key')

    services_data = data.get('services') or {}
    if not isinstance(services_data, dict):
        raise ConfigError("services must be a mapping of name to service")
    services = {str(name): _parse_service(str(name), body) for name, body in services_data.items()}

    backup = data.get('backup') or {}
    if not isinstance(backup, dict):
        raise ConfigError("backup must be a mapping")
    retain = backup.get('retain_backups', DEFAULT_RETAIN_BACKUPS)

    return Settings(
        key_file=os.path.expanduser(str(key_file)),
        services=services,
        retain_backups=_parse_retain(retain, 'backup'),
        backends=_parse_backends(backup),
    )


def load_settings(path: str, key_file: Optional[str] = None) -> Settings:
    """
    Load the service configuration file.

    Args:
        path: Path to the YAML configuration
        key_file: Optional override for encryption.key_file

    Raises:
        ConfigError: If the file cannot be read or is invalid
    """
    config_path = Path(path).expanduser()
    try:
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Failed to read config file {config_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse config file {config_path}: {e}") from e

    settings = parse_settings(data)
    if key_file:
        settings = Settings(
            key_file=os.path.expanduser(key_file),
            services=settings.services,
            retain_backups=settings.retain_backups,
            backends=settings.backends,
        )
    return settings


DEFAULT_CONFIG_TEMPLATE = """\
encryption:
  key_file: {key_file}

services:
  # Add your services here
  # example:
  #   path: /srv/example
  #   schedule: "0 2 * * *"  # 2 AM daily (UTC)
  #   container: example
  #   exclude:
  #     - "**/tmp/**"
  #     - "**/.git/**"
  #     - "**/node_modules/**"
  #   retain_backups: 14  # Keep last 14 backups
  #   pre_backup:
  #     command: "./dump.sh"
  #     timeout: 10m

backup:
  retain_backups: {retain}  # Global default: keep last {retain} backups
  backends:
    # Listed in priority order: uploads go to each, restores try them in turn
    - name: nas
      type: sftp
      host: nas.example.com
      port: 22
      username: user
      key_file: ~/.ssh/id_ed25519
      path: backups/burrow
    # - name: offsite
    #   type: s3
    #   endpoint: ""  # Set for Backblaze B2 or MinIO, empty for AWS
    #   region: us-east-1
    #   bucket: your-bucket-name
    #   access_key_id: your-access-key
    #   secret_access_key: your-secret-key
    #   path: backups/burrow
"""


def write_default_config(path: str, key_file: str) -> str:
    """
    Write a starter configuration file readable only by the owner.

    Returns:
        Path of the written file

    Raises:
        ConfigError: If the file already exists or cannot be written
    """
    config_path = Path(path).expanduser()
    if config_path.exists():
        raise ConfigError(f"Config file already exists: {config_path}")

    content = DEFAULT_CONFIG_TEMPLATE.format(key_file=key_file, retain=DEFAULT_RETAIN_BACKUPS)
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(config_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, 'w') as f:
            f.write(content)
    except OSError as e:
        raise ConfigError(f"Failed to write config file {config_path}: {e}") from e

    return str(config_path)
