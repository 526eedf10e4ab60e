"""
Configuration loading for Stashly.

Values are resolved in increasing priority from:
- dataclass defaults
- a YAML config file (explicit path, $STASHLY_CONFIG, ./config.yaml, /etc/stashly/config.yaml)
- environment variables (STASHLY_POSTGRES_HOST, STASHLY_BACKUP_RETENTION_COUNT, ...)

YAML keys use dashes (``retention-count``), attributes use underscores.
"""

import os
import socket
import logging
import tempfile
import typing
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from stashly import constants


logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration cannot be loaded or is invalid."""
    pass


@dataclass
class AppConfig:
    instance_id: str = field(default_factory=socket.gethostname)


@dataclass
class LoggerConfig:
    level: str = 'INFO'
    file: str = ''


@dataclass
class PostgresConfig:
    host: str = 'localhost'
    port: int = 5432
    user: str = 'postgres'
    password: str = ''

    def to_env(self) -> Dict[str, str]:
        """Connection profile as libpq environment variables."""
        return {
            'PGHOST': self.host,
            'PGPORT': str(self.port),
            'PGUSER': self.user,
            'PGPASSWORD': self.password,
        }


@dataclass
class StorageConfig:
    backend: str = 's3'
    endpoint: str = ''
    region: str = 'us-east-1'
    access_key: str = ''
    secret_key: str = ''
    bucket: str = ''
    prefix: str = ''
    local_path: str = ''


@dataclass
class BackupConfig:
    retention_count: int = constants.DEFAULT_RETENTION_COUNT
    date_time_layout: str = constants.DEFAULT_DATE_TIME_LAYOUT
    cron: str = constants.DEFAULT_CRON
    encrypt: bool = False
    timeout: int = 0  # seconds, 0 = no run deadline
    work_dir: str = field(default_factory=lambda: os.path.join(tempfile.gettempdir(), 'stashly'))
    exclude_databases: List[str] = field(default_factory=list)

    @property
    def staging_dir(self) -> str:
        return os.path.join(self.work_dir, constants.EXPORT_DIR)


@dataclass
class GPGConfig:
    key_server: str = ''
    key_id: str = ''


@dataclass
class EncryptionConfig:
    gpg: GPGConfig = field(default_factory=GPGConfig)


@dataclass
class DiscordNotifierConfig:
    enabled: bool = False
    webhook: str = ''


@dataclass
class NotifiersConfig:
    enabled: bool = False
    discord: DiscordNotifierConfig = field(default_factory=DiscordNotifierConfig)


@dataclass
class Config:
    """Complete configuration, passed explicitly to every component."""
    app: AppConfig = field(default_factory=AppConfig)
    postgres: PostgresConfig = field(default_factory=PostgresConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    encryption: EncryptionConfig = field(default_factory=EncryptionConfig)
    notifiers: NotifiersConfig = field(default_factory=NotifiersConfig)
    logger: LoggerConfig = field(default_factory=LoggerConfig)
    source: Optional[str] = None  # config file used, if any


# Sections accepted under an older name
_SECTION_ALIASES = {'s3': 'storage'}

_TRUE_VALUES = ('1', 'true', 'yes', 'on')
_FALSE_VALUES = ('0', 'false', 'no', 'off', '')


def _coerce(value: Any, target: Any, name: str) -> Any:
    """Coerce a YAML or environment value to the field's declared type."""
    origin = typing.get_origin(target) or target

    if origin is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, int):
            return bool(value)
        if isinstance(value, str) and value.strip().lower() in _TRUE_VALUES + _FALSE_VALUES:
            return value.strip().lower() in _TRUE_VALUES
        raise ConfigError(f"Invalid boolean for {name}: {value!r}")

    if origin is int:
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"Invalid integer for {name}: {value!r}")

    if origin is list:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(',') if item.strip()]
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        raise ConfigError(f"Invalid list for {name}: {value!r}")

    return '' if value is None else str(value)


def _build_section(cls, raw: Dict[str, Any], path: List[str], environ):
    """Instantiate a config dataclass from raw YAML values and env overrides."""
    if not isinstance(raw, dict):
        raise ConfigError(f"Section '{'.'.join(path)}' must be a mapping")

    section = cls()

    for f in fields(cls):
        if f.name == 'source':
            continue

        yaml_key = f.name.replace('_', '-')
        dotted = '.'.join(path + [yaml_key])

        if is_dataclass(f.type):
            value = _build_section(f.type, raw.get(yaml_key) or {}, path + [yaml_key], environ)
            setattr(section, f.name, value)
            continue

        env_name = '_'.join([constants.CONFIG_ENV_PREFIX] + path + [yaml_key])
        env_name = env_name.replace('-', '_').replace('.', '_').upper()

        if env_name in environ:
            setattr(section, f.name, _coerce(environ[env_name], f.type, dotted))
        elif yaml_key in raw:
            setattr(section, f.name, _coerce(raw[yaml_key], f.type, dotted))

    return section


def _find_config_file(config_path: Optional[str], environ) -> Optional[Path]:
    if config_path:
        path = Path(config_path)
        if not path.is_file():
            raise ConfigError(f"Config file not found: {config_path}")
        return path

    candidates = []
    env_path = environ.get(f'{constants.CONFIG_ENV_PREFIX}_CONFIG')
    if env_path:
        candidates.append(Path(env_path))
    candidates.append(Path(constants.CONFIG_FILE_NAME))
    candidates.append(Path(constants.CONFIG_DEFAULT_DIR) / constants.CONFIG_FILE_NAME)

    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding='utf-8')) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read config file {path}: {e}")

    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level")

    for alias, section in _SECTION_ALIASES.items():
        if alias in raw and section not in raw:
            raw[section] = raw.pop(alias)

    return raw


def _apply_sanity_checks(config: Config):
    if config.backup.retention_count < 1:
        raise ConfigError(
            f"backup.retention-count must be at least 1, got {config.backup.retention_count}"
        )

    if config.backup.timeout < 0:
        raise ConfigError(f"backup.timeout must not be negative, got {config.backup.timeout}")

    if config.storage.backend not in ('s3', 'local'):
        raise ConfigError(f"Unknown storage backend: {config.storage.backend}")

    if config.storage.backend == 'local' and not config.storage.local_path:
        raise ConfigError("storage.local-path is required for the local storage backend")

    if config.backup.encrypt:
        gpg = config.encryption.gpg
        if not gpg.key_server or not gpg.key_id:
            logger.warning("GPG encryption enabled but key-server/key-id not set; disabling encryption")
            config.backup.encrypt = False

    if not config.notifiers.discord.webhook and config.notifiers.discord.enabled:
        logger.warning("Discord notifier disabled (missing webhook)")
        config.notifiers.discord.enabled = False


def load_config(config_path: Optional[str] = None, environ=None) -> Config:
    """
    Load configuration from file and environment.

    Args:
        config_path: Explicit config file path (must exist if given)
        environ: Environment mapping (default: os.environ)

    Returns:
        Validated Config instance

    Raises:
        ConfigError: If the file is missing/invalid or a value fails validation
    """
    environ = os.environ if environ is None else environ

    path = _find_config_file(config_path, environ)
    if path is None:
        logger.warning("No config file found, relying on env vars/defaults")
        raw = {}
    else:
        logger.info(f"Using config file: {path}")
        raw = _read_yaml(path)

    config = _build_section(Config, raw, [], environ)
    config.source = str(path) if path else None

    _apply_sanity_checks(config)
    return config
