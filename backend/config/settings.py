"""
Configuration Management for YACU
Loads the YAML configuration file into pydantic models and configures logging
"""

import os
import logging
from logging.handlers import RotatingFileHandler
from typing import Dict, List, Optional

import yaml
from croniter import croniter
from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_FILE_NAME = 'yacu.log'

_LOG_LEVELS = {'trace': 'DEBUG', 'debug': 'DEBUG', 'info': 'INFO', 'warn': 'WARNING', 'warning': 'WARNING',
               'error': 'ERROR', 'fatal': 'CRITICAL', 'critical': 'CRITICAL', 'panic': 'CRITICAL'}


class ConfigError(Exception):
    """Configuration file cannot be loaded or is invalid"""


def _normalize_level(value) -> str:
    level = _LOG_LEVELS.get(str(value).strip().lower())
    if level is None:
        raise ValueError(f"unknown log level '{value}'")
    return level


class DatabaseConfig(BaseModel):
    path: str = "data.db"


class ConsoleLoggingConfig(BaseModel):
    level: str = "INFO"

    @field_validator('level', mode='before')
    @classmethod
    def validate_level(cls, v) -> str:
        return _normalize_level(v)


class FileLoggingConfig(BaseModel):
    directory: Optional[str] = "logs"  # blank disables file logging
    level: str = "DEBUG"

    @field_validator('level', mode='before')
    @classmethod
    def validate_level(cls, v) -> str:
        return _normalize_level(v)


class LoggingConfig(BaseModel):
    console: ConsoleLoggingConfig = Field(default_factory=ConsoleLoggingConfig)
    file: FileLoggingConfig = Field(default_factory=FileLoggingConfig)


class ScannerConfig(BaseModel):
    """Candidate selection policy"""
    interval: str = "@weekly"
    image_age: int = Field(7, ge=0)  # days
    scan_all: bool = False
    scan_stopped: bool = False
    self_repository: str = "terrails/yacu"  # repository path prefix of the updater's own image

    @field_validator('interval')
    @classmethod
    def validate_interval(cls, v: str) -> str:
        """Reject cron expressions croniter cannot schedule"""
        v = v.strip()
        if not croniter.is_valid(v):
            raise ValueError(f"invalid cron format '{v}'")
        return v


class UpdaterConfig(BaseModel):
    """Container recreation policy"""
    stop_timeout: int = Field(30, ge=0)  # seconds
    remove_volumes: bool = False
    remove_images: bool = False


class RegistryEntry(BaseModel):
    """Credentials and TLS policy for one registry domain"""
    domain: str
    username: Optional[str] = None
    password: Optional[str] = None
    insecure: bool = False


class WebhookAuthor(BaseModel):
    name: str = ""
    url: str = ""
    icon_url: str = ""


class WebhookKind(BaseModel):
    """Event kind gates, all enabled unless switched off"""
    errors: bool = True
    image_success: bool = True
    container_success: bool = True

    @field_validator('errors', 'image_success', 'container_success', mode='before')
    @classmethod
    def default_when_null(cls, v):
        return True if v is None else v


class WebhookConfig(BaseModel):
    url: str = ""  # blank disables the webhook
    author: WebhookAuthor = Field(default_factory=WebhookAuthor)
    kind: WebhookKind = Field(default_factory=WebhookKind)


class AppConfig(BaseModel):
    """Complete YACU configuration"""
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    scanner: ScannerConfig = Field(default_factory=ScannerConfig)
    updater: UpdaterConfig = Field(default_factory=UpdaterConfig)
    registries: List[RegistryEntry] = Field(default_factory=list)
    webhooks: Dict[str, WebhookConfig] = Field(default_factory=dict)

    @field_validator('registries', 'webhooks', mode='before')
    @classmethod
    def empty_when_null(cls, v, info):
        if v is None:
            return [] if info.field_name == 'registries' else {}
        return v


def load_config(path: str) -> AppConfig:
    """
    Load configuration from a YAML file.

    A missing file is not an error, all defaults apply.

    Raises:
        ConfigError: Path is a directory, unreadable, invalid YAML, or fails validation
    """
    if not os.path.exists(path):
        logger.debug(f"Config file {path} not found, using defaults")
        return AppConfig()

    if os.path.isdir(path):
        raise ConfigError(f"given path '{path}' is a directory, expected a file")

    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"cannot read config file '{path}': {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in config file '{path}': {e}") from e

    if data is None:
        return AppConfig()
    if not isinstance(data, dict):
        raise ConfigError(f"config file '{path}' must contain a mapping")

    try:
        return AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid configuration in '{path}': {e}") from e


def setup_logging(config: Optional[LoggingConfig] = None):
    """Configure application logging with rotation"""
    config = config or LoggingConfig()

    root_logger = logging.getLogger()

    # Close and clear any existing handlers to prevent file descriptor leaks
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT)

    # Console handler for stdout
    console_handler = logging.StreamHandler()
    console_handler.setLevel(config.console.level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    levels = [logging.getLevelName(config.console.level)]

    directory = (config.file.directory or "").strip()
    if directory:
        try:
            os.makedirs(directory, mode=0o744, exist_ok=True)

            # Max 10MB per file, keep 3 backups
            file_handler = RotatingFileHandler(
                os.path.join(directory, LOG_FILE_NAME),
                maxBytes=10*1024*1024,
                backupCount=3,
                encoding='utf-8'
            )
            file_handler.setLevel(config.file.level)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
            levels.append(logging.getLevelName(config.file.level))
        except OSError as e:
            # Console-only logging
            logger.warning(f"Cannot create log directory {directory}, logging to console only: {e}")

    root_logger.setLevel(min(levels))

    # Suppress noisy third-party loggers
    for name in ("urllib3", "docker"):
        logging.getLogger(name).setLevel(logging.WARNING)
