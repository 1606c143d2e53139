"""Configuration management for the S3 detach tool."""

import json
import os
from enum import Enum
from pathlib import Path
from typing import ClassVar, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class S3Protocol(str, Enum):
    """Transport used to reach the object store."""
    HTTP = "http"
    HTTPS = "https"


class PathConfig(BaseModel):
    """Backup catalog location."""
    backup_path: str
    instance: Optional[str] = None

    @field_validator('backup_path', mode='before')
    @classmethod
    def expand_paths(cls, v):
        """Expand environment variables and user home directory."""
        return os.path.expanduser(os.path.expandvars(v))


class StoreConfig(BaseModel):
    """Object store credentials and endpoint.

    Shared read-only by every upload worker, so the model is frozen.
    Required fields are allowed to be empty here; the detach pre-flight
    check refuses to start until they are all present.
    """
    model_config = ConfigDict(frozen=True)

    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    hostname: Optional[str] = None
    bucket: Optional[str] = None
    force_path_style: bool = False
    protocol: S3Protocol = S3Protocol.HTTPS
    region: str = "us-east-1"

    # Checked in this order, names as reported to the operator
    REQUIRED: ClassVar[Tuple[Tuple[str, str], ...]] = (
        ('access_key_id', 's3_access_key_id'),
        ('secret_access_key', 's3_secret_access_key'),
        ('hostname', 's3_hostname'),
        ('bucket', 's3_bucket'),
    )

    def missing_fields(self) -> List[str]:
        return [name for attr, name in self.REQUIRED if not getattr(self, attr)]

    @property
    def endpoint_url(self) -> str:
        return f"{self.protocol.value}://{self.hostname}"

    @property
    def addressing_style(self) -> str:
        return 'path' if self.force_path_style else 'virtual'

    @property
    def masked_secret(self) -> str:
        if not self.secret_access_key:
            return ''
        return self.secret_access_key[:4] + '*' * max(len(self.secret_access_key) - 4, 0)


class UploadConfig(BaseModel):
    """Worker pool and retry settings."""
    model_config = ConfigDict(frozen=True)

    threads: int = Field(1, ge=1)
    max_attempts: int = Field(5, ge=1)
    initial_backoff_seconds: float = Field(1.0, ge=0)
    backoff_step_seconds: float = Field(1.0, gt=0)
    connect_timeout: float = 60.0
    read_timeout: float = 60.0


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    file: str = "s3_detach.log"


class DatabaseConfig(BaseModel):
    """Audit log database configuration."""
    connection_string: str = "sqlite:///s3_detach.db"


class Config(BaseModel):
    """Main configuration model."""
    paths: PathConfig
    s3: StoreConfig = StoreConfig()
    upload: UploadConfig = UploadConfig()
    logging: LoggingConfig = LoggingConfig()
    database: DatabaseConfig = DatabaseConfig()


def load_config(config_path: str = "config.json") -> Config:
    """Load configuration from JSON file."""
    config_file = Path(config_path)

    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_file, 'r') as f:
        config_data = json.load(f)

    return Config(**config_data)


def create_default_config(config_path: str = "config.json") -> None:
    """Create a default configuration file."""
    default_config = {
        "paths": {
            "backup_path": "~/backups",
            "instance": "main"
        },
        "s3": {
            "access_key_id": "",
            "secret_access_key": "",
            "hostname": "s3.amazonaws.com",
            "bucket": "",
            "force_path_style": False,
            "protocol": "https",
            "region": "us-east-1"
        },
        "upload": {
            "threads": 4,
            "max_attempts": 5,
            "initial_backoff_seconds": 1,
            "backoff_step_seconds": 1,
            "connect_timeout": 60,
            "read_timeout": 60
        },
        "logging": {
            "level": "INFO",
            "file": "s3_detach.log"
        },
        "database": {
            "connection_string": "sqlite:///s3_detach.db"
        }
    }

    with open(config_path, 'w') as f:
        json.dump(default_config, f, indent=2)

    print(f"Created default configuration file: {config_path}")


def setup_logging(config: Config, verbose: bool = False):
    """Setup logging based on configuration."""
    import logging

    log_level = logging.DEBUG if verbose else getattr(logging, config.logging.level.upper(), logging.INFO)

    log_file = Path(config.logging.file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    handlers = [logging.FileHandler(log_file)]
    if verbose:
        handlers.append(logging.StreamHandler())

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(threadName)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )

    # Quiet transport libraries
    logging.getLogger('botocore').setLevel(logging.WARNING)
    logging.getLogger('boto3').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)
