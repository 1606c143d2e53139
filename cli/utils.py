"""Shared utilities for CLI commands."""

import logging
import sys
from typing import Optional

import click

from config import Config, StoreConfig, UploadConfig, load_config, setup_logging
from models import DatabaseManager, DatabaseService


def load_app_config(config_path: str) -> Config:
    """Load application configuration.

    Args:
        config_path: Path to configuration file

    Returns:
        Validated Config

    Raises:
        FileNotFoundError: If the configuration file does not exist
    """
    return load_config(config_path)


def setup_logging_from_context(ctx: click.Context, config: Optional[Config] = None):
    """Configure logging from Click context.

    Args:
        ctx: Click context containing config and verbose flag
        config: Already loaded configuration, if any
    """
    verbose = ctx.obj.get('verbose', False)
    try:
        if config is None:
            config = load_config(ctx.obj.get('config_path', 'config.json'))
        setup_logging(config, verbose)

    except (OSError, ValueError):
        # Fallback to basic logging if config fails
        logging.basicConfig(
            level=logging.WARNING if not verbose else logging.DEBUG,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )


def build_store_config(config: Config, **overrides) -> StoreConfig:
    """Apply command line overrides on top of the configured store settings.

    Options left unset (None) keep the configuration file value.
    """
    update = {k: v for k, v in overrides.items() if v is not None}
    if not update:
        return config.s3
    return StoreConfig(**{**config.s3.model_dump(), **update})


def build_upload_config(config: Config, threads: Optional[int] = None) -> UploadConfig:
    """Apply the --threads override to the upload settings."""
    if threads is None:
        return config.upload
    return UploadConfig(**{**config.upload.model_dump(), 'threads': threads})


def get_db_service(config: Config) -> DatabaseService:
    """Get audit log database service instance.

    Args:
        config: Application configuration

    Returns:
        DatabaseService instance
    """
    db_manager = DatabaseManager(config.database.connection_string)
    db_manager.create_tables()  # Ensure tables exist (no-op if already created)
    return DatabaseService(db_manager)


def handle_error(error: Exception, verbose: bool = False):
    """Handle and display errors consistently.

    Args:
        error: Exception to handle
        verbose: Whether to show full traceback
    """
    if verbose:
        import traceback
        click.echo(f"Error: {error}", err=True)
        click.echo(traceback.format_exc(), err=True)
    else:
        click.echo(f"Error: {error}", err=True)
    sys.exit(1)


def format_size(bytes_size: int) -> str:
    """Format bytes as human-readable size.

    Args:
        bytes_size: Size in bytes

    Returns:
        Formatted string (e.g., "1.5 GB")
    """
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_size < 1024.0:
            return f"{bytes_size:.2f} {unit}"
        bytes_size /= 1024.0
    return f"{bytes_size:.2f} PB"
