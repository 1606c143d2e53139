"""Configuration management commands."""

from pathlib import Path

import click

from config import create_default_config


def register_commands(cli):
    """Register config commands with main CLI."""

    @cli.group('config')
    @click.pass_context
    def config_group(ctx):
        """Configuration management commands."""
        pass

    @config_group.command('init')
    @click.pass_context
    def init_config(ctx):
        """Create a default configuration file.

        Creates config.json with default settings for:
        - Backup catalog path and instance
        - S3 credentials, endpoint and bucket
        - Upload threads and retry policy
        - Logging and audit log database

        Examples:
            # Create default config.json
            python -m main config init

            # Create config at custom location
            python -m main --config my_config.json config init
        """
        config_path = ctx.obj['config_path']

        if Path(config_path).exists():
            click.echo(f"Configuration file already exists: {config_path}")
            if not click.confirm("Overwrite existing configuration?"):
                return

        create_default_config(config_path)
        click.echo("\nNext steps:")
        click.echo("  1. Set paths.backup_path to your backup catalog")
        click.echo("  2. Fill in the s3 section (keys, hostname, bucket)")
        click.echo("  3. Test the bucket with: python -m main check-bucket")
