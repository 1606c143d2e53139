"""Main CLI entry point - Root command group with global options."""

import click

from s3_detach import __version__


@click.group()
@click.option('--config', '-c', default='config.json', help='Configuration file path')
@click.option('--verbose', '-v', is_flag=True, help='Show detailed logging on console')
@click.version_option(version=__version__, prog_name='s3-detach')
@click.pass_context
def cli(ctx, config, verbose):
    """Send existing backups to S3-compatible object storage.

    Every regular file of a backup is uploaded once under
    <BACKUP_ID>/<relative path>, using a pool of worker threads and
    bounded retries for transient store errors.

    Examples:
        # Create a configuration file
        python -m main config init

        # Check that the bucket is reachable
        python -m main check-bucket

        # Upload backup QJ4M2A with 4 threads
        python -m main detach QJ4M2A --instance main --threads 4

        # Inspect a backup and past runs
        python -m main show QJ4M2A
        python -m main history
    """
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config
    ctx.obj['verbose'] = verbose


def register_all_commands():
    """Register all command modules with the main CLI."""
    from cli import (
        config_commands,
        detach_commands,
        catalog_commands,
    )

    config_commands.register_commands(cli)
    detach_commands.register_commands(cli)
    catalog_commands.register_commands(cli)


# Register all commands when module is imported
register_all_commands()
