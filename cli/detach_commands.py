"""Detach commands: send a backup to S3 and check bucket access."""

import logging
import sys

import click
from sqlalchemy.exc import SQLAlchemyError
from tabulate import tabulate

from catalog import BackupCatalog
from cli.utils import (
    load_app_config,
    setup_logging_from_context,
    build_store_config,
    build_upload_config,
    get_db_service,
    handle_error,
    format_size
)
from s3_detach.detach import S3Detacher

logger = logging.getLogger(__name__)


def s3_options(f):
    """Store overrides shared by commands that talk to S3."""
    options = [
        click.option('--s3-access-key-id', 'access_key_id', envvar='S3_ACCESS_KEY_ID',
                     help='S3 access key id'),
        click.option('--s3-secret-access-key', 'secret_access_key', envvar='S3_SECRET_ACCESS_KEY',
                     help='S3 secret access key'),
        click.option('--s3-hostname', 'hostname', envvar='S3_HOSTNAME',
                     help='S3 endpoint hostname (host[:port])'),
        click.option('--s3-bucket', 'bucket', envvar='S3_BUCKET', help='Target bucket'),
        click.option('--s3-uri-style', 'uri_style', envvar='S3_URI_STYLE',
                     type=click.Choice(['path', 'virtual-host']),
                     help='Bucket addressing style'),
        click.option('--s3-protocol', 'protocol', envvar='S3_PROTOCOL',
                     type=click.Choice(['http', 'https']), help='Transport protocol'),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def _store_overrides(uri_style, **overrides):
    if uri_style is not None:
        overrides['force_path_style'] = uri_style == 'path'
    return overrides


def register_commands(cli):
    """Register detach commands with main CLI."""

    @cli.command('detach')
    @click.argument('backup_id')
    @click.option('--instance', '-i', help='Instance name (default from config)')
    @click.option('--threads', '-j', type=click.IntRange(min=1), help='Number of upload threads')
    @s3_options
    @click.option('--progress/--no-progress', default=True, help='Show a progress bar')
    @click.option('--no-log', is_flag=True, help='Do not record the run in the audit log')
    @click.pass_context
    def detach(ctx, backup_id, instance, threads, uri_style, progress, no_log, **s3_overrides):
        """Upload every regular file of BACKUP_ID to S3.

        Objects are written under <BACKUP_ID>/<relative path>. Transient
        store errors are retried; files that still fail are listed and the
        command exits with status 1.

        Examples:
            # Upload with settings from config.json
            python -m main detach QJ4M2A

            # Override bucket and thread count
            python -m main detach QJ4M2A --s3-bucket archive --threads 8
        """
        verbose = ctx.obj['verbose']

        try:
            config = load_app_config(ctx.obj['config_path'])
            setup_logging_from_context(ctx, config)

            store_config = build_store_config(config, **_store_overrides(uri_style, **s3_overrides))
            upload_config = build_upload_config(config, threads)

            catalog = BackupCatalog(config.paths.backup_path, instance or config.paths.instance)
            backup = catalog.get_backup(backup_id)
            files = backup.load_files()

            click.echo(f"Backup {backup.backup_id} ({backup.status}), {len(files)} entries")
            click.echo(f"  Destination: s3://{store_config.bucket}/{backup.backup_id}/")
            click.echo(f"  Threads: {upload_config.threads}")

            detacher = S3Detacher(store_config, upload_config, progress=progress)
            result = detacher.run(backup.backup_id, files, backup.layout)

        except Exception as e:
            handle_error(e, verbose)

        _print_summary(result)

        if not no_log:
            _record_run(config, result, store_config, upload_config)

        if result.failed:
            sys.exit(1)

    @cli.command('check-bucket')
    @s3_options
    @click.pass_context
    def check_bucket(ctx, uri_style, **s3_overrides):
        """Verify the configured bucket is reachable."""
        verbose = ctx.obj['verbose']

        try:
            config = load_app_config(ctx.obj['config_path'])
            setup_logging_from_context(ctx, config)

            store_config = build_store_config(config, **_store_overrides(uri_style, **s3_overrides))
            detacher = S3Detacher(store_config, config.upload)
            detacher.initialize()

        except Exception as e:
            handle_error(e, verbose)

        click.echo(f"✓ Bucket reachable: {store_config.bucket} at {store_config.endpoint_url}")


def _record_run(config, result, store_config, upload_config):
    """Write the run to the audit log. A database failure does not change the run's outcome."""
    try:
        db_service = get_db_service(config)
        try:
            db_service.record_run(
                result, store_config.bucket, store_config.endpoint_url, upload_config.threads
            )
        finally:
            db_service.db_manager.close()
    except SQLAlchemyError as e:
        logger.warning(f"Failed to record detach run {result.backup_id} in audit log: {e}")
        click.echo(f"Warning: could not record run in audit log: {e}", err=True)


def _print_summary(result):
    """Print run totals and any failed files."""
    click.echo("\n" + "=" * 80)
    click.echo(f"DETACH SUMMARY: {result.backup_id}")
    click.echo("=" * 80)

    rows = [
        ['Uploaded', result.uploaded],
        ['Failed', result.failed],
        ['Skipped (not regular)', result.skipped],
        ['Transferred', format_size(result.bytes_sent)],
        ['Elapsed', f"{result.elapsed:.1f}s"],
    ]
    click.echo(tabulate(rows, tablefmt='simple'))

    if result.failed:
        click.echo("\nFailed files:")
        failed_rows = [
            [f.rel_path, f.status, f.attempts, (f.error or '').splitlines()[0] if f.error else '']
            for f in sorted(result.failed_files, key=lambda f: f.rel_path)
        ]
        click.echo(tabulate(failed_rows, headers=['Path', 'Status', 'Attempts', 'Error'], tablefmt='simple'))
