"""Catalog inspection commands: backups, file lists and run history."""

import stat

import click
from tabulate import tabulate

from catalog import BackupCatalog
from cli.utils import (
    load_app_config,
    setup_logging_from_context,
    get_db_service,
    handle_error,
    format_size
)


def _file_type(mode: int) -> str:
    if stat.S_ISREG(mode):
        return 'file'
    if stat.S_ISDIR(mode):
        return 'dir'
    if stat.S_ISLNK(mode):
        return 'link'
    return 'other'


def register_commands(cli):
    """Register catalog commands with main CLI."""

    @cli.command('list-backups')
    @click.option('--instance', '-i', help='Instance name (default from config)')
    @click.pass_context
    def list_backups(ctx, instance):
        """List backups of an instance, newest first."""
        verbose = ctx.obj['verbose']

        try:
            config = load_app_config(ctx.obj['config_path'])
            setup_logging_from_context(ctx, config)
            backups = BackupCatalog(config.paths.backup_path, instance or config.paths.instance).list_backups()
        except Exception as e:
            handle_error(e, verbose)

        if not backups:
            click.echo("No backups found")
            return

        rows = [
            [b.backup_id, b.start_time.strftime('%Y-%m-%d %H:%M:%S'), b.status, b.control.get('backup-mode', '')]
            for b in backups
        ]
        click.echo(tabulate(rows, headers=['ID', 'Start Time (UTC)', 'Status', 'Mode'], tablefmt='simple'))

    @cli.command('show')
    @click.argument('backup_id')
    @click.option('--instance', '-i', help='Instance name (default from config)')
    @click.pass_context
    def show(ctx, backup_id, instance):
        """Show the file list of BACKUP_ID."""
        verbose = ctx.obj['verbose']

        try:
            config = load_app_config(ctx.obj['config_path'])
            setup_logging_from_context(ctx, config)
            backup = BackupCatalog(config.paths.backup_path, instance or config.paths.instance).get_backup(backup_id)
            files = backup.load_files()
        except Exception as e:
            handle_error(e, verbose)

        rows = [
            [f.rel_path, _file_type(f.mode), '' if f.size is None else format_size(f.size), f.external_dir_num]
            for f in files
        ]
        click.echo(tabulate(rows, headers=['Path', 'Type', 'Size', 'Ext Dir'], tablefmt='simple'))

        regular = [f for f in files if f.is_regular]
        total = sum(f.size or 0 for f in regular)
        click.echo(f"\n{len(regular)} regular files, {len(files) - len(regular)} other entries, {format_size(total)}")

    @cli.command('history')
    @click.option('--limit', '-n', default=10, type=click.IntRange(min=1), help='Number of runs to show')
    @click.option('--failures', is_flag=True, help='Also list failed files of each run')
    @click.pass_context
    def history(ctx, limit, failures):
        """Show recent detach runs from the audit log."""
        verbose = ctx.obj['verbose']

        try:
            config = load_app_config(ctx.obj['config_path'])
            setup_logging_from_context(ctx, config)
            db_service = get_db_service(config)
        except Exception as e:
            handle_error(e, verbose)

        try:
            runs = db_service.recent_runs(limit)
            if not runs:
                click.echo("No detach runs recorded")
                return

            rows = [
                [r.id, r.backup_id, r.s3_bucket, r.finished_at.strftime('%Y-%m-%d %H:%M:%S'),
                 r.files_uploaded, r.files_failed, format_size(r.bytes_transferred or 0), r.status]
                for r in runs
            ]
            click.echo(tabulate(
                rows,
                headers=['Run', 'Backup', 'Bucket', 'Finished', 'Uploaded', 'Failed', 'Bytes', 'Status'],
                tablefmt='simple'
            ))

            if failures:
                for run in runs:
                    failed = db_service.failed_files(run.id)
                    if not failed:
                        continue
                    click.echo(f"\nRun {run.id} failed files:")
                    for f in failed:
                        click.echo(f"  {f.rel_path}: {f.status}")
        finally:
            db_service.db_manager.close()
