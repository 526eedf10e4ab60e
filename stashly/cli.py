"""
Stashly command line interface.

    stashly [--config PATH]           run backups on the configured cron schedule
    stashly [--config PATH] backup    run one backup immediately
    stashly [--config PATH] list      list stored backups, newest first
    stashly [--config PATH] purge     enforce the retention count now
"""

import sys

import click

from stashly import configure_logging
from stashly.config import ConfigError, load_config
from stashly.backup.executor import BackupExecutor, RunInProgressError
from stashly.backup.storage import StorageError


def _load(config_path):
    try:
        config = load_config(config_path)
    except ConfigError as e:
        click.echo(click.style(f"Failed to load config: {e}", fg='red'), err=True)
        sys.exit(1)

    configure_logging(config)
    return config


@click.group(invoke_without_command=True)
@click.option('--config', 'config_path', default=None, type=click.Path(dir_okay=False),
              help='Config file (default: ./config.yaml or /etc/stashly/config.yaml)')
@click.pass_context
def cli(ctx, config_path):
    """Automated PostgreSQL backups to S3-compatible storage."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path

    if ctx.invoked_subcommand is not None:
        return

    from stashly.scheduler import init_scheduler, start_scheduler, stop_scheduler

    config = _load(config_path)
    try:
        init_scheduler(config)
    except ConfigError as e:
        click.echo(click.style(f"Failed to schedule backup: {e}", fg='red'), err=True)
        sys.exit(1)

    try:
        start_scheduler()
    except (KeyboardInterrupt, SystemExit):
        pass
    finally:
        stop_scheduler()


@cli.command()
@click.pass_context
def backup(ctx):
    """Trigger a backup run immediately"""
    config = _load(ctx.obj['config_path'])

    try:
        run = BackupExecutor(config).execute()
    except RunInProgressError as e:
        click.echo(click.style(f"Backup not started: {e}", fg='yellow'), err=True)
        sys.exit(1)

    if run.status != 'success':
        click.echo(click.style(f"Backup failed: {run.error_message}", fg='red'), err=True)
        sys.exit(1)

    click.echo(click.style(f"Backup completed: {run.key} ({run.database_count} databases)", fg='green'))
    if run.purge_error:
        click.echo(click.style(f"Purge failed: {run.purge_error}", fg='yellow'), err=True)


@cli.command(name='list')
@click.pass_context
def list_backups(ctx):
    """List stored backups, newest first"""
    config = _load(ctx.obj['config_path'])

    try:
        keys = BackupExecutor(config).list_backups()
    except StorageError as e:
        click.echo(click.style(f"Failed to list backups: {e}", fg='red'), err=True)
        sys.exit(1)

    if not keys:
        click.echo("No backups found")
        return

    for key in keys:
        click.echo(key)


@cli.command()
@click.pass_context
def purge(ctx):
    """Delete backups beyond the retention count"""
    config = _load(ctx.obj['config_path'])

    try:
        deleted = BackupExecutor(config).purge()
    except (RunInProgressError, StorageError, OSError) as e:
        click.echo(click.style(f"Purge failed: {e}", fg='red'), err=True)
        sys.exit(1)

    click.echo(f"Deleted {len(deleted)} backups")
    for key in deleted:
        click.echo(f"  {key}")


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
