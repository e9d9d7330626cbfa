# listing_sync/cli/main.py
import asyncio
import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional, Set

import click
from dotenv import load_dotenv

from listing_sync.core.config import get_settings
from listing_sync.core.exceptions import BaseServiceError
from listing_sync.core.logging_config import configure_logging
from listing_sync.schemas.preview import PreviewResult
from listing_sync.services.apply_service import ApplyService
from listing_sync.services.backup_service import BackupService
from listing_sync.services.catalog import CatalogClient, fetch_all
from listing_sync.services.checkpoint import SqlCheckpointStore
from listing_sync.services.csv_service import decode_csv, hash_content, listings_to_csv, parse_listings_csv
from listing_sync.services.preview_service import compute_preview

logger = logging.getLogger(__name__)


def _run(coro):
    """Run a command coroutine, turning service errors into a CLI error"""
    try:
        return asyncio.run(coro)
    except BaseServiceError as e:
        logger.exception("Command failed")
        raise click.ClickException(str(e))


async def _shop_id(client: CatalogClient) -> int:
    settings = get_settings()
    if settings.CATALOG_SHOP_ID:
        return settings.CATALOG_SHOP_ID
    return await client.get_shop_id()


async def _preview(client: CatalogClient, content: bytes) -> PreviewResult:
    desired = parse_listings_csv(decode_csv(content))
    return await compute_preview(desired, client.get_listing)


def _load_approvals(accept: List[str], approvals_file: Optional[str]) -> Set[str]:
    approved = set(accept)
    if approvals_file:
        text = Path(approvals_file).read_text(encoding="utf-8")
        try:
            data = json.loads(text)
        except ValueError:
            data = [line.strip() for line in text.splitlines()]
        approved.update(str(change_id) for change_id in data if change_id)
    return approved


def _approvals_for(preview: PreviewResult, accept, approvals_file, accept_all) -> Set[str]:
    if accept_all:
        return {change.change_id for change in preview.changes}
    return _load_approvals(list(accept), approvals_file)


def _print_progress(label: str):
    def report(current: int, total: int, failed: int) -> None:
        click.echo(f"{label}: {current}/{total} ({failed} failed)")
    return report


@click.group()
@click.option('--log-level', default=None, help='Override LOG_LEVEL from the environment')
def cli(log_level):
    """Bulk-edit catalog listings through CSV files"""
    load_dotenv()
    configure_logging(log_level)


@cli.command()
@click.option('--output', '-o', type=click.Path(dir_okay=False), default=None,
              help='CSV file to write (default: listings-YYYY-MM-DD.csv)')
@click.option('--state', default=None, help='Only export listings in this state (e.g. active)')
def export(output, state):
    """Export every listing of the shop to an editable CSV"""
    async def run():
        client = CatalogClient.from_settings(get_settings())
        shop_id = await _shop_id(client)
        total, listings = await fetch_all(client, shop_id, state=state, on_progress=_print_progress("Fetched"))

        path = Path(output or f"listings-{datetime.now().strftime('%Y-%m-%d')}.csv")
        path.write_text(listings_to_csv(listings), encoding="utf-8", newline="")
        click.echo(f"Exported {len(listings)} of {total} listings to {path}")
        if len(listings) < total:
            click.echo("Some pages could not be fetched; re-run the export to retry them")

    _run(run())


@cli.command()
@click.argument('csv_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--output', '-o', type=click.Path(dir_okay=False), default=None,
              help='Write the preview JSON here instead of stdout')
def preview(csv_file, output):
    """Show the changes an edited CSV would make"""
    async def run():
        client = CatalogClient.from_settings(get_settings())
        result = await _preview(client, Path(csv_file).read_bytes())
        payload = result.model_dump_json(indent=2)
        if output:
            Path(output).write_text(payload, encoding="utf-8")
            click.echo(f"Preview written to {output}")
        else:
            click.echo(payload)
        summary = result.summary
        click.echo(
            f"{summary.total_changes} changes: {summary.creates} creates, "
            f"{summary.updates} updates, {summary.deletes} deletes",
            err=True,
        )

    _run(run())


@cli.command()
@click.argument('csv_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--accept', multiple=True, help='Approved change ID (repeatable)')
@click.option('--approvals', 'approvals_file', type=click.Path(exists=True, dir_okay=False),
              help='JSON list or newline-separated file of approved change IDs')
@click.option('--accept-all', is_flag=True, help='Approve every change in the preview')
@click.option('--output-dir', default=None, help='Backup directory (default: BACKUP_DIR)')
def backup(csv_file, accept, approvals_file, accept_all, output_dir):
    """Back up the listings that approved changes would modify"""
    async def run():
        settings = get_settings()
        client = CatalogClient.from_settings(settings)
        result = await _preview(client, Path(csv_file).read_bytes())
        approved = _approvals_for(result, accept, approvals_file, accept_all)

        path = await BackupService(client).create_backup(result, approved, output_dir or settings.BACKUP_DIR)
        click.echo(f"Backup written to {path}" if path else "Nothing to back up")

    _run(run())


@cli.command()
@click.argument('csv_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--accept', multiple=True, help='Approved change ID (repeatable)')
@click.option('--approvals', 'approvals_file', type=click.Path(exists=True, dir_okay=False),
              help='JSON list or newline-separated file of approved change IDs')
@click.option('--accept-all', is_flag=True, help='Approve every change in the preview')
@click.option('--backup/--no-backup', 'make_backup', default=True,
              help='Back up affected listings before applying (default: on)')
def apply(csv_file, accept, approvals_file, accept_all, make_backup):
    """Apply approved changes from an edited CSV, resuming an interrupted run"""
    async def run():
        settings = get_settings()
        client = CatalogClient.from_settings(settings)
        content = Path(csv_file).read_bytes()

        result = None
        if accept_all or make_backup:
            result = await _preview(client, content)
        approved = _approvals_for(result, accept, approvals_file, accept_all) if result \
            else _load_approvals(list(accept), approvals_file)
        if not approved:
            raise click.ClickException("No approved changes; pass --accept, --approvals or --accept-all")

        if make_backup:
            path = await BackupService(client).create_backup(result, approved, settings.BACKUP_DIR)
            if path:
                click.echo(f"Backup written to {path}")

        store = SqlCheckpointStore(settings.DATABASE_URL)
        await store.init()
        try:
            shop_id = await _shop_id(client)
            service = ApplyService(client, store, shop_id)
            failures = await service.apply(
                parse_listings_csv(decode_csv(content)),
                approved,
                hash_content(content),
                on_progress=_print_progress("Applied"),
                file_name=Path(csv_file).name,
            )
        finally:
            await store.close()

        if failures:
            click.echo(f"{len(failures)} item(s) failed:")
            for failure in failures:
                click.echo(f"  listing {failure.listing_id or '(new)'}: {failure.error}")
        else:
            click.echo("All approved changes applied")

    _run(run())


@cli.command('cleanup-checkpoints')
@click.option('--max-age-days', type=int, default=None,
              help='Remove checkpoints older than this (default: CHECKPOINT_MAX_AGE_DAYS)')
def cleanup_checkpoints(max_age_days):
    """Remove stale apply checkpoints"""
    async def run():
        settings = get_settings()
        days = max_age_days if max_age_days is not None else settings.CHECKPOINT_MAX_AGE_DAYS
        store = SqlCheckpointStore(settings.DATABASE_URL)
        await store.init()
        try:
            removed = await store.cleanup_old(timedelta(days=days))
        finally:
            await store.close()
        click.echo(f"Removed {removed} checkpoint(s)")

    _run(run())


if __name__ == '__main__':
    cli()
