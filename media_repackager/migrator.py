"""
Batch driver: packages many assets with bounded concurrency.

migrate_in_parallel schedules item handlers up to ``batch_size`` at a time,
isolates per-item failures and reports progress as a monotonically
increasing count. AssetMigrator is the per-asset handler: it packages one
asset in its own working directory and uploads the results.
"""

import asyncio
import logging
import os
import shutil
from collections.abc import AsyncIterable, Iterable
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

import aiofiles.os
from tqdm.asyncio import tqdm as tqdm_asyncio

from media_repackager.configs import Settings
from media_repackager.manifests import load_asset_details
from media_repackager.packager.factory import get_packager
from media_repackager.schemas import AssetDetails, AssetMigrationResult, DecryptInfo, MigrationStatus
from media_repackager.storage import ObjectContainer, iter_file

logger = logging.getLogger(__name__)

MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 10


@dataclass
class BatchSummary:
    completed: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled: int = 0
    processed: list[str] = field(default_factory=list)  # Identities of the items handed to the handler.

    @property
    def total(self) -> int:
        return self.completed + self.skipped + self.failed + self.cancelled

    def record(self, status: MigrationStatus) -> None:
        if status == MigrationStatus.COMPLETED:
            self.completed += 1
        elif status == MigrationStatus.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1


async def _iterate(values: Union[Iterable, AsyncIterable]):
    if isinstance(values, AsyncIterable):
        async for value in values:
            yield value
    else:
        for value in values:
            yield value


async def _acquire(semaphore: asyncio.Semaphore, stop: asyncio.Event) -> bool:
    """Wait for a free slot; returns False when ``stop`` is set first."""
    acquire = asyncio.ensure_future(semaphore.acquire())
    stopped = asyncio.ensure_future(stop.wait())
    try:
        await asyncio.wait({acquire, stopped}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stopped.cancel()
        if not acquire.done():
            acquire.cancel()
    if acquire.done() and not acquire.cancelled():
        if not stop.is_set():
            return True
        semaphore.release()
    return False


async def migrate_in_parallel(
    values: Union[Iterable, AsyncIterable],
    filtered_list: Optional[Iterable],
    process_item: Callable[[Any], Awaitable[Optional[MigrationStatus]]],
    batch_size: int,
    cancel_event: Optional[asyncio.Event] = None,
    fail_fast: bool = False,
    progress: Optional[asyncio.Queue] = None,
) -> BatchSummary:
    """
    Process items with at most ``batch_size`` handlers in flight.

    Args:
        values: All items, as an iterable or async iterable.
        filtered_list: Explicit items to process instead of ``values`` when given.
        process_item: Handler returning the item's MigrationStatus; an
            exception counts as a failure of that item only.
        batch_size: Maximum concurrency, 1..10.
        cancel_event: When set, no further item is scheduled and in-flight
            items are cancelled.
        fail_fast: Cancel everything after the first failure.
        progress: Queue receiving the count of finished items after each
            item, then None.

    Returns:
        BatchSummary: Counts of completed, skipped, failed and cancelled items.
    """
    if batch_size < MIN_BATCH_SIZE or batch_size > MAX_BATCH_SIZE:
        raise ValueError(f"Invalid batch size {batch_size}. Only values {MIN_BATCH_SIZE}..{MAX_BATCH_SIZE} are supported")

    items = filtered_list if filtered_list is not None else values
    summary = BatchSummary()
    semaphore = asyncio.Semaphore(batch_size)
    stop = asyncio.Event()
    tasks: set[asyncio.Task] = set()

    async def run_one(item) -> None:
        name = str(item)
        try:
            status = await process_item(item) or MigrationStatus.COMPLETED
        except asyncio.CancelledError:
            summary.cancelled += 1
            logger.warning(f"Cancelled processing of {name}")
            raise
        except Exception as e:
            logger.exception(f"Failed to process {name}: {e}")
            status = MigrationStatus.FAILED
        finally:
            semaphore.release()

        summary.record(status)
        if progress is not None:
            progress.put_nowait(summary.total)
        if status == MigrationStatus.FAILED and fail_fast:
            logger.error(f"Stopping batch after failure of {name}")
            stop.set()

    async def forward_cancel() -> None:
        await cancel_event.wait()
        stop.set()

    async def cancel_in_flight() -> None:
        await stop.wait()
        for task in list(tasks):
            task.cancel()

    watchers = [asyncio.create_task(cancel_in_flight())]
    if cancel_event is not None:
        watchers.append(asyncio.create_task(forward_cancel()))

    try:
        async for item in _iterate(items):
            if stop.is_set() or not await _acquire(semaphore, stop):
                break
            summary.processed.append(str(item))
            task = asyncio.create_task(run_one(item))
            tasks.add(task)
            task.add_done_callback(tasks.discard)
        if tasks:
            await asyncio.gather(*list(tasks), return_exceptions=True)
    finally:
        for task in list(tasks) + watchers:
            task.cancel()
        await asyncio.gather(*list(tasks), *watchers, return_exceptions=True)
        if progress is not None:
            progress.put_nowait(None)

    logger.info(
        f"Batch finished: {summary.completed} completed, {summary.skipped} skipped, "
        f"{summary.failed} failed, {summary.cancelled} cancelled"
    )
    return summary


async def show_progress(queue: asyncio.Queue, total: int, description: str = "Migrating") -> None:
    """Render the progress counts pushed by migrate_in_parallel until it sends None."""
    with tqdm_asyncio(total=total, desc=description, unit="asset", ncols=100, mininterval=1) as progress_bar:
        current = 0
        while (count := await queue.get()) is not None:
            if count > current:
                progress_bar.update(count - current)
                current = count


class AssetMigrator:
    """Packages one asset per call and uploads the results under ``<asset_name>/``."""

    def __init__(self, settings: Settings, output_container: ObjectContainer):
        self.settings = settings
        self.output_container = output_container

    async def migrate_container(
        self, container: ObjectContainer, asset_name: Optional[str] = None, decrypt_info: Optional[DecryptInfo] = None
    ) -> AssetMigrationResult:
        """Load the manifests of the asset held by ``container`` and migrate it."""
        asset_name = asset_name or container.name
        if not await container.exists():
            logger.warning(f"Container {container.name} for asset {asset_name} does not exist, skipping")
            return AssetMigrationResult(asset_name=asset_name, status=MigrationStatus.SKIPPED)
        return await self._package(await load_asset_details(container, asset_name, decrypt_info))

    async def migrate_asset(self, asset_details: AssetDetails) -> AssetMigrationResult:
        container = asset_details.container
        if not await container.exists():
            logger.warning(f"Container {container.name} for asset {asset_details.asset_name} does not exist, skipping")
            return AssetMigrationResult(asset_name=asset_details.asset_name, status=MigrationStatus.SKIPPED)
        return await self._package(asset_details)

    async def _package(self, asset_details: AssetDetails) -> AssetMigrationResult:
        asset_name = asset_details.asset_name
        container = asset_details.container
        working_dir = os.path.join(self.settings.working_dir, asset_name)
        await aiofiles.os.makedirs(working_dir, exist_ok=True)
        try:
            packager = get_packager(self.settings.packager, asset_details, working_dir, self.settings)
            if not packager.selected_tracks:
                logger.warning(f"Asset {asset_name} in {container.name} has no tracks to package, skipping")
                return AssetMigrationResult(asset_name=asset_name, status=MigrationStatus.SKIPPED)

            logger.info(f"Packaging asset {asset_name} from {container.name} with {len(packager.selected_tracks)} tracks")
            if not await packager.package():
                logger.error(f"Packaging failed for asset {asset_name} in {container.name}")
                return AssetMigrationResult(
                    asset_name=asset_name, status=MigrationStatus.FAILED, error="Packager exited with an error"
                )

            uploaded = await self._upload_outputs(asset_name, working_dir, packager.output_files())
            logger.info(f"Uploaded {uploaded} files of asset {asset_name} to {self.output_container.name}")
            return AssetMigrationResult(
                asset_name=asset_name,
                status=MigrationStatus.COMPLETED,
                output_path=f"{asset_name}/",
                manifest_name=packager.manifests[0],
            )
        finally:
            if self.settings.delete_working_dir:
                await asyncio.to_thread(shutil.rmtree, working_dir, True)

    async def _upload_outputs(self, asset_name: str, working_dir: str, files: list[str]) -> int:
        uploaded = 0
        for file_name in files:
            path = os.path.join(working_dir, file_name)
            if not await aiofiles.os.path.isfile(path):
                logger.warning(f"Expected output {file_name} of asset {asset_name} was not produced")
                continue
            await self.output_container.upload(f"{asset_name}/{file_name}", iter_file(path))
            uploaded += 1
        return uploaded
