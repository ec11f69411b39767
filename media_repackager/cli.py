import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from media_repackager.configs import settings
from media_repackager.migrator import AssetMigrator, BatchSummary, migrate_in_parallel, show_progress
from media_repackager.storage import LocalContainer

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="media-repackager",
        description="Reconstruct and repackage the assets found under SOURCE_ROOT into OUTPUT_ROOT.",
    )
    parser.add_argument("source_root", help="Directory holding one subdirectory per asset container.")
    parser.add_argument("output_root", help="Directory receiving the packaged assets.")
    parser.add_argument(
        "--asset", dest="assets", action="append", help="Package only this asset; may be given several times."
    )
    parser.add_argument("--batch-size", type=int, default=settings.batch_size, help="Assets packaged concurrently (1..10).")
    parser.add_argument("--working-dir", default=settings.working_dir, help="Root of the per-asset working directories.")
    parser.add_argument(
        "--use-pipes", action="store_true", default=settings.use_pipes, help="Stream inputs to the packager through pipes."
    )
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> BatchSummary:
    run_settings = settings.model_copy(update={"working_dir": args.working_dir, "use_pipes": args.use_pipes})
    source_root = Path(args.source_root)
    migrator = AssetMigrator(run_settings, LocalContainer(args.output_root))

    asset_names = sorted(p.name for p in source_root.iterdir() if p.is_dir()) if source_root.is_dir() else []

    async def process(asset_name: str):
        result = await migrator.migrate_container(LocalContainer(source_root / asset_name), asset_name)
        return result.status

    total = len(args.assets) if args.assets is not None else len(asset_names)
    progress: asyncio.Queue = asyncio.Queue()
    progress_task = asyncio.create_task(show_progress(progress, total, "Packaging"))
    try:
        return await migrate_in_parallel(asset_names, args.assets, process, args.batch_size, progress=progress)
    finally:
        progress.put_nowait(None)
        await asyncio.gather(progress_task, return_exceptions=True)


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=settings.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    args = parse_args(argv)
    try:
        summary = asyncio.run(run(args))
    except ValueError as e:
        logger.error(str(e))
        return 2

    print(f"Completed: {summary.completed}, Skipped: {summary.skipped}, Failed: {summary.failed}")
    return 1 if summary.failed else 0


if __name__ == "__main__":
    sys.exit(main())
