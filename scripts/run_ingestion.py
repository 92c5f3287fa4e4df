#!/usr/bin/env python3
"""
Run a deal ingestion from the command line.

Usage:
    python scripts/run_ingestion.py --ids 101 102 103
    python scripts/run_ingestion.py --ids-file deal_ids.txt
    python scripts/run_ingestion.py --sync incremental
    python scripts/run_ingestion.py --sync full --days 180

Deal IDs that still fail after the retry pass are written to
FAILED_IDS_PATH, one per line, so they can be fed back with --ids-file.
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from flowmetrics.config import IngestionConfig, SourceConfig, get_settings
from flowmetrics.connectors.ingestion_service import IngestionError, IngestionService
from flowmetrics.connectors.pipedrive_client import PipedriveClient
from flowmetrics.models.ingestion import IngestionProgress
from flowmetrics.storage import get_storage
from flowmetrics.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


def read_ids_file(path: Path) -> list[int]:
    """One deal ID per line; blank lines and '#' comments are ignored."""
    ids = []
    for line in path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        ids.append(int(line))
    return ids


def print_progress(progress: IngestionProgress) -> None:
    eta = f", eta {progress.eta_seconds:.0f}s" if progress.eta_seconds is not None else ""
    print(
        f"[{progress.phase}] {progress.processed}/{progress.total} "
        f"({progress.percent:.0f}%, {progress.rate_per_second:.1f}/s{eta})"
    )


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    storage = get_storage()

    async with PipedriveClient(SourceConfig.from_settings(settings)) as source:
        service = IngestionService(
            source,
            storage,
            IngestionConfig.from_settings(settings),
            on_progress=print_progress,
        )

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, service.cancel)
        except NotImplementedError:
            pass

        if args.sync == "incremental":
            report = await service.run_incremental_sync(days=args.days)
        elif args.sync == "full":
            report = await service.run_full_sync(days_back=args.days)
        else:
            ids = list(args.ids or [])
            if args.ids_file:
                ids.extend(read_ids_file(args.ids_file))
            report = await service.run_for_ids(ids)

    print(report.summary())
    return 1 if report.failed_count else 0


def main():
    """Main entry point for the ingestion script."""
    parser = argparse.ArgumentParser(description="Ingest Pipedrive deal stage histories")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--ids", type=int, nargs="+", help="Deal IDs to ingest")
    source.add_argument("--ids-file", type=Path, help="File with one deal ID per line")
    source.add_argument(
        "--sync",
        choices=["incremental", "full"],
        help="Select deals by update time instead of by ID",
    )
    parser.add_argument("--days", type=int, default=None, help="Sync window override in days")
    args = parser.parse_args()

    configure_logging()

    try:
        exit_code = asyncio.run(run(args))
    except IngestionError as e:
        logger.error("ingestion_script_failed", error=str(e))
        print(f"Ingestion failed: {e}", file=sys.stderr)
        exit_code = 2

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
