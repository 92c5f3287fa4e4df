#!/usr/bin/env python3
"""
Seed stage mappings and the default dashboard metrics.

Usage:
    python scripts/seed_metrics.py
    python scripts/seed_metrics.py --mappings mappings.json

The mappings file is a JSON list of objects accepted by POST
/api/v1/admin/mappings. Default metrics are only created for canonical
stages that have a mapping.
"""

import argparse
import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from flowmetrics.models.mappings import StageMappingInput
from flowmetrics.services.mapping_store import MappingValidationError, StageMappingStore
from flowmetrics.storage import get_storage
from flowmetrics.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


def main():
    """Main entry point for metric seeding script."""
    parser = argparse.ArgumentParser(description="Seed stage mappings and default metrics")
    parser.add_argument("--mappings", type=Path, default=None, help="JSON file of stage mappings")
    args = parser.parse_args()

    configure_logging()
    store = StageMappingStore(get_storage())

    if args.mappings:
        for entry in json.loads(args.mappings.read_text()):
            try:
                mapping = store.upsert_mapping(StageMappingInput(**entry))
            except MappingValidationError as e:
                print(f"Skipped mapping {entry.get('canonical_stage')!r}: {e}", file=sys.stderr)
                continue
            print(f"Mapping {mapping.mapping_id}: {mapping.canonical_stage}")

    created = store.seed_default_definitions()
    for definition in created:
        print(f"Metric {definition.metric_id}: {definition.metric_key} ({definition.canonical_stage})")
    logger.info("default_metrics_seeded", created=len(created))
    print(f"Created {len(created)} metric definition(s)")


if __name__ == "__main__":
    main()
