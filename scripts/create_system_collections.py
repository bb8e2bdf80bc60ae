#!/usr/bin/env python3
"""
System Collection Backfill

Creates the per-category system collections for owners that are missing
some, e.g. owners whose links predate auto-filing.

Usage:
    python scripts/create_system_collections.py            # all owners with links
    python scripts/create_system_collections.py --owner u1 # one owner
"""

import argparse
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

from linkly.database.repository import CollectionRepository, LinkRepository
from linkly.database.session import init_db
from linkly.services.system_collections import SystemCollectionService
from linkly.utils.config import get_settings, configure_logging

logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(
        description="Create missing system collections"
    )
    parser.add_argument(
        "--owner",
        default=None,
        help="Only this owner (default: every owner with links)"
    )

    args = parser.parse_args()

    load_dotenv()
    configure_logging(get_settings().LOG_LEVEL)
    init_db()

    service = SystemCollectionService(LinkRepository(), CollectionRepository())

    if args.owner:
        created = service.create_system_collections(args.owner)
        print(f"Created {len(created)} system collections for {args.owner}")
    else:
        stats = service.backfill_system_collections()
        print(
            f"Created {stats['collections_created']} system collections "
            f"for {stats['owners_updated']} of {stats['owners']} owners"
        )


if __name__ == "__main__":
    main()
