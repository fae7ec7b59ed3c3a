"""Maintenance commands for the operation store and its search index.

Usage:
    opledger init-db        # Create the store and the search index
    opledger reindex        # Rebuild the search index from the store
    opledger index-count    # Compare store and index record counts
    opledger clear-index    # Remove every document from the search index
"""

import argparse
import logging
import sys

from . import repo, search, service
from .db import init_db
from .errors import SearchBackendError
from .log import setup_logging
from .settings import get_settings

logger = logging.getLogger(__name__)


def cmd_init_db(settings, args):
    init_db(settings)
    search.init_index(settings.index_path)
    print(f"Store:  {settings.db_path}")
    print(f"Index:  {settings.index_path}")
    return 0


def cmd_reindex(settings, args):
    init_db(settings)
    search.init_index(settings.index_path)
    count = service.reindex(settings)
    print(f"Indexed {count} operations")
    return 0


def cmd_index_count(settings, args):
    stored = repo.count_operations(settings.db_path)
    indexed = search.count_indexed(settings.index_path)
    print(f"Store:  {stored}")
    print(f"Index:  {indexed}")
    if stored != indexed:
        print("Index is out of date, run `opledger reindex`")
        return 1
    return 0


def cmd_clear_index(settings, args):
    if not args.yes:
        print("Refusing to clear the search index without --yes")
        return 1
    search.clear_index(settings.index_path)
    print("Search index cleared")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="opledger",
        description="Operation store maintenance",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p = subparsers.add_parser("init-db", help="Create the store and the search index")
    p.set_defaults(func=cmd_init_db)

    p = subparsers.add_parser("reindex", help="Rebuild the search index from the store")
    p.set_defaults(func=cmd_reindex)

    p = subparsers.add_parser("index-count", help="Compare store and index record counts")
    p.set_defaults(func=cmd_index_count)

    p = subparsers.add_parser("clear-index", help="Remove every document from the index")
    p.add_argument("--yes", action="store_true", help="Confirm the deletion")
    p.set_defaults(func=cmd_clear_index)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level)
    try:
        return args.func(settings, args)
    except SearchBackendError as exc:
        logger.error("Search index error: %s", exc)
        print(f"Error: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
