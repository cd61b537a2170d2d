#!/usr/bin/env python3

import argparse
import json
import os
import sys
from typing import List, Optional

from colored_logger import setup_colored_logging, get_colored_logger
from main import build_bot, open_store
from settings import DEFAULT_SETTINGS_FILE, Settings
from stickersearch import (
    IngestionPipeline,
    QueryEngine,
    ResourceMonitor,
    ScoringPolicy,
    StickerIndexer,
    StickerSearchError,
    StickerStore,
    load_jsonl,
)

logger = get_colored_logger(__name__)


class StickerCLI:
    """
    Command-line interface for administering the sticker index.

    Provides commands for:
    - Indexing sticker metadata from JSON-lines feeds
    - Searching the index the way the inline bot does
    - Removing stickers and whole packs
    - Viewing statistics and checking index integrity
    - Running the Telegram bot
    """

    def __init__(
        self, store: Optional[StickerStore] = None, settings: Optional[Settings] = None
    ):
        """
        Args:
            store: Use this store instead of opening one from settings or --db
            settings: Preloaded settings; otherwise read from --settings on demand
        """
        self.store = store
        self.settings = settings
        self._owns_store = False

    def run(self, args: List[str] = None) -> int:
        """
        Run the CLI with the given arguments.

        Args:
            args: Command line arguments. If None, uses sys.argv.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        parser = self._create_parser()
        parsed_args = parser.parse_args(args)

        if parsed_args.verbose:
            setup_colored_logging(level="DEBUG")
        else:
            setup_colored_logging(level="INFO")

        if not hasattr(parsed_args, "func"):
            parser.print_help()
            return 1

        try:
            return parsed_args.func(parsed_args)
        except KeyboardInterrupt:
            logger.info("Operation cancelled by user")
            return 1
        except StickerSearchError as e:
            logger.error("%s failed: %s", parsed_args.command, e)
            return 1
        finally:
            if self._owns_store and self.store is not None:
                self.store.close()
                self.store = None
                self._owns_store = False

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create the argument parser with all subcommands."""
        parser = argparse.ArgumentParser(
            prog="sticker-search",
            description="Index and search Telegram stickers",
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Examples:
  %(prog)s index stickers.jsonl              # Index a JSON-lines metadata feed
  %(prog)s search "happy cat"                # Rank stickers for a query
  %(prog)s search "😀" --offset 50           # Second page of results
  %(prog)s remove-pack cats_by_bot           # Drop a whole sticker pack
  %(prog)s check --repair                    # Verify and rebuild the index
  %(prog)s serve                             # Run the inline bot
            """,
        )

        parser.add_argument(
            "-v", "--verbose", action="store_true", help="Enable verbose logging"
        )
        parser.add_argument(
            "--settings",
            default=DEFAULT_SETTINGS_FILE,
            help="Path to settings.json (default: settings.json)",
        )
        parser.add_argument(
            "--db", help="Sticker database path (overrides settings; skips settings.json)"
        )

        subparsers = parser.add_subparsers(dest="command", help="Available commands")

        index_parser = subparsers.add_parser(
            "index", help="Index sticker metadata from a JSON-lines file"
        )
        index_parser.add_argument("feed", help="JSON-lines file, one sticker per line")
        index_parser.add_argument(
            "--max-workers",
            type=int,
            help="Maximum parallel workers for ingestion (default: from settings)",
        )
        index_parser.set_defaults(func=self._cmd_index)

        search_parser = subparsers.add_parser("search", help="Search indexed stickers")
        search_parser.add_argument("query", help="Search text and/or emoji")
        search_parser.add_argument(
            "-l", "--limit", type=int, default=20, help="Maximum results (default: 20)"
        )
        search_parser.add_argument(
            "-o", "--offset", type=int, default=0, help="Results to skip (default: 0)"
        )
        search_parser.add_argument(
            "--timeout", type=float, help="Query deadline in seconds (default: none)"
        )
        search_parser.add_argument(
            "--format",
            choices=["table", "json"],
            default="table",
            help="Output format (default: table)",
        )
        search_parser.set_defaults(func=self._cmd_search)

        remove_parser = subparsers.add_parser("remove", help="Remove stickers by id")
        remove_parser.add_argument("sticker_ids", nargs="+", help="Sticker ids to remove")
        remove_parser.set_defaults(func=self._cmd_remove)

        pack_parser = subparsers.add_parser(
            "remove-pack", help="Remove every sticker of a pack"
        )
        pack_parser.add_argument("pack_id", help="Sticker set name")
        pack_parser.set_defaults(func=self._cmd_remove_pack)

        stats_parser = subparsers.add_parser("stats", help="Show index statistics")
        stats_parser.set_defaults(func=self._cmd_stats)

        check_parser = subparsers.add_parser(
            "check", help="Check database and index integrity"
        )
        check_parser.add_argument(
            "--repair",
            action="store_true",
            help="Rebuild postings from records and vacuum if issues are found",
        )
        check_parser.set_defaults(func=self._cmd_check)

        serve_parser = subparsers.add_parser("serve", help="Run the Telegram bot")
        serve_parser.set_defaults(func=self._cmd_serve)

        return parser

    def _get_settings(self, args) -> Settings:
        if self.settings is None:
            self.settings = Settings(args.settings)
        return self.settings

    def _get_store(self, args) -> StickerStore:
        if self.store is not None:
            return self.store

        if args.db:
            self.store = StickerStore(args.db)
        else:
            self.store = open_store(self._get_settings(args))
        self._owns_store = True
        return self.store

    def _get_policy(self, args) -> ScoringPolicy:
        if self.settings is None and args.db:
            return ScoringPolicy()
        return self._get_settings(args).scoring_policy()

    def _cmd_index(self, args) -> int:
        """Handle index command."""
        if not os.path.isfile(args.feed):
            logger.error("Feed file does not exist: %s", args.feed)
            return 1

        indexer = StickerIndexer(self._get_store(args), self._get_policy(args))
        if self.settings is not None:
            pipeline = IngestionPipeline(
                indexer,
                max_workers=args.max_workers or self.settings.ingest_workers,
                max_retries=self.settings.ingest_max_retries,
                retry_backoff=self.settings.ingest_retry_backoff_seconds,
                monitor=ResourceMonitor(self.settings.max_memory_percent),
            )
        else:
            pipeline = IngestionPipeline(
                indexer, max_workers=args.max_workers or 4, monitor=ResourceMonitor()
            )

        logger.info("Indexing sticker feed: %s", args.feed)
        stats = pipeline.ingest_batch(load_jsonl(args.feed))

        print("\nIndexing Results:")
        print(f"  Records received: {stats['received']}")
        print(f"  Records ingested: {stats['ingested']}")
        print(f"  Records rejected: {stats['rejected']}")
        print(f"  Records failed: {stats['failed']}")
        print(f"  Retries: {stats['retries']}")
        print(f"  Time elapsed: {stats['elapsed_time']:.1f} seconds")

        if stats["failed"] > 0:
            print(f"  ⚠️  {stats['failed']} records failed to index")
            return 1

        print("  ✅ Indexing completed successfully")
        return 0

    def _cmd_search(self, args) -> int:
        """Handle search command."""
        if args.limit < 0 or args.offset < 0:
            logger.error("--limit and --offset must not be negative")
            return 1

        engine = QueryEngine(self._get_store(args), self._get_policy(args))
        results = engine.search(args.query, args.limit, args.offset, timeout=args.timeout)

        if args.format == "json":
            print(json.dumps([list(result.as_pair()) for result in results], indent=2))
            return 0

        if not results:
            print("No results found.")
            return 0

        print(f"\nFound {len(results)} result(s):")
        print(f"{'#':<4} {'Sticker':<32} {'Score':>12}  Matched")
        print("-" * 72)
        for i, result in enumerate(results, args.offset + 1):
            print(
                f"{i:<4} {result.sticker_id:<32} {result.score:>12.4f}  "
                f"{' '.join(result.matched_terms)}"
            )
        return 0

    def _cmd_remove(self, args) -> int:
        """Handle remove command."""
        indexer = StickerIndexer(self._get_store(args), self._get_policy(args))
        missing = 0

        for sticker_id in args.sticker_ids:
            if indexer.remove(sticker_id):
                print(f"✅ Removed sticker {sticker_id}")
            else:
                print(f"❌ Sticker {sticker_id} is not indexed")
                missing += 1

        return 1 if missing else 0

    def _cmd_remove_pack(self, args) -> int:
        """Handle remove-pack command."""
        indexer = StickerIndexer(self._get_store(args), self._get_policy(args))
        removed = indexer.remove_pack(args.pack_id)

        if removed == 0:
            print(f"No stickers indexed for pack {args.pack_id}")
            return 1

        print(f"✅ Removed {removed} sticker(s) from pack {args.pack_id}")
        return 0

    def _cmd_stats(self, args) -> int:
        """Handle stats command."""
        stats = self._get_store(args).stats()

        print("\nSticker Index Statistics:")
        print(f"  Total stickers: {stats['total_records']:,}")
        print(f"  Total packs: {stats['total_packs']:,}")
        print(f"  Indexed terms: {stats['total_terms']:,}")
        print(f"  Selections recorded: {stats['total_selections']:,}")
        print(f"  Taggers: {stats['total_taggers']:,} ({stats['allowed_taggers']:,} allowed)")
        print(f"  Database size: {stats['database_bytes'] / 1024:.1f} KiB")
        return 0

    def _cmd_check(self, args) -> int:
        """Handle check command."""
        store = self._get_store(args)
        indexer = StickerIndexer(store, self._get_policy(args))
        results = store.integrity_check()
        issues = list(results["issues_found"])

        if results["database_integrity"]:
            stale = indexer.stale_records()
            if stale:
                issues.append(f"stale weights: {len(stale)} sticker(s) use old scoring weights")

        if not issues:
            print("✅ No integrity issues found")
            return 0

        print(f"Found {len(issues)} issue(s):")
        for issue in issues:
            print(f"  • {issue}")

        if not args.repair:
            return 1

        if not results["database_integrity"]:
            logger.failure("SQLite reports corruption; restore the database from a backup")
            return 1

        rebuilt = indexer.rebuild()
        store.vacuum()
        print(
            f"✅ Rebuilt {rebuilt['terms']} posting lists for {rebuilt['records']} stickers"
        )
        return 0

    def _cmd_serve(self, args) -> int:
        """Handle serve command."""
        settings = self._get_settings(args)
        bot = build_bot(settings, self._get_store(args))
        bot.run(poll_timeout=settings.poll_timeout_seconds)
        return 0


def main():
    """Main entry point for the sticker CLI."""
    cli = StickerCLI()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
