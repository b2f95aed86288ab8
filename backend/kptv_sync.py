#!/usr/bin/env python3
"""
KPTV Provider Sync

Sync stream catalogs from IPTV providers into the KPTV database, log active
streams that providers have dropped, and propagate curated values across
duplicate streams.

Usage:
    kptv-sync sync [--user-id N] [--provider-id N] [--ignore tvg_id,logo]
    kptv-sync testmissing [--user-id N] [--provider-id N]
    kptv-sync fixup [--user-id N] [--provider-id N] [--ignore name]
"""

import argparse
import logging
import sys
import traceback
from pathlib import Path
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import database
from config import ConfigError, SyncSettings, load_settings
from fixup_engine import FixupEngine
from log_utils import configure_logging, install_safe_logging
from missing_checker import MissingChecker
from provider_manager import ProviderManager
from providers import FetcherFactory, FetchError
from reconciliation import IGNORE_FIELD_COLUMNS, resolve_ignore_fields
from sync_engine import SyncEngine

logger = logging.getLogger(__name__)

ACTIONS = ("sync", "testmissing", "fixup")

# ── Colours ────────────────────────────────────────────────────────────
GREEN = "\033[0;32m"
RED = "\033[0;31m"
YELLOW = "\033[1;33m"
NC = "\033[0m"  # No Color

RULE = "=" * 60


def _c(text: str, colour: str) -> str:
    """Colour text when writing to a terminal."""
    if sys.stdout.isatty():
        return f"{colour}{text}{NC}"
    return text


def print_summary(title: str, lines: list[tuple[str, object]], ok: bool = True) -> None:
    print(RULE)
    print(_c(title, GREEN if ok else YELLOW))
    print(RULE)
    for label, value in lines:
        print(f"{label}: {value}")
    print(RULE)
    print()


class SyncApp:
    """Runs one CLI action over the selected providers."""

    def __init__(
        self,
        db: Session,
        settings: SyncSettings,
        ignore_columns: Optional[set[str]] = None,
        fetcher_factory: Optional[FetcherFactory] = None,
    ):
        self.db = db
        self.settings = settings
        self.ignore_columns = set(ignore_columns or ())
        self.providers = ProviderManager(db)
        self.sync_engine = SyncEngine(db, settings, self.ignore_columns, fetcher_factory)
        self.missing_checker = MissingChecker(db, settings, fetcher_factory)
        self.fixup_engine = FixupEngine(db, settings, self.ignore_columns)

    def run_sync(self, user_id: Optional[int] = None, provider_id: Optional[int] = None) -> int:
        """Sync every selected provider. Returns the number of failed providers."""
        providers = self.providers.get_providers(user_id, provider_id)
        if not providers:
            print("No providers found")
            return 0

        total_synced = 0
        errors = 0
        for provider in providers:
            logger.info(f"Syncing provider {provider.id} - {provider.sp_name}")
            try:
                result = self.sync_engine.sync_provider(provider)
            except Exception as e:
                self.db.rollback()
                logger.exception(f"[SYNC] Unexpected error syncing provider {provider.id}: {e}")
                errors += 1
                continue

            if result.success:
                total_synced += result.processed
                self.providers.update_last_synced(provider.id)
            else:
                errors += 1
                print(_c(f"Error syncing provider {provider.id}: {result.error}", RED))

        print_summary("SYNC COMPLETE", [
            ("Providers processed", len(providers)),
            ("Streams synced", total_synced),
            ("Errors", errors),
        ], ok=errors == 0)
        return errors

    def run_test_missing(self, user_id: Optional[int] = None, provider_id: Optional[int] = None) -> int:
        """Log missing streams for every selected provider. Returns the number of failed providers."""
        providers = self.providers.get_providers(user_id, provider_id)
        if not providers:
            print("No providers found")
            return 0

        total_missing = 0
        errors = 0
        for provider in providers:
            logger.info(f"Checking provider {provider.id}")
            try:
                total_missing += len(self.missing_checker.check_provider(provider))
            except FetchError as e:
                self.db.rollback()
                errors += 1
                print(_c(f"Error checking provider {provider.id}: {e}", RED))
            except SQLAlchemyError as e:
                self.db.rollback()
                errors += 1
                logger.error(f"[MISSING] Could not record missing streams for provider {provider.id}: {e}")
                print(_c(f"Error checking provider {provider.id}: {e}", RED))

        print_summary("MISSING CHECK COMPLETE", [
            ("Providers checked", len(providers)),
            ("Missing streams", total_missing),
            ("Errors", errors),
        ], ok=errors == 0)
        return errors

    def run_fixup(self, user_id: Optional[int] = None, provider_id: Optional[int] = None) -> int:
        """Run the fixup passes once per user owning a selected provider. Always returns 0."""
        providers = self.providers.get_providers(user_id, provider_id)
        if not providers:
            print("No providers found")
            return 0

        total_fixed = 0
        skipped = 0
        for uid in sorted({p.u_id for p in providers}):
            logger.info(f"Running fixup for user {uid}")
            result = self.fixup_engine.fixup_user(uid, provider_id)
            total_fixed += result.total
            skipped += result.failed_groups

        print_summary("FIXUP COMPLETE", [
            ("Providers processed", len(providers)),
            ("Streams fixed", total_fixed),
            ("Groups skipped", skipped),
        ])
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kptv-sync",
        description="IPTV Provider Sync",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Actions:\n"
            "  sync          Sync streams from providers\n"
            "  testmissing   Check for missing streams\n"
            "  fixup         Run metadata fixup\n"
            "\n"
            "Examples:\n"
            "  kptv-sync sync\n"
            "  kptv-sync sync --user-id 1\n"
            "  kptv-sync sync --provider-id 32\n"
            "  kptv-sync sync --ignore tvg_id,logo\n"
        ),
    )
    parser.add_argument("action", nargs="?", help="sync, testmissing or fixup")
    parser.add_argument("--user-id", type=int, help="Filter by user ID")
    parser.add_argument("--provider-id", type=int, help="Filter by provider ID")
    parser.add_argument(
        "--ignore",
        default="",
        help=f"Fields to leave untouched (comma-separated): {', '.join(IGNORE_FIELD_COLUMNS)}",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--config", type=Path, help="Path to settings.json")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        # --help exits 0, usage errors exit 1
        return 0 if e.code in (0, None) else 1

    if args.action is None:
        parser.print_help()
        return 0

    if args.action not in ACTIONS:
        print(_c(f"Error: Invalid action '{args.action}'", RED))
        print()
        parser.print_help()
        return 1

    ignore_names = [name.strip() for name in args.ignore.split(",") if name.strip()]
    try:
        ignore_columns = resolve_ignore_fields(ignore_names)
    except ValueError as e:
        print(_c(f"Error: {e}", RED))
        return 1

    install_safe_logging()
    db = None
    try:
        settings = load_settings(args.config)
        configure_logging("DEBUG" if args.debug else settings.log_level)

        if ignore_names:
            print(f"Ignoring fields during sync: {', '.join(ignore_names)}")

        database.init_db(settings.database_url)
        db = database.get_session()
        app = SyncApp(db, settings, ignore_columns)

        if args.action == "sync":
            errors = app.run_sync(args.user_id, args.provider_id)
        elif args.action == "testmissing":
            errors = app.run_test_missing(args.user_id, args.provider_id)
        else:
            errors = app.run_fixup(args.user_id, args.provider_id)
        return 1 if errors else 0

    except ConfigError as e:
        print(_c(f"Configuration error: {e}", RED))
        return 1
    except Exception as e:
        print(_c(f"Fatal error: {e}", RED))
        if args.debug:
            traceback.print_exc()
        return 1
    finally:
        if db is not None:
            db.close()
        database.dispose_db()


if __name__ == "__main__":
    sys.exit(main())
