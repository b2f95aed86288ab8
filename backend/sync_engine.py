"""
Sync Engine - runs one provider through fetch, filter, stage and reconcile.

The catalog is never materialized as a whole: the fetcher's generator is
filtered lazily and consumed in batches by the staging loader. A provider
failure is captured in its ProviderSyncResult so the caller can carry on with
the next provider.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import SyncSettings
from filter_engine import FilterConfigError, FilterEngine
from models import StreamProvider
from providers import FetcherFactory, FetchError, create_fetcher
from reconciliation import ReconciliationEngine, ReconciliationError
from staging_loader import StagingLoader
from stream_record import StreamRecord

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    FILTERING = "filtering"
    STAGING = "staging"
    RECONCILING = "reconciling"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass
class ProviderSyncResult:
    """Outcome of one provider's sync."""
    provider_id: int
    state: SyncState = SyncState.IDLE
    fetched: int = 0
    kept: int = 0
    staged: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    error: Optional[str] = None
    # Stage that was running when the sync failed
    failed_during: Optional[SyncState] = None

    @property
    def success(self) -> bool:
        return self.state == SyncState.COMMITTED

    @property
    def processed(self) -> int:
        """Streams written to the live table."""
        return self.inserted + self.updated


class SyncEngine:
    """Per-provider sync pipeline."""

    def __init__(
        self,
        db: Session,
        settings: SyncSettings,
        ignore_columns: Optional[set[str]] = None,
        fetcher_factory: Optional[FetcherFactory] = None,
    ):
        self.db = db
        self.settings = settings
        self.fetcher_factory = fetcher_factory or (lambda provider: create_fetcher(provider, settings))
        self.filter_engine = FilterEngine(db)
        self.staging = StagingLoader(db, settings)
        self.reconciler = ReconciliationEngine(db, settings, ignore_columns)

    def _count_fetched(self, records: Iterable[StreamRecord], result: ProviderSyncResult) -> Iterator[StreamRecord]:
        for record in records:
            result.fetched += 1
            yield record

    def sync_provider(self, provider: StreamProvider) -> ProviderSyncResult:
        """
        Sync one provider into kptv_streams.

        Never raises for provider-level failures; check result.state.
        """
        result = ProviderSyncResult(provider_id=provider.id)
        user_id = provider.u_id
        logger.info(f"Provider: {provider.sp_name} (ID: {provider.id})")

        try:
            result.state = SyncState.FETCHING
            logger.info("Fetching streams from provider...")
            try:
                fetcher = self.fetcher_factory(provider)
            except ValueError as e:
                raise FetchError(str(e), provider_id=provider.id) from e

            with fetcher:
                records = self._count_fetched(fetcher.fetch_streams(), result)

                result.state = SyncState.FILTERING
                filtering = False
                if provider.sp_should_filter:
                    logger.info("Applying filters...")
                    rules = self.filter_engine.load_rules(user_id)
                    if rules:
                        records = self.filter_engine.apply(records, rules)
                        filtering = True
                    else:
                        logger.info("No filters configured - all streams will be processed")
                else:
                    logger.info("Filtering disabled for this provider")

                result.state = SyncState.STAGING
                logger.info("Inserting streams into temporary table...")
                result.staged = self.staging.load(user_id, provider.id, records)

            logger.info(f"Retrieved {result.fetched:,} streams from provider")
            if filtering:
                logger.info(self.filter_engine.summary())
                result.kept = self.filter_engine.kept
            else:
                result.kept = result.fetched

            if result.staged == 0:
                logger.info("No streams to sync after filtering")
                result.state = SyncState.COMMITTED
                return result

            result.state = SyncState.RECONCILING
            logger.info("Syncing to main streams table...")
            outcome = self.reconciler.reconcile(user_id, provider.id)
            result.inserted = outcome.inserted
            result.updated = outcome.updated
            result.unchanged = outcome.unchanged
            result.state = SyncState.COMMITTED
            logger.info(f"Sync complete: {result.processed:,} streams processed")

        except (FetchError, FilterConfigError, ReconciliationError, SQLAlchemyError) as e:
            self._fail(result, provider, e)

        return result

    def _fail(self, result: ProviderSyncResult, provider: StreamProvider, error: Exception) -> None:
        # Fetch errors surface lazily while staging consumes the catalog
        result.failed_during = SyncState.FETCHING if isinstance(error, FetchError) else result.state
        result.state = SyncState.FAILED
        result.error = str(error)
        logger.error(f"[SYNC] Provider {provider.id} failed during {result.failed_during.value}: {error}")

        if isinstance(error, SQLAlchemyError):
            self.db.rollback()
        # Staging must not outlive a failed run
        try:
            self.staging.clear(provider.u_id, provider.id)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"[STAGING] Could not clear staging for provider {provider.id}: {e}")
