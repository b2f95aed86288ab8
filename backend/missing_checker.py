"""
Missing stream checker.

Compares a provider's current catalog with the user's active streams and logs
the ones that disappeared to kptv_stream_missing. Nothing is deleted or
deactivated; the log is for manual review.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from config import SyncSettings
from models import Stream, StreamMissing, StreamProvider
from providers import FetcherFactory, FetchError, create_fetcher

logger = logging.getLogger(__name__)


class MissingChecker:
    """Finds active streams that a provider no longer serves."""

    def __init__(self, db: Session, settings: SyncSettings, fetcher_factory: Optional[FetcherFactory] = None):
        self.db = db
        self.settings = settings
        self.fetcher_factory = fetcher_factory or (lambda provider: create_fetcher(provider, settings))

    def fetch_uris(self, provider: StreamProvider) -> set[str]:
        """
        All stream URIs currently served by the provider (unfiltered).

        Raises:
            FetchError: when the catalog cannot be read
        """
        try:
            fetcher = self.fetcher_factory(provider)
        except ValueError as e:
            raise FetchError(str(e), provider_id=provider.id) from e

        with fetcher:
            return {record.stream_uri for record in fetcher.fetch_streams() if record.stream_uri}

    def active_streams(self, provider: StreamProvider) -> list[Stream]:
        return (
            self.db.query(Stream)
            .filter(
                Stream.u_id == provider.u_id,
                Stream.p_id == provider.id,
                Stream.s_active == True,  # noqa: E712
            )
            .order_by(Stream.id)
            .all()
        )

    def check_provider(self, provider: StreamProvider) -> list[int]:
        """
        Record the provider's active streams that are absent from its catalog.

        Returns:
            IDs of the missing streams (one StreamMissing row appended per ID)

        Raises:
            FetchError: when the catalog cannot be read; nothing is recorded
        """
        uris = self.fetch_uris(provider)
        logger.info(f"[MISSING] Provider {provider.id} serves {len(uris):,} streams")

        active = self.active_streams(provider)
        if not active:
            return []

        missing = [s.id for s in active if s.s_stream_uri not in uris]
        if missing:
            self.record_missing(provider, missing)
        logger.info(f"[MISSING] {len(missing):,} of {len(active):,} active streams missing from provider {provider.id}")
        return missing

    def record_missing(self, provider: StreamProvider, stream_ids: list[int]) -> None:
        now = datetime.utcnow()
        self.db.bulk_insert_mappings(StreamMissing, [
            {
                "u_id": provider.u_id,
                "p_id": provider.id,
                "stream_id": stream_id,
                "other_id": 0,
                "created_at": now,
            }
            for stream_id in stream_ids
        ])
        self.db.commit()
