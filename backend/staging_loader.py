"""
Staging loader for provider syncs.

Writes one provider's filtered catalog into kptv_stream_temp. The provider's
staging scope is always cleared before loading, so an aborted earlier run can
never leave stale rows behind.
"""
import logging
from typing import Iterable

from sqlalchemy.orm import Session

from config import SyncSettings
from models import StreamTemp
from stream_record import StreamRecord

logger = logging.getLogger(__name__)


class StagingLoader:
    """Truncate-and-load of the per-provider staging scope."""

    def __init__(self, db: Session, settings: SyncSettings):
        self.db = db
        self.batch_size = settings.staging_batch_size

    def _scope(self, user_id: int, provider_id: int):
        return self.db.query(StreamTemp).filter(
            StreamTemp.u_id == user_id,
            StreamTemp.p_id == provider_id,
        )

    def clear(self, user_id: int, provider_id: int, commit: bool = True) -> int:
        """Delete the provider's staging rows. Returns the number removed."""
        removed = self._scope(user_id, provider_id).delete(synchronize_session=False)
        if commit:
            self.db.commit()
        logger.debug(f"[STAGING] Cleared {removed} staging rows for provider {provider_id}")
        return removed

    def count(self, user_id: int, provider_id: int) -> int:
        return self._scope(user_id, provider_id).count()

    def load(self, user_id: int, provider_id: int, records: Iterable[StreamRecord]) -> int:
        """
        Replace the provider's staging scope with the given records.

        Records are consumed lazily and inserted in batches. A URI seen twice
        in one run keeps its first occurrence. VOD records are not staged.

        Returns:
            Number of rows staged
        """
        self.clear(user_id, provider_id)

        seen_uris: set[str] = set()
        batch: list[dict] = []
        staged = 0
        try:
            for record in records:
                if record.is_vod or not record.stream_uri or record.stream_uri in seen_uris:
                    continue
                seen_uris.add(record.stream_uri)
                batch.append(record.to_staging_row(user_id, provider_id))
                if len(batch) >= self.batch_size:
                    staged += self._flush(batch)
                    batch = []
            if batch:
                staged += self._flush(batch)
            self.db.commit()
        except Exception:
            # Leave nothing half-loaded behind
            self.db.rollback()
            self.clear(user_id, provider_id)
            raise

        logger.info(f"Inserted {staged:,} records into temporary table")
        return staged

    def _flush(self, batch: list[dict]) -> int:
        self.db.bulk_insert_mappings(StreamTemp, batch)
        self.db.flush()
        return len(batch)
