"""
Provider selection for sync runs.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from models import StreamProvider

logger = logging.getLogger(__name__)


class ProviderManager:
    def __init__(self, db: Session):
        self.db = db

    def get_providers(self, user_id: Optional[int] = None, provider_id: Optional[int] = None) -> list[StreamProvider]:
        """Providers matching the optional filters, ordered by priority then id."""
        query = self.db.query(StreamProvider)
        if user_id is not None:
            query = query.filter(StreamProvider.u_id == user_id)
        if provider_id is not None:
            query = query.filter(StreamProvider.id == provider_id)
        return query.order_by(StreamProvider.sp_priority, StreamProvider.id).all()

    def update_last_synced(self, provider_id: int) -> None:
        provider = self.db.get(StreamProvider, provider_id)
        if provider is None:
            logger.warning(f"[SYNC] Provider {provider_id} no longer exists, last sync time not recorded")
            return
        provider.sp_last_synced = datetime.utcnow()
        self.db.commit()
