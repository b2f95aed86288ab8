"""
Reconciliation of staged provider rows into the live streams table.

Partitions staged rows into new, changed and unchanged by stream URI (with an
optional fallback on the original name when a provider rotates its URIs),
then applies inserts and updates for the provider in one transaction.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import SyncSettings
from models import Stream, StreamTemp
from stream_record import StreamType

logger = logging.getLogger(__name__)

# --ignore vocabulary -> kptv_streams column
IGNORE_FIELD_COLUMNS = {
    "tvg_id": "s_tvg_id",
    "logo": "s_tvg_logo",
    "tvg_group": "s_tvg_group",
    "name": "s_name",
    "channel": "s_channel",
}

# Stream column -> staging column for the provider-owned fields
SYNCED_FIELDS = {
    "s_orig_name": "s_orig_name",
    "s_stream_uri": "s_stream_uri",
    "s_type_id": "s_type_id",
    "s_tvg_id": "s_tvg_id",
    "s_tvg_logo": "s_tvg_logo",
    "s_tvg_group": "s_group",
    "s_extras": "s_extras",
}


class ReconciliationError(Exception):
    """A provider's reconciliation failed and was rolled back."""

    def __init__(self, message: str, provider_id: Optional[int] = None):
        super().__init__(message)
        self.provider_id = provider_id


def resolve_ignore_fields(names: Iterable[str]) -> set[str]:
    """
    Map --ignore names to stream columns.

    Raises:
        ValueError: listing any unknown names
    """
    names = [n.strip() for n in names if n and n.strip()]
    invalid = [n for n in names if n not in IGNORE_FIELD_COLUMNS]
    if invalid:
        raise ValueError(f"Invalid ignore fields: {', '.join(invalid)}")
    return {IGNORE_FIELD_COLUMNS[n] for n in names}


@dataclass
class ReconciliationPlan:
    """Planned writes for one provider."""
    inserts: list[dict] = field(default_factory=list)
    updates: list[dict] = field(default_factory=list)
    unchanged: int = 0
    uri_matches: int = 0
    name_matches: int = 0


@dataclass
class ReconciliationResult:
    """Outcome of an applied reconciliation."""
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0

    @property
    def processed(self) -> int:
        return self.inserted + self.updated


def _staged_value(staged: StreamTemp, column: str):
    value = getattr(staged, SYNCED_FIELDS[column])
    if column == "s_type_id":
        return int(value or 0)
    if column in ("s_orig_name", "s_stream_uri"):
        return value or ""
    return value


def _normalize(column: str, value):
    """Compare NULL and "" as equal for optional text columns."""
    if column == "s_type_id":
        return int(value or 0)
    if value is None:
        return ""
    return value


class ReconciliationEngine:
    """
    Diffs staged rows against live rows and writes the result.

    Curated columns (s_name, s_channel, s_active) are never written for
    existing streams. Columns in ignore_columns are neither compared nor written.
    """

    def __init__(self, db: Session, settings: SyncSettings, ignore_columns: Optional[set[str]] = None):
        self.db = db
        self.settings = settings
        self.ignore_columns = set(ignore_columns or ())
        self.compared_columns = [c for c in SYNCED_FIELDS if c not in self.ignore_columns]

    def plan(self, staged_rows: Iterable[StreamTemp], existing_rows: Iterable[Stream],
             user_id: int, provider_id: int) -> ReconciliationPlan:
        """Compute inserts and updates without touching the database."""
        plan = ReconciliationPlan()

        by_uri: dict[str, Stream] = {}
        for row in existing_rows:
            by_uri.setdefault(row.s_stream_uri, row)

        matched_ids: set[int] = set()
        unmatched: list[StreamTemp] = []

        # Pass 1: exact URI matches
        for temp in staged_rows:
            if int(temp.s_type_id or 0) == StreamType.VOD:
                continue
            row = by_uri.get(temp.s_stream_uri)
            if row is not None and row.id not in matched_ids:
                matched_ids.add(row.id)
                plan.uri_matches += 1
                self._plan_update(plan, row, temp)
            else:
                unmatched.append(temp)

        # Pass 2: same original name, URI rotated by the provider
        by_name: dict[str, list[Stream]] = {}
        if self.settings.match_by_name:
            for row in by_uri.values():
                if row.id not in matched_ids:
                    by_name.setdefault((row.s_orig_name or "").lower(), []).append(row)

        for temp in unmatched:
            candidates = by_name.get((temp.s_orig_name or "").lower())
            if candidates:
                row = candidates.pop(0)
                plan.name_matches += 1
                self._plan_update(plan, row, temp)
            else:
                plan.inserts.append(self._new_stream(temp, user_id, provider_id))

        return plan

    def _plan_update(self, plan: ReconciliationPlan, row: Stream, temp: StreamTemp) -> None:
        changes = {}
        for column in self.compared_columns:
            new_value = _staged_value(temp, column)
            if _normalize(column, getattr(row, column)) != _normalize(column, new_value):
                changes[column] = new_value
        if changes:
            changes["id"] = row.id
            changes["s_updated"] = datetime.utcnow()
            plan.updates.append(changes)
        else:
            plan.unchanged += 1

    def _new_stream(self, temp: StreamTemp, user_id: int, provider_id: int) -> dict:
        """New streams land inactive and unnumbered."""
        return {
            "u_id": user_id,
            "p_id": provider_id,
            "s_type_id": int(temp.s_type_id or 0),
            "s_active": False,
            "s_channel": "0",
            "s_name": temp.s_orig_name,
            "s_orig_name": temp.s_orig_name,
            "s_stream_uri": temp.s_stream_uri,
            "s_tvg_id": temp.s_tvg_id,
            "s_tvg_logo": temp.s_tvg_logo,
            "s_tvg_group": temp.s_group,
            "s_extras": temp.s_extras,
            "s_created": datetime.utcnow(),
        }

    def load_staged(self, user_id: int, provider_id: int) -> list[StreamTemp]:
        return (
            self.db.query(StreamTemp)
            .filter(StreamTemp.u_id == user_id, StreamTemp.p_id == provider_id)
            .order_by(StreamTemp.id)
            .all()
        )

    def load_existing(self, user_id: int, provider_id: int) -> list[Stream]:
        return (
            self.db.query(Stream)
            .filter(Stream.u_id == user_id, Stream.p_id == provider_id)
            .order_by(Stream.id)
            .all()
        )

    def reconcile(self, user_id: int, provider_id: int) -> ReconciliationResult:
        """
        Reconcile the provider's staging scope into kptv_streams.

        Inserts, updates and the staging cleanup commit together; on any
        database error everything is rolled back.

        Raises:
            ReconciliationError: when the transaction fails
        """
        try:
            staged = self.load_staged(user_id, provider_id)
            if not staged:
                logger.info("No streams in temporary table")
                return ReconciliationResult()

            plan = self.plan(staged, self.load_existing(user_id, provider_id), user_id, provider_id)
            logger.info(
                f"Analysis: {plan.uri_matches:,} matched by URI, {plan.name_matches:,} by name; "
                f"{len(plan.updates):,} updates, {len(plan.inserts):,} to insert, {plan.unchanged:,} unchanged"
            )

            self._apply_inserts(plan.inserts)
            self._apply_updates(plan.updates)

            logger.info("Cleaning up temporary table...")
            self.db.query(StreamTemp).filter(
                StreamTemp.u_id == user_id,
                StreamTemp.p_id == provider_id,
            ).delete(synchronize_session=False)

            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"[RECONCILE] Provider {provider_id} rolled back: {e}")
            raise ReconciliationError(
                f"Reconciliation failed for provider {provider_id}: {e}", provider_id=provider_id
            ) from e

        # Loaded rows may hold pre-update values
        self.db.expire_all()
        return ReconciliationResult(
            inserted=len(plan.inserts),
            updated=len(plan.updates),
            unchanged=plan.unchanged,
        )

    def _apply_inserts(self, inserts: list[dict]) -> None:
        if not inserts:
            return
        logger.info("Inserting new streams...")
        size = self.settings.insert_batch_size
        for start in range(0, len(inserts), size):
            self.db.bulk_insert_mappings(Stream, inserts[start:start + size])
        self.db.flush()
        logger.info(f"Inserted {len(inserts):,} new streams")

    def _apply_updates(self, updates: list[dict]) -> None:
        if not updates:
            return
        logger.info("Updating changed streams...")
        interval = self.settings.progress_interval
        size = self.settings.insert_batch_size
        done = 0
        for start in range(0, len(updates), size):
            chunk = updates[start:start + size]
            self.db.bulk_update_mappings(Stream, chunk)
            before = done
            done += len(chunk)
            if done // interval > before // interval:
                logger.info(f"  Updated {done:,} streams...")
        self.db.flush()
        logger.info(f"Updated {len(updates):,} streams")
