"""
Fixup engine - propagate a user's curation across duplicate streams.

When the same channel is offered by several providers (or re-added after a
provider change), the user's custom name, channel number, logo and TVG id are
copied from the most recently updated row onto its siblings.

Passes, each over a fresh read of the user's streams ordered
s_updated DESC, id DESC:
1. names: grouped by original name and type
2. channels: grouped by curated name
3. metadata (logo, tvg id): grouped by curated name
"""
import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import SyncSettings
from models import Stream

logger = logging.getLogger(__name__)


class FixupWarning(UserWarning):
    """A duplicate group could not be updated and was skipped."""

    def __init__(self, message: str, column: str = "", key: str = ""):
        super().__init__(message)
        self.column = column
        self.key = key


@dataclass
class FixupResult:
    names: int = 0
    channels: int = 0
    logos: int = 0
    tvg_ids: int = 0
    failed_groups: int = 0
    warnings: list[FixupWarning] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.names + self.channels + self.logos + self.tvg_ids


def _clean(value) -> str:
    return (value or "").strip()


class FixupEngine:
    """Copies curated values between streams that represent the same channel."""

    def __init__(self, db: Session, settings: SyncSettings, ignore_columns: Optional[set[str]] = None):
        self.db = db
        self.settings = settings
        self.ignore_columns = set(ignore_columns or ())
        self._pending = 0

    def should_fix(self, column: str) -> bool:
        return column not in self.ignore_columns

    def _rows(self, user_id: int, provider_id: Optional[int], *columns):
        query = self.db.query(Stream.id, *columns).filter(Stream.u_id == user_id)
        if provider_id is not None:
            query = query.filter(Stream.p_id == provider_id)
        return query.order_by(Stream.s_updated.desc(), Stream.id.desc()).all()

    def fixup_user(self, user_id: int, provider_id: Optional[int] = None) -> FixupResult:
        """
        Run all enabled passes for one user's streams.

        Args:
            user_id: Owner of the streams
            provider_id: Limit the work to one provider's streams

        Returns:
            FixupResult with per-column counts and any skipped groups
        """
        result = FixupResult()
        self._pending = 0

        if self.should_fix("s_name"):
            result.names = self._fix_names(user_id, provider_id, result)
        if self.should_fix("s_channel"):
            result.channels = self._fix_channels(user_id, provider_id, result)
        self._fix_metadata(user_id, provider_id, result)

        self.db.commit()
        logger.info(
            f"[FIXUP] User {user_id}: {result.names:,} names, {result.channels:,} channels, "
            f"{result.logos:,} logos, {result.tvg_ids:,} tvg ids"
        )
        return result

    def _fix_names(self, user_id: int, provider_id: Optional[int], result: FixupResult) -> int:
        rows = self._rows(user_id, provider_id, Stream.s_orig_name, Stream.s_name, Stream.s_type_id)

        best: dict[str, str] = {}
        for row in rows:
            key = f"{(row.s_orig_name or '').lower()}||{row.s_type_id}"
            custom = _clean(row.s_name)
            if custom and custom != _clean(row.s_orig_name):
                best.setdefault(key, custom)

        groups: dict[str, list[dict]] = {}
        for row in rows:
            key = f"{(row.s_orig_name or '').lower()}||{row.s_type_id}"
            name = best.get(key)
            current = _clean(row.s_name)
            if name and current in ("", _clean(row.s_orig_name)) and current != name:
                groups.setdefault(key, []).append({"id": row.id, "s_name": name})

        return self._apply_groups("s_name", groups, result)

    def _fix_channels(self, user_id: int, provider_id: Optional[int], result: FixupResult) -> int:
        rows = self._rows(user_id, provider_id, Stream.s_name, Stream.s_channel)

        best: dict[str, str] = {}
        for row in rows:
            name = _clean(row.s_name)
            channel = row.s_channel or "0"
            if name and channel not in ("", "0"):
                best.setdefault(name.lower(), channel)

        groups: dict[str, list[dict]] = {}
        for row in rows:
            key = _clean(row.s_name).lower()
            channel = best.get(key) if key else None
            if channel and (row.s_channel or "0") in ("", "0"):
                groups.setdefault(key, []).append({"id": row.id, "s_channel": channel})

        return self._apply_groups("s_channel", groups, result)

    def _fix_metadata(self, user_id: int, provider_id: Optional[int], result: FixupResult) -> None:
        columns = [c for c in ("s_tvg_logo", "s_tvg_id") if self.should_fix(c)]
        if not columns:
            return

        rows = self._rows(user_id, provider_id, Stream.s_name, *(getattr(Stream, c) for c in columns))

        best: dict[str, dict[str, str]] = {}
        for row in rows:
            key = _clean(row.s_name).lower()
            if not key:
                continue
            values = best.setdefault(key, {})
            for column in columns:
                value = _clean(getattr(row, column))
                if value and column not in values:
                    values[column] = value

        groups: dict[str, list[dict]] = {}
        counts = {c: 0 for c in columns}
        for row in rows:
            key = _clean(row.s_name).lower()
            if not key:
                continue
            mapping = {"id": row.id}
            for column, value in best[key].items():
                if _clean(getattr(row, column)) != value:
                    mapping[column] = value
            if len(mapping) > 1:
                groups.setdefault(key, []).append(mapping)

        failed_keys = set()
        for key, mappings in groups.items():
            if not self._apply_group("metadata", key, mappings, result):
                failed_keys.add(key)

        for key, mappings in groups.items():
            if key in failed_keys:
                continue
            for mapping in mappings:
                for column in columns:
                    if column in mapping:
                        counts[column] += 1

        result.logos = counts.get("s_tvg_logo", 0)
        result.tvg_ids = counts.get("s_tvg_id", 0)

    def _apply_groups(self, column: str, groups: dict[str, list[dict]], result: FixupResult) -> int:
        fixed = 0
        for key, mappings in groups.items():
            if self._apply_group(column, key, mappings, result):
                fixed += len(mappings)
        return fixed

    def _apply_group(self, column: str, key: str, mappings: list[dict], result: FixupResult) -> bool:
        """Write one duplicate group inside a savepoint; False if it was rolled back."""
        try:
            with self.db.begin_nested():
                self.db.bulk_update_mappings(Stream, mappings)
        except SQLAlchemyError as e:
            warning = FixupWarning(f"Skipped {column} fixup for '{key}': {e}", column=column, key=key)
            logger.warning(f"[FIXUP] {warning}")
            result.warnings.append(warning)
            result.failed_groups += 1
            return False

        self._pending += len(mappings)
        if self._pending >= self.settings.fixup_batch_size:
            self.db.commit()
            self._pending = 0
        return True
