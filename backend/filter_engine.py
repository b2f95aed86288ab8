"""
Stream Filter Engine

Applies a user's include/exclude rules to a provider's fetched catalog.

Rules come from kptv_stream_filters and are compiled once when loaded, so a
malformed pattern fails the load instead of failing record by record.

Semantics:
- If the user has any include rule, a stream must match at least one of them.
- Exclude rules always remove matching streams, whatever the include result.
- Matching is case-insensitive. Empty patterns and empty subjects never match.
"""
import re
import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable, Iterator, Optional

from sqlalchemy.orm import Session

from models import StreamFilter
from stream_record import StreamRecord

logger = logging.getLogger(__name__)


class FilterConfigError(Exception):
    """One or more of a user's filters cannot be compiled."""

    def __init__(self, message: str, filter_ids: Optional[list] = None):
        super().__init__(message)
        self.filter_ids = filter_ids or []


class FilterType(IntEnum):
    """sf_type_id values."""
    INCLUDE_NAME_REGEX = 0
    EXCLUDE_NAME_SUBSTRING = 1
    EXCLUDE_NAME_REGEX = 2
    EXCLUDE_URI_REGEX = 3
    EXCLUDE_GROUP_REGEX = 4


# Which record attribute each filter type inspects
FILTER_FIELDS = {
    FilterType.INCLUDE_NAME_REGEX: "orig_name",
    FilterType.EXCLUDE_NAME_SUBSTRING: "orig_name",
    FilterType.EXCLUDE_NAME_REGEX: "orig_name",
    FilterType.EXCLUDE_URI_REGEX: "stream_uri",
    FilterType.EXCLUDE_GROUP_REGEX: "tvg_group",
}


@dataclass
class FilterRule:
    """A compiled filter rule."""
    id: Optional[int]
    filter_type: FilterType
    pattern: str
    regex: Optional[re.Pattern] = None

    @property
    def is_include(self) -> bool:
        return self.filter_type == FilterType.INCLUDE_NAME_REGEX

    @property
    def field(self) -> str:
        return FILTER_FIELDS[self.filter_type]

    def matches(self, record: StreamRecord) -> bool:
        subject = getattr(record, self.field) or ""
        if not self.pattern or not subject:
            return False
        if self.filter_type == FilterType.EXCLUDE_NAME_SUBSTRING:
            return self.pattern.lower() in subject.lower()
        return self.regex.search(subject) is not None


def compile_pattern(pattern: str) -> re.Pattern:
    """Compile a user pattern case-insensitively; raises re.error."""
    return re.compile(pattern.strip(), re.IGNORECASE)


def validate_pattern(pattern: str) -> tuple[bool, Optional[str]]:
    """
    Check whether a pattern compiles.

    Returns:
        (True, None) when valid, (False, error message) otherwise
    """
    try:
        compile_pattern(pattern)
    except re.error as e:
        return False, str(e)
    return True, None


def build_rule(filter_id: Optional[int], type_id: int, pattern: str) -> FilterRule:
    """
    Build a compiled rule from raw values.

    Raises:
        ValueError: unknown filter type
        re.error: malformed regex
    """
    filter_type = FilterType(type_id)
    pattern = (pattern or "").strip()
    regex = None
    if filter_type != FilterType.EXCLUDE_NAME_SUBSTRING and pattern:
        regex = compile_pattern(pattern)
    return FilterRule(id=filter_id, filter_type=filter_type, pattern=pattern, regex=regex)


def compile_rules(filters: Iterable[StreamFilter]) -> list[FilterRule]:
    """
    Compile filter rows into rules.

    Raises:
        FilterConfigError: listing every filter that could not be compiled
    """
    rules = []
    errors = []
    for f in filters:
        try:
            rules.append(build_rule(f.id, f.sf_type_id, f.sf_filter))
        except ValueError:
            errors.append((f.id, f"unknown filter type {f.sf_type_id}"))
        except re.error as e:
            errors.append((f.id, f"invalid pattern {f.sf_filter!r}: {e}"))

    if errors:
        details = "; ".join(f"filter {fid}: {msg}" for fid, msg in errors)
        raise FilterConfigError(f"Invalid stream filters: {details}", filter_ids=[fid for fid, _ in errors])
    return rules


def should_keep(record: StreamRecord, rules: list[FilterRule], has_include: Optional[bool] = None) -> bool:
    """Decide whether a single record survives the rules."""
    if has_include is None:
        has_include = any(r.is_include for r in rules)

    included = False
    for rule in rules:
        if rule.is_include:
            if not included and rule.matches(record):
                included = True
        elif rule.matches(record):
            return False

    return included or not has_include


class FilterEngine:
    """
    Loads a user's active filters and applies them to fetched records.

    kept/filtered counters reflect the most recent apply() run once its
    iterator has been consumed.
    """

    def __init__(self, db: Session):
        self.db = db
        self.kept = 0
        self.filtered = 0

    def get_filters(self, user_id: int) -> list[StreamFilter]:
        """Active filter rows for a user."""
        return (
            self.db.query(StreamFilter)
            .filter(StreamFilter.u_id == user_id, StreamFilter.sf_active == True)  # noqa: E712
            .order_by(StreamFilter.id)
            .all()
        )

    def load_rules(self, user_id: int) -> list[FilterRule]:
        """
        Load and compile a user's active filters.

        Raises:
            FilterConfigError: when any active filter is malformed
        """
        rules = compile_rules(self.get_filters(user_id))
        logger.info(f"Found {len(rules):,} active filters for user {user_id}")
        return rules

    def apply(self, records: Iterable[StreamRecord], rules: list[FilterRule]) -> Iterator[StreamRecord]:
        """Yield the records that survive the rules."""
        self.kept = 0
        self.filtered = 0

        if not rules:
            for record in records:
                self.kept += 1
                yield record
            return

        has_include = any(r.is_include for r in rules)
        for record in records:
            if should_keep(record, rules, has_include):
                self.kept += 1
                yield record
            else:
                self.filtered += 1

    def summary(self) -> str:
        total = self.kept + self.filtered
        percent = (self.filtered / total * 100) if total else 0.0
        return (
            f"Filter results: {self.kept:,} streams kept, {self.filtered:,} filtered out "
            f"({percent:.1f}% filtered)"
        )
