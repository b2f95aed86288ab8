"""
Xtream-Codes API fetcher.

Reads live streams and series from player_api.php and builds playable
stream URIs from the provider credentials. VOD is never fetched.
"""
import logging
from dataclasses import dataclass
from typing import Iterator, Optional

from providers.base import BaseFetcher, FetchError
from stream_record import StreamRecord, StreamType, blank_to_none

logger = logging.getLogger(__name__)

# Category names that mark movie/VOD content inside live or series listings
VOD_CATEGORY_MARKERS = ("vod", "movie", "film")


@dataclass(frozen=True)
class XtreamSection:
    """One player_api.php listing and how its entries map to streams."""
    name: str
    list_action: str
    category_action: str
    path: str
    stream_type: StreamType


SECTIONS = (
    XtreamSection("live", "get_live_streams", "get_live_categories", "live", StreamType.LIVE),
    XtreamSection("series", "get_series", "get_series_categories", "series", StreamType.SERIES),
)


def _first_present(item: dict, *keys):
    """First value among keys that is not None or blank."""
    for key in keys:
        value = item.get(key)
        if value is not None and str(value).strip() != "":
            return value
    return None


class XtreamCodesFetcher(BaseFetcher):
    """Fetches a provider exposing the Xtream-Codes player API."""

    @property
    def api_url(self) -> str:
        return f"{self.domain}/player_api.php"

    def _api_params(self, action: str) -> dict:
        return {"username": self.username, "password": self.password, "action": action}

    def _get_json(self, action: str):
        """Call one API action and decode the JSON body."""
        response = self._request(self.api_url, params=self._api_params(action), label=action)
        try:
            return response.json()
        except ValueError as e:
            raise self._fail(f"{action} returned invalid JSON: {e}") from e

    def _get_listing(self, action: str) -> list:
        """Fetch a stream listing; anything but a JSON array is an error."""
        data = self._get_json(action)
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            user_info = data.get("user_info")
            if isinstance(user_info, dict) and str(user_info.get("auth", "1")) == "0":
                raise self._fail(f"{action} rejected credentials")
        raise self._fail(f"{action} returned an invalid response (expected a list)")

    def _get_categories(self, section: XtreamSection) -> dict[str, str]:
        """
        Map category_id to category_name for a section.

        Group titles are cosmetic, so a failed lookup only logs a warning.
        """
        try:
            data = self._get_json(section.category_action)
        except FetchError as e:
            logger.warning(f"[FETCH] Could not load {section.name} categories for provider {self.provider_id}: {e}")
            return {}

        if not isinstance(data, list):
            logger.warning(f"[FETCH] Unexpected {section.name} category payload for provider {self.provider_id}")
            return {}

        categories = {}
        for category in data:
            if isinstance(category, dict) and category.get("category_id") is not None:
                categories[str(category["category_id"])] = category.get("category_name") or ""
        return categories

    def build_stream_uri(self, section: XtreamSection, stream_id) -> str:
        return f"{self.domain}/{section.path}/{self.username}/{self.password}/{stream_id}.{self.extension}"

    def _to_record(self, section: XtreamSection, item: dict, categories: dict[str, str]) -> Optional[StreamRecord]:
        """Convert one API item; returns None for entries that should be skipped."""
        item_type = item.get("stream_type")
        if item_type in ("movie", 4, "4"):
            return None

        group = item.get("category_name")
        if not group and item.get("category_id") is not None:
            group = categories.get(str(item["category_id"]))
        group = blank_to_none(group)
        if group and any(marker in group.lower() for marker in VOD_CATEGORY_MARKERS):
            return None

        stream_id = _first_present(item, "stream_id", "series_id")
        name = blank_to_none(item.get("name")) or ""
        if stream_id is None or not name:
            raise ValueError("missing stream_id or name")

        type_id = section.stream_type
        if "24/7" in name.lower():
            type_id = StreamType.SERIES

        return StreamRecord(
            type_id=type_id,
            orig_name=name,
            stream_uri=self.build_stream_uri(section, stream_id),
            tvg_id=blank_to_none(_first_present(item, "epg_channel_id", "tmdb_id", "tmdb")),
            tvg_group=group,
            tvg_logo=blank_to_none(_first_present(item, "stream_icon", "cover")),
        )

    def _fetch_section(self, section: XtreamSection) -> Iterator[StreamRecord]:
        logger.info(f"Fetching {section.name} streams...")
        items = self._get_listing(section.list_action)
        categories = {}
        if any(isinstance(i, dict) and not i.get("category_name") for i in items):
            categories = self._get_categories(section)

        kept = 0
        skipped = 0
        for item in items:
            if not isinstance(item, dict):
                skipped += 1
                continue
            try:
                record = self._to_record(section, item, categories)
            except ValueError:
                skipped += 1
                continue
            if record is None:
                continue
            kept += 1
            yield record

        logger.info(f"Retrieved {kept:,} {section.name} streams")
        if skipped:
            logger.info(f"  Skipped {skipped:,} items (missing stream_id or name)")

    def fetch_streams(self) -> Iterator[StreamRecord]:
        if not self.domain:
            raise self._fail("no API domain configured")

        logger.info("Fetching streams from Xtream Codes API...")
        for index, section in enumerate(SECTIONS):
            if index and self.settings.request_delay:
                self._sleep(self.settings.request_delay)
            yield from self._fetch_section(section)
