"""
M3U playlist fetcher.

Streams the playlist line by line so very large catalogs are never held in
memory as a whole.
"""
import logging
import re
from typing import Iterable, Iterator, Optional

import httpx

from providers.base import RETRYABLE_ERRORS, BaseFetcher
from stream_record import StreamRecord, StreamType, blank_to_none

logger = logging.getLogger(__name__)

ATTRIBUTE_PATTERN = re.compile(r'([\w-]+)="([^"]*)"')

# Errors while reading the body that warrant restarting the download
BODY_RETRYABLE_ERRORS = RETRYABLE_ERRORS + (httpx.ReadError, httpx.RemoteProtocolError)


def split_extinf(line: str) -> tuple[str, str]:
    """
    Split an #EXTINF line into (attributes, title) at the first comma
    outside double quotes.
    """
    body = line[len("#EXTINF:"):]
    in_quotes = False
    for i, char in enumerate(body):
        if char == '"':
            in_quotes = not in_quotes
        elif char == "," and not in_quotes:
            return body[:i], body[i + 1:].strip()
    return body, ""


def parse_extinf(line: str) -> dict:
    """Extract name, tvg-id, logo and group from an #EXTINF line."""
    attrs_part, title = split_extinf(line)
    attrs = {key.lower(): value for key, value in ATTRIBUTE_PATTERN.findall(attrs_part)}

    name = (attrs.get("tvg-name") or "").strip() or title
    return {
        "name": name,
        "tvg_id": blank_to_none(attrs.get("tvg-id")),
        "logo": blank_to_none(attrs.get("tvg-logo")),
        "group": blank_to_none(attrs.get("group-title")),
    }


def detect_stream_type(url: str, name: str, group: Optional[str]) -> StreamType:
    """Classify an entry from its URL, group title and name."""
    url_lower = url.lower()
    group_lower = (group or "").lower()

    if "/movie/" in url_lower or "/vod/" in url_lower:
        return StreamType.VOD
    if "vod" in group_lower or "movie" in group_lower:
        return StreamType.VOD
    if "series" in group_lower or "24/7" in name.lower():
        return StreamType.SERIES
    return StreamType.LIVE


def parse_m3u_lines(lines: Iterable[str]) -> Iterator[StreamRecord]:
    """
    Parse playlist lines into records, skipping VOD entries.

    An #EXTINF line applies to the next non-blank, non-comment line.
    Entries without a name or URL are dropped.
    """
    pending: Optional[dict] = None

    for raw in lines:
        line = raw.strip()
        if not line:
            continue

        if line.startswith("#EXTINF:"):
            pending = parse_extinf(line)
            continue

        if line.startswith("#EXTGRP:"):
            if pending is not None and not pending["group"]:
                pending["group"] = blank_to_none(line[len("#EXTGRP:"):])
            continue

        if line.startswith("#"):
            continue

        if pending is None:
            continue

        info, pending = pending, None
        if not info["name"]:
            continue

        stream_type = detect_stream_type(line, info["name"], info["group"])
        if stream_type == StreamType.VOD:
            continue

        yield StreamRecord(
            type_id=stream_type,
            orig_name=info["name"],
            stream_uri=line,
            tvg_id=info["tvg_id"],
            tvg_group=info["group"],
            tvg_logo=info["logo"],
        )


def _strip_bom(lines: Iterable[str]) -> Iterator[str]:
    first = True
    for line in lines:
        if first:
            line = line.lstrip("\ufeff")
            first = False
        yield line


class M3UFetcher(BaseFetcher):
    """Fetches a provider whose sp_domain points at an M3U playlist."""

    def fetch_streams(self) -> Iterator[StreamRecord]:
        """
        Download and parse the playlist.

        A transient error while reading the body restarts the download with
        the same linear backoff as the initial request. Entries already
        yielded by an earlier attempt are not yielded again.
        """
        url = (self.provider.sp_domain or "").strip()
        if not url:
            raise self._fail("no playlist URL configured")

        logger.info("Fetching M3U playlist...")
        attempts = self.settings.retry_attempts
        yielded: set[str] = set()

        for attempt in range(1, attempts + 1):
            response = self._request(url, label="M3U download", stream=True)
            try:
                for record in parse_m3u_lines(_strip_bom(response.iter_lines())):
                    if record.stream_uri in yielded:
                        continue
                    yielded.add(record.stream_uri)
                    yield record
            except BODY_RETRYABLE_ERRORS as e:
                if attempt >= attempts:
                    raise self._fail(f"M3U download interrupted after {attempts} attempts: {e}") from e
                logger.warning(
                    f"[FETCH] M3U download for provider {self.provider_id} interrupted "
                    f"(attempt {attempt}/{attempts}): {type(e).__name__}: {e}"
                )
                self._sleep(self.settings.retry_delay * attempt)
                continue
            except httpx.HTTPError as e:
                raise self._fail(f"M3U download interrupted: {e}") from e
            finally:
                response.close()
            break

        logger.info(f"Retrieved {len(yielded):,} streams from playlist")
