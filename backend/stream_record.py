"""
Normalized stream record shared by the fetchers, the filter engine and the
staging loader.
"""
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional


class StreamType(IntEnum):
    """s_type_id values used across the KPTV tables."""
    LIVE = 0
    VOD = 4
    SERIES = 5
    OTHER = 99


@dataclass
class StreamRecord:
    """One provider entry in the common shape, independent of the source format."""
    type_id: int
    orig_name: str
    stream_uri: str
    tvg_id: Optional[str] = None
    tvg_group: Optional[str] = None
    tvg_logo: Optional[str] = None
    extras: Optional[str] = None

    @property
    def is_vod(self) -> bool:
        return self.type_id == StreamType.VOD

    def to_staging_row(self, user_id: int, provider_id: int) -> dict:
        """Column mapping for kptv_stream_temp."""
        return {
            "u_id": user_id,
            "p_id": provider_id,
            "s_type_id": int(self.type_id),
            "s_orig_name": self.orig_name,
            "s_stream_uri": self.stream_uri,
            "s_tvg_id": self.tvg_id,
            "s_tvg_logo": self.tvg_logo,
            "s_extras": self.extras,
            "s_group": self.tvg_group,
        }


def blank_to_none(value) -> Optional[str]:
    """Provider payloads use "" and null interchangeably; store None for both."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None
