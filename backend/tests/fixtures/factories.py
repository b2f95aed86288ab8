"""
Factory functions for creating test data.

Each factory creates a model instance with sensible defaults that can be overridden.
All factories accept a session parameter and commit the created object.
"""
from datetime import datetime
from sqlalchemy.orm import Session

from models import StreamProvider, Stream, StreamFilter, StreamTemp


# Counter for generating unique IDs
_counter = {"value": 0}


def _next_id() -> int:
    """Generate a unique incrementing ID."""
    _counter["value"] += 1
    return _counter["value"]


def reset_counter() -> None:
    """Reset the counter (useful between tests)."""
    _counter["value"] = 0


# -----------------------------------------------------------------------------
# StreamProvider Factory
# -----------------------------------------------------------------------------

def create_provider(
    session: Session,
    user_id: int = 1,
    name: str = None,
    sp_type: int = 0,
    domain: str = "http://xc.test",
    username: str = "user",
    password: str = "pass",
    should_filter: bool = True,
    priority: int = 99,
    stream_type: int = 0,
    **kwargs
) -> StreamProvider:
    """Create a StreamProvider instance.

    Args:
        session: Database session
        user_id: Owning user
        name: Provider name
        sp_type: 0 for Xtream-Codes, 1 for M3U
        domain: API base URL, or the playlist URL for M3U providers
        username: Xtream-Codes username
        password: Xtream-Codes password
        should_filter: Whether the user's filters apply to this provider
        priority: Sort priority (lower first)
        stream_type: 0 for .ts URIs, anything else for .m3u8

    Returns:
        Created and committed StreamProvider instance
    """
    provider_id = _next_id()
    provider = StreamProvider(
        u_id=user_id,
        sp_name=name or f"Test Provider {provider_id}",
        sp_type=sp_type,
        sp_domain=domain,
        sp_username=username,
        sp_password=password,
        sp_should_filter=should_filter,
        sp_priority=priority,
        sp_stream_type=stream_type,
        **kwargs
    )
    session.add(provider)
    session.commit()
    session.refresh(provider)
    return provider


# -----------------------------------------------------------------------------
# Stream Factory
# -----------------------------------------------------------------------------

def create_stream(
    session: Session,
    provider: StreamProvider = None,
    orig_name: str = None,
    uri: str = None,
    name: str = None,
    active: bool = False,
    channel: str = "0",
    type_id: int = 0,
    updated: datetime = None,
    **kwargs
) -> Stream:
    """Create a Stream instance.

    Curated name defaults to the original name, as the sync inserts it.
    """
    stream_id = _next_id()
    orig_name = orig_name or f"Test Stream {stream_id}"
    user_id = kwargs.pop("u_id", provider.u_id if provider else 1)
    provider_id = kwargs.pop("p_id", provider.id if provider else 0)
    stream = Stream(
        u_id=user_id,
        p_id=provider_id,
        s_type_id=type_id,
        s_active=active,
        s_channel=channel,
        s_name=name if name is not None else orig_name,
        s_orig_name=orig_name,
        s_stream_uri=uri or f"http://xc.test/live/user/pass/{stream_id}.ts",
        s_updated=updated,
        **kwargs
    )
    session.add(stream)
    session.commit()
    session.refresh(stream)
    return stream


# -----------------------------------------------------------------------------
# StreamFilter Factory
# -----------------------------------------------------------------------------

def create_filter(
    session: Session,
    pattern: str,
    type_id: int = 0,
    user_id: int = 1,
    active: bool = True,
) -> StreamFilter:
    """Create a StreamFilter instance."""
    stream_filter = StreamFilter(
        u_id=user_id,
        sf_type_id=type_id,
        sf_filter=pattern,
        sf_active=active,
    )
    session.add(stream_filter)
    session.commit()
    session.refresh(stream_filter)
    return stream_filter


# -----------------------------------------------------------------------------
# StreamTemp Factory
# -----------------------------------------------------------------------------

def create_staged(
    session: Session,
    provider: StreamProvider,
    orig_name: str,
    uri: str,
    type_id: int = 0,
    group: str = None,
    **kwargs
) -> StreamTemp:
    """Create a staging row for a provider."""
    staged = StreamTemp(
        u_id=provider.u_id,
        p_id=provider.id,
        s_type_id=type_id,
        s_orig_name=orig_name,
        s_stream_uri=uri,
        s_group=group,
        **kwargs
    )
    session.add(staged)
    session.commit()
    session.refresh(staged)
    return staged
