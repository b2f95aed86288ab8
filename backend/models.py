"""
SQLAlchemy ORM models for the KPTV stream tables.

Table and column names mirror the production MySQL schema so the sync
pipeline can run against it directly.
"""
from datetime import datetime
from sqlalchemy import Column, Integer, BigInteger, SmallInteger, String, Boolean, DateTime, Index
from sqlalchemy.orm import relationship
from database import Base

# BIGINT autoincrement keys only work as INTEGER on SQLite
BigId = BigInteger().with_variant(Integer, "sqlite")


class StreamProvider(Base):
    """
    An upstream source of streams: an Xtream-Codes API or an M3U playlist URL.
    Owns the streams synced from it; deleting a provider deletes its streams.
    """
    __tablename__ = "kptv_stream_providers"

    id = Column(BigId, primary_key=True, autoincrement=True)
    u_id = Column(BigInteger, nullable=False)
    sp_should_filter = Column(Boolean, default=True, nullable=False)
    sp_priority = Column(Integer, default=99, nullable=False)
    sp_name = Column(String(256), nullable=False)
    sp_cnx_limit = Column(Integer, default=1, nullable=False)
    sp_type = Column(SmallInteger, default=0, nullable=False)  # 0 = Xtream-Codes, 1 = M3U
    sp_domain = Column(String(256), nullable=False)
    sp_username = Column(String(1024), nullable=True)
    sp_password = Column(String(1024), nullable=True)
    sp_stream_type = Column(SmallInteger, default=0, nullable=False)  # 0 = MPEG-TS, otherwise HLS
    sp_refresh_period = Column(Integer, default=3, nullable=False)
    sp_last_synced = Column(DateTime, nullable=True)
    sp_added = Column(DateTime, default=datetime.utcnow, nullable=False)
    sp_updated = Column(DateTime, nullable=True, onupdate=datetime.utcnow)

    # No FK in the production schema, so the join is declared explicitly
    streams = relationship(
        "Stream",
        primaryjoin="StreamProvider.id == foreign(Stream.p_id)",
        cascade="all, delete-orphan",
        lazy="select",
    )

    __table_args__ = (
        Index("idx_sp_uid", u_id),
        Index("idx_sp_name", sp_name),
    )

    @property
    def stream_extension(self) -> str:
        """File extension for generated stream URIs."""
        return "ts" if self.sp_stream_type == 0 else "m3u8"

    def to_dict(self) -> dict:
        """Convert to dictionary (credentials omitted)."""
        return {
            "id": self.id,
            "u_id": self.u_id,
            "sp_name": self.sp_name,
            "sp_type": self.sp_type,
            "sp_domain": self.sp_domain,
            "sp_should_filter": self.sp_should_filter,
            "sp_priority": self.sp_priority,
            "sp_cnx_limit": self.sp_cnx_limit,
            "sp_stream_type": self.sp_stream_type,
            "sp_refresh_period": self.sp_refresh_period,
            "sp_last_synced": self.sp_last_synced.isoformat() + "Z" if self.sp_last_synced else None,
        }

    def __repr__(self):
        return f"<StreamProvider(id={self.id}, name={self.sp_name}, type={self.sp_type}, user={self.u_id})>"


class Stream(Base):
    """
    A live channel or series entry in a user's catalog.
    s_stream_uri is the natural key; s_name, s_channel and s_active are curated by the user.
    """
    __tablename__ = "kptv_streams"

    id = Column(BigId, primary_key=True, autoincrement=True)
    u_id = Column(BigInteger, nullable=False)
    p_id = Column(BigInteger, default=0, nullable=False)
    s_type_id = Column(SmallInteger, default=0, nullable=False)
    s_active = Column(Boolean, default=False, nullable=False)
    s_channel = Column(String(32), default="0", nullable=False)
    s_name = Column(String(1024), nullable=False)
    s_orig_name = Column(String(1024), nullable=False)
    s_stream_uri = Column(String(2048), default="", nullable=False)
    s_tvg_id = Column(String(1024), nullable=True)
    s_tvg_group = Column(String(1024), nullable=True)
    s_tvg_logo = Column(String(2048), nullable=True)
    s_extras = Column(String(2048), nullable=True)
    s_created = Column(DateTime, default=datetime.utcnow, nullable=False)
    s_updated = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_streams_uid", u_id),
        Index("idx_streams_pid", p_id),
        Index("idx_streams_stypeid", s_type_id),
        Index("idx_streams_sactive", s_active),
        Index("idx_streams_schannel", s_channel),
    )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "u_id": self.u_id,
            "p_id": self.p_id,
            "s_type_id": self.s_type_id,
            "s_active": self.s_active,
            "s_channel": self.s_channel,
            "s_name": self.s_name,
            "s_orig_name": self.s_orig_name,
            "s_stream_uri": self.s_stream_uri,
            "s_tvg_id": self.s_tvg_id,
            "s_tvg_group": self.s_tvg_group,
            "s_tvg_logo": self.s_tvg_logo,
            "s_extras": self.s_extras,
            "s_created": self.s_created.isoformat() + "Z" if self.s_created else None,
            "s_updated": self.s_updated.isoformat() + "Z" if self.s_updated else None,
        }

    def __repr__(self):
        return f"<Stream(id={self.id}, name={self.s_name}, provider={self.p_id}, active={self.s_active})>"


class StreamFilter(Base):
    """
    A user's include/exclude rule applied to fetched streams.
    sf_type_id: 0 include regex name, 1 exclude substring name,
    2 exclude regex name, 3 exclude regex URI, 4 exclude regex group.
    """
    __tablename__ = "kptv_stream_filters"

    id = Column(BigId, primary_key=True, autoincrement=True)
    u_id = Column(BigInteger, nullable=False)
    sf_active = Column(Boolean, default=True, nullable=False)
    sf_type_id = Column(SmallInteger, default=0, nullable=False)
    sf_filter = Column(String(1024), nullable=False)
    sf_created = Column(DateTime, default=datetime.utcnow, nullable=False)
    sf_updated = Column(DateTime, nullable=True, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_filters_uid_active_type", u_id, sf_active, sf_type_id),
    )

    def __repr__(self):
        return f"<StreamFilter(id={self.id}, user={self.u_id}, type={self.sf_type_id}, filter={self.sf_filter})>"


class StreamTemp(Base):
    """
    Staging row for one provider sync. Scoped by (u_id, p_id) and cleared
    before and after every reconciliation.
    """
    __tablename__ = "kptv_stream_temp"

    id = Column(BigId, primary_key=True, autoincrement=True)
    u_id = Column(BigInteger, nullable=False)
    p_id = Column(BigInteger, nullable=False)
    s_type_id = Column(SmallInteger, default=0, nullable=False)
    s_orig_name = Column(String(1024), nullable=False)
    s_stream_uri = Column(String(2048), default="", nullable=False)
    s_tvg_id = Column(String(512), nullable=True)
    s_tvg_logo = Column(String(2048), nullable=True)
    s_extras = Column(String(2048), nullable=True)
    s_group = Column(String(1024), nullable=True)

    __table_args__ = (
        Index("idx_temp_uid_pid", u_id, p_id),
    )

    def __repr__(self):
        return f"<StreamTemp(id={self.id}, provider={self.p_id}, name={self.s_orig_name})>"


class StreamMissing(Base):
    """
    Append-only log of active streams that disappeared from a provider's catalog.
    Reviewed manually; never deleted by the sync tool.
    """
    __tablename__ = "kptv_stream_missing"

    id = Column(BigId, primary_key=True, autoincrement=True)
    u_id = Column(BigInteger, nullable=False)
    p_id = Column(BigInteger, nullable=False)
    stream_id = Column(BigInteger, default=0, nullable=False)
    other_id = Column(BigInteger, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_missing_uid", u_id),
        Index("idx_missing_pid", p_id),
        Index("idx_missing_streamid", stream_id),
    )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "u_id": self.u_id,
            "p_id": self.p_id,
            "stream_id": self.stream_id,
            "other_id": self.other_id,
            "created_at": self.created_at.isoformat() + "Z" if self.created_at else None,
        }

    def __repr__(self):
        return f"<StreamMissing(id={self.id}, stream={self.stream_id}, provider={self.p_id})>"
