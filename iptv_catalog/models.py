"""
SQLAlchemy ORM Models for the catalog service

Two independent schemas: the catalog store (one file per session) and the
guide store (one file per session). Each has its own declarative base so the
tables are created only in the file they belong to.
"""
from sqlalchemy import BigInteger, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class CatalogBase(DeclarativeBase):
    """Base class for catalog store models"""
    pass


class GuideBase(DeclarativeBase):
    """Base class for guide store models"""
    pass


class ChannelRecord(CatalogBase):
    """Serialized catalog channel"""
    __tablename__ = "channels"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    data: Mapped[str] = mapped_column(Text, nullable=False)

    def __repr__(self) -> str:
        return f"<ChannelRecord(id={self.id})>"


class GenreRecord(CatalogBase):
    """Genre label, ordered by first appearance"""
    __tablename__ = "genres"

    genre: Mapped[str] = mapped_column(String, primary_key=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class CatalogMetadata(CatalogBase):
    """Catalog key/value metadata (lastUpdated, m3uUrl, epgUrls)"""
    __tablename__ = "metadata"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)


class Program(GuideBase):
    """Program model for storing guide program information"""
    __tablename__ = "programs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    channel_id: Mapped[str] = mapped_column(String, nullable=False)
    start_time: Mapped[int] = mapped_column(BigInteger, nullable=False)  # epoch ms
    stop_time: Mapped[int] = mapped_column(BigInteger, nullable=False)  # epoch ms
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(String, nullable=True)

    # Constraints
    __table_args__ = (
        UniqueConstraint("channel_id", "start_time", "stop_time", name="uq_program_slot"),
        Index("idx_channel_time", "channel_id", "start_time", "stop_time"),
        Index("idx_stop_time", "stop_time"),
    )

    def __repr__(self) -> str:
        return f"<Program(id={self.id}, title={self.title}, channel={self.channel_id})>"


class ChannelIcon(GuideBase):
    """Channel icon advertised by the guide, one per normalized id"""
    __tablename__ = "channel_icons"

    channel_id: Mapped[str] = mapped_column(String, primary_key=True)
    icon_url: Mapped[str] = mapped_column(String, nullable=False)


class GuideMetadata(GuideBase):
    """Guide key/value metadata (lastUpdate, lastEpgUrl)"""
    __tablename__ = "metadata"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
