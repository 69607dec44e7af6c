"""Local grid SQLAlchemy models: campaigns, scans, point results, competitor stats, profile snapshots."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LocalCampaign(Base):
    """A tracked business location with its grid configuration and scan cadence.

    Campaigns are archived rather than deleted so historical scans keep
    their parent.
    """

    __tablename__ = "local_campaigns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    business_name: Mapped[str] = mapped_column(String(500), nullable=False, index=True)
    place_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    gmb_cid: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    center_lat: Mapped[float] = mapped_column(Float, nullable=False)
    center_lng: Mapped[float] = mapped_column(Float, nullable=False)
    grid_size: Mapped[int] = mapped_column(Integer, nullable=False, default=7)
    radius_miles: Mapped[float] = mapped_column(Float, nullable=False, default=5.0)
    keywords: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="ACTIVE", index=True)
    scan_frequency: Mapped[str] = mapped_column(String(20), nullable=False, default="weekly")
    last_scan_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    next_scan_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    # Relationships
    scans: Mapped[list["GridScan"]] = relationship(back_populates="campaign")
    snapshots: Mapped[list["GBPSnapshot"]] = relationship(back_populates="campaign")

    def __repr__(self) -> str:
        return (
            f"<LocalCampaign id={self.id} name={self.business_name!r} "
            f"grid={self.grid_size} status={self.status}>"
        )


class GridScan(Base):
    """One execution of a campaign's grid scan and its scan-level metrics."""

    __tablename__ = "grid_scans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("local_campaigns.id"),
        nullable=False,
        index=True,
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING", index=True)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    keywords: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    total_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    api_calls_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    estimated_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_rank: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    share_of_voice: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    top_competitor: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    campaign: Mapped["LocalCampaign"] = relationship(back_populates="scans")
    point_results: Mapped[list["GridPointResult"]] = relationship(
        back_populates="scan", cascade="all, delete-orphan"
    )
    competitor_stats: Mapped[list["ScanCompetitorStat"]] = relationship(
        back_populates="scan", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return (
            f"<GridScan id={self.id} campaign_id={self.campaign_id} "
            f"status={self.status} progress={self.progress}>"
        )


class GridPointResult(Base):
    """Outcome of one (keyword, grid point) lookup within a scan."""

    __tablename__ = "grid_point_results"
    __table_args__ = (
        UniqueConstraint("scan_id", "keyword", "grid_row", "grid_col", name="uq_point_result"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scan_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("grid_scans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    keyword: Mapped[str] = mapped_column(String(500), nullable=False)
    grid_row: Mapped[int] = mapped_column(Integer, nullable=False)
    grid_col: Mapped[int] = mapped_column(Integer, nullable=False)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lng: Mapped[float] = mapped_column(Float, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    target_rank: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    top_rankings: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    total_results: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    scanned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    # Relationships
    scan: Mapped["GridScan"] = relationship(back_populates="point_results")

    def __repr__(self) -> str:
        return (
            f"<GridPointResult scan_id={self.scan_id} kw={self.keyword!r} "
            f"({self.grid_row},{self.grid_col}) rank={self.target_rank}>"
        )


class ScanCompetitorStat(Base):
    """Aggregated visibility of one business within one scan."""

    __tablename__ = "competitor_stats"
    __table_args__ = (
        UniqueConstraint("scan_id", "identity_key", name="uq_competitor_stat"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scan_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("grid_scans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    identity_key: Mapped[str] = mapped_column(String(600), nullable=False)
    business_name: Mapped[str] = mapped_column(String(500), nullable=False)
    external_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    rating: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    review_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    avg_rank: Mapped[float] = mapped_column(Float, nullable=False)
    appearances: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    times_in_top_3: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    times_in_top_10: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    times_in_top_20: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    share_of_voice: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    prev_avg_rank: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    rank_change: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    is_target: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Relationships
    scan: Mapped["GridScan"] = relationship(back_populates="competitor_stats")

    def __repr__(self) -> str:
        return (
            f"<ScanCompetitorStat scan_id={self.scan_id} name={self.business_name!r} "
            f"avg={self.avg_rank} sov={self.share_of_voice:.3f}>"
        )


class GBPSnapshot(Base):
    """Point-in-time business profile data captured after a scan."""

    __tablename__ = "gbp_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("local_campaigns.id"),
        nullable=False,
        index=True,
    )
    business_name: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    external_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    rating: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    review_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    website: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    categories: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    raw_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    captured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    # Relationships
    campaign: Mapped["LocalCampaign"] = relationship(back_populates="snapshots")

    def __repr__(self) -> str:
        return f"<GBPSnapshot id={self.id} campaign_id={self.campaign_id} rating={self.rating}>"
