"""Scrape target: a tracked (source, URL) pair."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from harvester.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

TARGET_STATUS_ACTIVE = "active"
TARGET_STATUS_BROKEN = "broken"
TARGET_STATUS_DISABLED = "disabled"


class ScrapeTarget(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A product page or feed URL scraped on a recurring basis.

    Status only moves forward: active -> broken, active/broken -> disabled.
    The pipeline never re-enables a target; that is an operator action.
    """

    __tablename__ = "scrape_targets"

    source_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    retailer_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    adapter_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    url: Mapped[str] = mapped_column(String(2000), nullable=False)
    canonical_url: Mapped[str] = mapped_column(String(2000), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=TARGET_STATUS_ACTIVE,
        comment="Status: 'active', 'broken', 'disabled'"
    )
    status_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status_changed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Tracking
    last_scraped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Last time a valid offer was written for this target"
    )
    last_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    consecutive_invalid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    consecutive_zero_price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Drift baseline
    baseline_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    baseline_in_stock: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    baseline_sample_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    baseline_variance: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=0.0,
        comment="EWMA variance of fractional price deltas"
    )

    __table_args__ = (
        UniqueConstraint("source_id", "canonical_url", name="uq_scrape_target_source_url"),
        Index("idx_scrape_targets_adapter_status", "adapter_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<ScrapeTarget(id={self.id}, adapter='{self.adapter_id}', status='{self.status}')>"
