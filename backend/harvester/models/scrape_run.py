"""Scrape run tracking and metrics."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Float, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from harvester.models.base import Base, UUIDPrimaryKeyMixin

RUN_STATUS_RUNNING = "running"
RUN_STATUS_SUCCESS = "success"
RUN_STATUS_FAILED = "failed"


class ScrapeRun(UUIDPrimaryKeyMixin, Base):
    """One execution of an adapter against a batch of targets.

    Counters are incremented atomically as targets finish; the run is
    finalized exactly once, after every target has a terminal outcome.
    """

    __tablename__ = "scrape_runs"

    adapter_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    trigger: Mapped[str] = mapped_column(String(20), nullable=False, default="manual")

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=RUN_STATUS_RUNNING,
        index=True,
        comment="Status: 'running', 'success', 'failed'"
    )

    # Timing
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Outcome counts
    targets_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    succeeded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    invalid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    drift_alerts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Derived at finalization
    failure_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    yield_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    drop_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    @property
    def completed_count(self) -> int:
        return self.succeeded + self.failed + self.skipped

    def __repr__(self) -> str:
        return f"<ScrapeRun(id={self.id}, adapter='{self.adapter_id}', status='{self.status}')>"
