"""Persisted offer keyed by identity key."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import Boolean, DateTime, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from harvester.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from harvester.models.price_observation import PriceObservation


class SourceProduct(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Latest known state of one logical offer at one retailer.

    Uniquely identified by identity_key. Enrichment columns are only ever
    filled in, never cleared, by the writer.
    """

    __tablename__ = "source_products"

    identity_key: Mapped[str] = mapped_column(String(400), nullable=False, unique=True)
    source_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    retailer_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    # Always-authoritative fields
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    url: Mapped[str] = mapped_column(String(2000), nullable=False)
    normalized_url: Mapped[str] = mapped_column(String(2000), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(5), nullable=False, default="USD")
    in_stock: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    availability: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # Enrichment fields (null-coalesced on update)
    brand: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    caliber: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    grain_weight: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    round_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    upc: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Retailer identifiers
    retailer_product_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    retailer_sku: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    # Provenance
    adapter_version: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    last_run_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    price_observations: Mapped[list["PriceObservation"]] = relationship(
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="PriceObservation.observed_at.desc()"
    )

    def __repr__(self) -> str:
        return f"<SourceProduct(id={self.id}, identity_key='{self.identity_key}', price={self.price})>"
