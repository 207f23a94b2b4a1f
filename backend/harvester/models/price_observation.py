"""Price and stock observations for source products."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Numeric, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from harvester.models.base import Base, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from harvester.models.source_product import SourceProduct


class PriceObservation(UUIDPrimaryKeyMixin, Base):
    """Append-only record of a price seen during a run.

    One row per successful write, so price trends can be charted and
    drift alerts reviewed against history.
    """

    __tablename__ = "price_observations"

    product_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("source_products.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    run_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)

    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(5), nullable=False, default="USD")
    in_stock: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    observed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("idx_price_observations_product_observed", "product_id", "observed_at"),
    )

    product: Mapped["SourceProduct"] = relationship(back_populates="price_observations")

    def __repr__(self) -> str:
        return f"<PriceObservation(product_id={self.product_id}, price={self.price}, observed_at={self.observed_at})>"
