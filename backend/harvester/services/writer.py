"""Writer service: the only code path that mutates offers, targets and runs.

All counter changes are single UPDATE statements (col = col + 1) so that
concurrent workers never lose increments, and status transitions are
conditional on the current status so each applies at most once.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Sequence
from uuid import UUID

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from harvester.models import (
    PriceObservation,
    RUN_STATUS_FAILED,
    RUN_STATUS_RUNNING,
    RUN_STATUS_SUCCESS,
    ScrapeRun,
    ScrapeTarget,
    SourceProduct,
    TARGET_STATUS_ACTIVE,
    TARGET_STATUS_BROKEN,
    TARGET_STATUS_DISABLED,
)
from harvester.scrapers.base import NormalizedOffer
from harvester.services.drift_detector import TargetBaseline, compute_run_metrics

logger = structlog.get_logger(__name__)

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"
OUTCOMES = (OUTCOME_SUCCEEDED, OUTCOME_FAILED, OUTCOME_SKIPPED)

# Enrichment-only fields: an incoming NULL never erases a stored value
COALESCE_FIELDS = (
    "image_url",
    "brand",
    "description",
    "category",
    "caliber",
    "grain_weight",
    "round_count",
    "upc",
    "retailer_product_id",
    "retailer_sku",
)

# Freshness fields: always take the latest observation
OVERWRITE_FIELDS = (
    "title",
    "url",
    "normalized_url",
    "price",
    "currency",
    "in_stock",
    "availability",
    "adapter_version",
    "last_run_id",
    "last_seen_at",
)


@dataclass(frozen=True)
class TargetCounters:
    consecutive_failures: int
    consecutive_invalid: int
    consecutive_zero_price: int
    status: str


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ScrapeWriter:
    """Persists validated offers plus target and run bookkeeping."""

    def __init__(self, db: AsyncSession):
        """Initialize writer.

        Args:
            db: Async database session
        """
        self.db = db
        self.logger = logger.bind(service="scrape_writer")

    def _insert(self):
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert
        if dialect == "sqlite":
            return sqlite_insert
        raise RuntimeError(f"Upsert not supported for dialect '{dialect}'")

    # ------------------------------------------------------------------
    # Offers
    # ------------------------------------------------------------------

    async def write_scrape_offer(
        self,
        run_id: Optional[UUID],
        target_id: Optional[UUID],
        offer: NormalizedOffer,
    ) -> UUID:
        """Upsert an offer keyed by identity key and record its price.

        Enrichment fields keep their stored value when the incoming value
        is NULL; title, URLs, price and stock are overwritten.

        Args:
            run_id: Current ScrapeRun id
            target_id: Target the offer came from (for logging)
            offer: Validated NormalizedOffer

        Returns:
            SourceProduct id
        """
        values = {
            "id": uuid.uuid4(),
            "identity_key": offer.identity_key,
            "source_id": offer.source_id,
            "retailer_id": offer.retailer_id,
            "title": offer.title,
            "url": offer.url,
            "normalized_url": offer.normalized_url,
            "price": offer.price,
            "currency": offer.currency,
            "in_stock": offer.in_stock,
            "availability": offer.availability,
            "brand": offer.brand,
            "caliber": offer.caliber,
            "grain_weight": offer.grain_weight,
            "round_count": offer.round_count,
            "image_url": offer.image_url,
            "description": offer.description,
            "category": offer.category,
            "upc": offer.upc,
            "retailer_product_id": offer.retailer_product_id,
            "retailer_sku": offer.retailer_sku,
            "adapter_version": offer.adapter_version,
            "last_run_id": run_id,
            "last_seen_at": offer.observed_at,
        }

        stmt = self._insert()(SourceProduct).values(**values)
        excluded = stmt.excluded
        set_ = {name: getattr(excluded, name) for name in OVERWRITE_FIELDS}
        set_.update({
            name: func.coalesce(getattr(excluded, name), getattr(SourceProduct.__table__.c, name))
            for name in COALESCE_FIELDS
        })
        set_["updated_at"] = func.now()

        stmt = stmt.on_conflict_do_update(
            index_elements=[SourceProduct.identity_key],
            set_=set_,
        ).returning(SourceProduct.id)

        result = await self.db.execute(stmt)
        product_id = result.scalar_one()

        self.db.add(
            PriceObservation(
                product_id=product_id,
                run_id=run_id,
                price=offer.price,
                currency=offer.currency,
                in_stock=offer.in_stock,
                observed_at=offer.observed_at,
            )
        )
        await self.db.commit()

        self.logger.info(
            "offer_written",
            product_id=str(product_id),
            target_id=str(target_id) if target_id else None,
            identity_key=offer.identity_key,
            price=str(offer.price),
            in_stock=offer.in_stock,
        )
        return product_id

    async def get_product(self, identity_key: str) -> Optional[SourceProduct]:
        result = await self.db.execute(
            select(SourceProduct).where(SourceProduct.identity_key == identity_key)
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Targets
    # ------------------------------------------------------------------

    async def get_target(self, target_id: UUID) -> Optional[ScrapeTarget]:
        result = await self.db.execute(select(ScrapeTarget).where(ScrapeTarget.id == target_id))
        return result.scalar_one_or_none()

    async def load_targets(
        self,
        adapter_id: str,
        statuses: Sequence[str] = (TARGET_STATUS_ACTIVE, TARGET_STATUS_BROKEN),
    ) -> List[ScrapeTarget]:
        """Targets for an adapter in the given statuses, least recently scraped first."""
        result = await self.db.execute(
            select(ScrapeTarget)
            .where(ScrapeTarget.adapter_id == adapter_id, ScrapeTarget.status.in_(statuses))
            .order_by(ScrapeTarget.last_scraped_at.asc().nulls_first())
        )
        return list(result.scalars().all())

    async def update_target_tracking(
        self,
        target_id: UUID,
        success: Optional[bool],
        invalid: Optional[bool] = None,
        zero_price: Optional[bool] = None,
        baseline: Optional[TargetBaseline] = None,
        last_status: Optional[str] = None,
    ) -> TargetCounters:
        """Advance a target's tracking counters in one UPDATE.

        Args:
            target_id: Target id
            success: True resets the failure streak and advances last_seen_at,
                False grows the failure streak, None (fetched but invalid)
                leaves both
            invalid: True/False extends/resets the invalid streak, None leaves it
            zero_price: True/False extends/resets the zero-price streak, None leaves it
            baseline: New drift baseline to store
            last_status: Short outcome label for operators

        Returns:
            The counters after the update
        """
        now = _now()
        values = {"last_scraped_at": now}
        if success:
            values.update(consecutive_failures=0, last_seen_at=now)
        elif success is not None:
            values["consecutive_failures"] = ScrapeTarget.consecutive_failures + 1
        if invalid is not None:
            values["consecutive_invalid"] = ScrapeTarget.consecutive_invalid + 1 if invalid else 0
        if zero_price is not None:
            values["consecutive_zero_price"] = ScrapeTarget.consecutive_zero_price + 1 if zero_price else 0
        if baseline is not None:
            values.update(
                baseline_price=baseline.price,
                baseline_in_stock=baseline.in_stock,
                baseline_sample_count=baseline.sample_count,
                baseline_variance=baseline.variance,
            )
        if last_status is not None:
            values["last_status"] = last_status

        result = await self.db.execute(
            update(ScrapeTarget)
            .where(ScrapeTarget.id == target_id)
            .values(**values)
            .returning(
                ScrapeTarget.consecutive_failures,
                ScrapeTarget.consecutive_invalid,
                ScrapeTarget.consecutive_zero_price,
                ScrapeTarget.status,
            )
            .execution_options(synchronize_session=False)
        )
        row = result.one()
        await self.db.commit()

        return TargetCounters(
            consecutive_failures=row[0],
            consecutive_invalid=row[1],
            consecutive_zero_price=row[2],
            status=row[3],
        )

    async def _transition(self, target_id: UUID, from_statuses, to_status: str, reason: str) -> bool:
        result = await self.db.execute(
            update(ScrapeTarget)
            .where(ScrapeTarget.id == target_id, ScrapeTarget.status.in_(from_statuses))
            .values(status=to_status, status_reason=reason, status_changed_at=_now())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def mark_target_broken(self, run_id: Optional[UUID], target_id: UUID, reason: str) -> bool:
        """Transition active -> broken.

        Returns:
            True if this call performed the transition
        """
        changed = await self._transition(target_id, (TARGET_STATUS_ACTIVE,), TARGET_STATUS_BROKEN, reason)
        if changed:
            self.logger.warning(
                "target_marked_broken",
                target_id=str(target_id),
                run_id=str(run_id) if run_id else None,
                reason=reason,
            )
        return changed

    async def disable_target(self, run_id: Optional[UUID], target_id: UUID, reason: str) -> bool:
        """Transition active/broken -> disabled.

        Returns:
            True if this call performed the transition
        """
        changed = await self._transition(
            target_id,
            (TARGET_STATUS_ACTIVE, TARGET_STATUS_BROKEN),
            TARGET_STATUS_DISABLED,
            reason,
        )
        if changed:
            self.logger.warning(
                "target_disabled",
                target_id=str(target_id),
                run_id=str(run_id) if run_id else None,
                reason=reason,
            )
        return changed

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def start_run(self, adapter_id: str, targets_total: int, trigger: str = "manual") -> ScrapeRun:
        """Create a running ScrapeRun for a batch."""
        run = ScrapeRun(
            adapter_id=adapter_id,
            trigger=trigger,
            status=RUN_STATUS_RUNNING,
            started_at=_now(),
            targets_total=targets_total,
        )
        self.db.add(run)
        await self.db.commit()
        await self.db.refresh(run)

        self.logger.info("run_started", run_id=str(run.id), adapter_id=adapter_id, targets_total=targets_total)
        return run

    async def get_run(self, run_id: UUID) -> Optional[ScrapeRun]:
        result = await self.db.execute(
            select(ScrapeRun).where(ScrapeRun.id == run_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def record_outcome(
        self,
        run_id: UUID,
        outcome: str,
        invalid: bool = False,
        drift_alert: bool = False,
    ) -> None:
        """Atomically count one target's terminal outcome on the run."""
        if outcome not in OUTCOMES:
            raise ValueError(f"Unknown outcome: {outcome}")

        values = {outcome: getattr(ScrapeRun, outcome) + 1}
        if invalid:
            values["invalid"] = ScrapeRun.invalid + 1
        if drift_alert:
            values["drift_alerts"] = ScrapeRun.drift_alerts + 1

        await self.db.execute(
            update(ScrapeRun)
            .where(ScrapeRun.id == run_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def finalize_run(self, run_id: UUID) -> bool:
        """Close a run once every target has a terminal outcome.

        Idempotent: a second call for the same run changes nothing.

        Returns:
            True if this call finalized the run, False if it was already
            finalized or still has outstanding targets
        """
        run = await self.get_run(run_id)
        if run is None:
            raise ValueError(f"Run not found: {run_id}")

        if run.completed_at is not None:
            self.logger.info("run_already_finalized", run_id=str(run_id))
            return False

        if run.completed_count < run.targets_total:
            self.logger.warning(
                "run_not_complete",
                run_id=str(run_id),
                completed=run.completed_count,
                targets_total=run.targets_total,
            )
            return False

        metrics = compute_run_metrics(
            attempted=run.targets_total,
            succeeded=run.succeeded,
            failed=run.failed,
            skipped=run.skipped,
            invalid=run.invalid,
        )
        status = RUN_STATUS_FAILED if run.failed > 0 and run.succeeded == 0 else RUN_STATUS_SUCCESS

        result = await self.db.execute(
            update(ScrapeRun)
            .where(ScrapeRun.id == run_id, ScrapeRun.completed_at.is_(None))
            .values(
                status=status,
                completed_at=_now(),
                failure_rate=metrics.failure_rate,
                yield_rate=metrics.yield_rate,
                drop_rate=metrics.drop_rate,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        finalized = result.rowcount == 1
        if finalized:
            self.logger.info(
                "run_finalized",
                run_id=str(run_id),
                status=status,
                succeeded=run.succeeded,
                failed=run.failed,
                skipped=run.skipped,
                failure_rate=metrics.failure_rate,
            )
        return finalized
