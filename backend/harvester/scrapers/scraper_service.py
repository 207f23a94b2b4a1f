"""Scraper orchestration service.

This service connects the adapter layer with the writer. For every target
in a batch it runs fetch -> extract -> normalize -> validate -> dedupe ->
drift -> write, turns every exception into a terminal outcome for that
target, and closes out the run once all targets are accounted for.
"""

import asyncio
from contextlib import nullcontext
from dataclasses import dataclass
from typing import List, Optional, Sequence
from uuid import UUID

import structlog
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import retry_if_exception_type

from harvester.config import settings
from harvester.core.exceptions import (
    FetchFailed,
    InvalidUrl,
    OutOfScopeUrl,
    RateLimiterUnavailable,
    RobotsDisallowed,
)
from harvester.models import TARGET_STATUS_DISABLED, ScrapeTarget
from harvester.scrapers.base import (
    AdapterContext,
    BaseAdapter,
    ExtractFailureReason,
    NormalizedOffer,
    NormalizeFailureReason,
)
from harvester.scrapers.registry import AdapterRegistry, get_adapter_registry
from harvester.scrapers.utils.lock import DistributedLock
from harvester.scrapers.utils.retry import RetryPolicy
from harvester.services.drift_detector import (
    DriftThresholds,
    TargetBaseline,
    check_auto_disable,
    check_drift_alert,
    check_run_drift,
    check_zero_price_disable,
    compute_derived_metrics,
    compute_run_metrics,
    should_mark_url_broken,
    update_baseline,
)
from harvester.services.run_dedupe import RunDedupe
from harvester.services.validator import should_count_toward_drift, validate_offer
from harvester.services.writer import (
    OUTCOME_FAILED,
    OUTCOME_SKIPPED,
    OUTCOME_SUCCEEDED,
    ScrapeWriter,
)

logger = structlog.get_logger(__name__)


@dataclass
class RunSummary:
    """Per-run totals returned to the caller."""

    run_id: UUID
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    invalid: int = 0
    drift_alerts: int = 0
    # Run row closed with completed_at and metrics
    finalized: bool = False

    @property
    def total(self) -> int:
        return self.succeeded + self.failed + self.skipped


@dataclass
class TargetOutcome:
    outcome: str
    reason: Optional[str] = None
    invalid: bool = False
    drift_alert: bool = False


def _succeeded(drift_alert: bool = False) -> TargetOutcome:
    return TargetOutcome(OUTCOME_SUCCEEDED, reason="ok", drift_alert=drift_alert)


def _failed(reason: str, invalid: bool = False) -> TargetOutcome:
    return TargetOutcome(OUTCOME_FAILED, reason=reason, invalid=invalid)


def _skipped(reason: str) -> TargetOutcome:
    return TargetOutcome(OUTCOME_SKIPPED, reason=reason)


class ScraperService:
    """Service for running one adapter over a batch of scrape targets.

    Each target gets its own database session, so a failure while writing
    one target never leaves another target's transaction in a bad state.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: Optional[AdapterRegistry] = None,
        lock: Optional[DistributedLock] = None,
        dedupe: Optional[RunDedupe] = None,
        thresholds: Optional[DriftThresholds] = None,
        retry_policy: Optional[RetryPolicy] = None,
        concurrency: Optional[int] = None,
    ):
        """Initialize scraper service.

        Args:
            session_factory: Factory for per-target AsyncSessions
            registry: Adapter registry (defaults to the global one)
            lock: Per-target distributed lock; without one targets are not locked
            dedupe: Per-run identity dedupe; without one every offer is written
            thresholds: Drift/disable thresholds (defaults from settings)
            retry_policy: Retry policy for fetches and outcome writes (defaults from settings)
            concurrency: Max targets processed at once
        """
        self.session_factory = session_factory
        self.registry = registry or get_adapter_registry()
        self.lock = lock
        self.dedupe = dedupe
        self.thresholds = thresholds or DriftThresholds.from_settings()
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.concurrency = concurrency or settings.WORKER_CONCURRENCY
        self.logger = logger.bind(service="scraper_service")

    async def run_adapter(
        self,
        adapter_id: str,
        targets: Sequence[ScrapeTarget],
        trigger: str = "manual",
    ) -> RunSummary:
        """Run one adapter over a batch of targets.

        This is the main entry point for executing a scraping job.

        Args:
            adapter_id: Registered adapter id (e.g., "primaryarms")
            targets: Targets to scrape
            trigger: What started the run ("manual", "scheduled", ...)

        Returns:
            RunSummary with per-outcome totals

        Raises:
            UnknownAdapter: If no adapter is registered under adapter_id
        """
        adapter = self.registry.get(adapter_id)

        async with self.session_factory() as db:
            run = await ScrapeWriter(db).start_run(adapter_id, len(targets), trigger)
        run_id = run.id

        self.logger.info(
            "running_adapter",
            adapter_id=adapter_id,
            run_id=str(run_id),
            targets=len(targets),
            trigger=trigger,
        )

        semaphore = asyncio.Semaphore(self.concurrency)

        async def worker(target: ScrapeTarget) -> TargetOutcome:
            async with semaphore:
                return await self.process_target(adapter, run_id, target)

        outcomes: List[TargetOutcome] = await asyncio.gather(*(worker(t) for t in targets))

        summary = RunSummary(run_id=run_id)
        for outcome in outcomes:
            setattr(summary, outcome.outcome, getattr(summary, outcome.outcome) + 1)
            summary.invalid += int(outcome.invalid)
            summary.drift_alerts += int(outcome.drift_alert)

        async with self.session_factory() as db:
            summary.finalized = await ScrapeWriter(db).finalize_run(run_id)
        if not summary.finalized:
            self.logger.error(
                "run_not_finalized",
                adapter_id=adapter_id,
                run_id=str(run_id),
                outcomes=summary.total,
                targets=len(targets),
            )

        metrics = compute_run_metrics(
            attempted=len(targets),
            succeeded=summary.succeeded,
            failed=summary.failed,
            skipped=summary.skipped,
            invalid=summary.invalid,
        )
        run_alert = check_run_drift(metrics, summary.succeeded, self.thresholds)
        if run_alert:
            self.logger.warning(
                "run_drift_alert",
                adapter_id=adapter_id,
                run_id=str(run_id),
                kind=run_alert.kind,
                message=run_alert.message,
            )

        if self.dedupe is not None:
            try:
                await self.dedupe.clear(str(run_id))
            except RateLimiterUnavailable as e:
                # Key expires on its own
                self.logger.warning("run_dedupe_clear_failed", run_id=str(run_id), error=str(e))

        self.logger.info(
            "adapter_run_complete",
            adapter_id=adapter_id,
            run_id=str(run_id),
            succeeded=summary.succeeded,
            failed=summary.failed,
            skipped=summary.skipped,
            invalid=summary.invalid,
            drift_alerts=summary.drift_alerts,
            failure_rate=metrics.failure_rate,
        )
        return summary

    async def run_from_db(self, adapter_id: str, trigger: str = "scheduled") -> RunSummary:
        """Load the adapter's active and broken targets and run them."""
        self.registry.get(adapter_id)
        async with self.session_factory() as db:
            targets = await ScrapeWriter(db).load_targets(adapter_id)
        return await self.run_adapter(adapter_id, targets, trigger=trigger)

    async def process_target(self, adapter: BaseAdapter, run_id: UUID, target: ScrapeTarget) -> TargetOutcome:
        """Produce exactly one terminal outcome for a target and count it on the run."""
        log = self.logger.bind(run_id=str(run_id), target_id=str(target.id), adapter_id=adapter.id)
        try:
            outcome = await self._process_locked(adapter, run_id, target, log)
        except Exception as e:
            log.error("target_processing_failed", error=str(e), exc_info=True)
            outcome = _failed("unexpected_error")
            try:
                await self._track_failure(run_id, target, outcome.reason, log)
            except Exception as track_error:
                log.error("target_tracking_failed", error=str(track_error), exc_info=True)

        log.info("target_processed", outcome=outcome.outcome, reason=outcome.reason)

        try:
            retrying = self.retry_policy.retrying(retry=retry_if_exception_type(SQLAlchemyError))
            await retrying(self._record_outcome, run_id, outcome)
        except Exception as e:
            log.error("record_outcome_failed", outcome=outcome.outcome, error=str(e), exc_info=True)
        return outcome

    async def _record_outcome(self, run_id: UUID, outcome: TargetOutcome) -> None:
        async with self.session_factory() as db:
            await ScrapeWriter(db).record_outcome(
                run_id,
                outcome.outcome,
                invalid=outcome.invalid,
                drift_alert=outcome.drift_alert,
            )

    def _hold(self, target: ScrapeTarget):
        if self.lock is None:
            return nullcontext(True)
        return self.lock.hold(f"target:{target.id}")

    async def _process_locked(self, adapter: BaseAdapter, run_id: UUID, target: ScrapeTarget, log) -> TargetOutcome:
        if target.status == TARGET_STATUS_DISABLED:
            return _skipped("target_disabled")
        if target.adapter_id != adapter.id:
            log.warning("target_adapter_mismatch", target_adapter_id=target.adapter_id)
            return _skipped("adapter_mismatch")

        try:
            async with self._hold(target) as handle:
                if not handle:
                    log.info("target_locked_elsewhere")
                    return _skipped("lock_busy")
                return await self._scrape(adapter, run_id, target, log)
        except RedisError as e:
            log.error("lock_store_unavailable", error=str(e))
            return _failed("lock_unavailable")

    async def _scrape(self, adapter: BaseAdapter, run_id: UUID, target: ScrapeTarget, log) -> TargetOutcome:
        ctx = AdapterContext(
            source_id=target.source_id,
            retailer_id=target.retailer_id,
            target_id=str(target.id),
            run_id=str(run_id),
        )

        # Fetch
        try:
            fetched = await self.retry_policy.call(adapter.fetch_raw, target.url, ctx)
        except RobotsDisallowed:
            log.info("target_robots_disallowed", url=target.url)
            return _skipped("robots_disallowed")
        except (InvalidUrl, OutOfScopeUrl) as e:
            log.warning("target_url_rejected", url=target.url, error=e.message)
            await self._track_failure(run_id, target, "url_rejected", log)
            return _failed("url_rejected")
        except FetchFailed as e:
            log.warning("target_fetch_failed", url=target.url, status=e.status, reason=e.reason)
            await self._track_failure(run_id, target, e.reason, log)
            return _failed(e.reason)
        except RateLimiterUnavailable as e:
            log.error("target_rate_limiter_unavailable", error=e.message)
            await self._track_failure(run_id, target, "rate_limiter_unavailable", log)
            return _failed("rate_limiter_unavailable")

        # Extract
        extracted = adapter.extract(fetched.content, fetched.final_url, ctx)
        if not extracted.ok:
            if extracted.reason == ExtractFailureReason.OOS_NO_PRICE:
                await self._track(target, success=True, last_status="oos")
                return _skipped(ExtractFailureReason.OOS_NO_PRICE)
            log.warning("target_extract_failed", reason=extracted.reason)
            await self._track_failure(run_id, target, extracted.reason, log)
            return _failed(extracted.reason)

        # Normalize + validate
        normalized = adapter.normalize(extracted.offer, ctx)
        if not normalized.ok:
            return await self._handle_invalid(
                run_id,
                target,
                [normalized.reason],
                zero_price=normalized.reason == NormalizeFailureReason.ZERO_PRICE,
                log=log,
            )

        offer = normalized.offer
        validation = validate_offer(offer)
        if not validation.valid:
            return await self._handle_invalid(
                run_id, target, validation.reasons, zero_price=validation.is_zero_price, log=log
            )

        # Dedupe within the run
        if self.dedupe is not None:
            try:
                first_seen = await self.dedupe.check_and_mark(str(run_id), offer.identity_key)
            except RateLimiterUnavailable as e:
                log.error("run_dedupe_unavailable", error=e.message)
                return _failed("dedupe_unavailable")
            if not first_seen:
                log.info("offer_duplicate_in_run", identity_key=offer.identity_key)
                await self._track(target, success=True, last_status="duplicate")
                return _skipped("duplicate_in_run")

        # Drift + write
        drift_alert, baseline = self._evaluate_drift(target, offer, log)

        async with self.session_factory() as db:
            writer = ScrapeWriter(db)
            await writer.write_scrape_offer(run_id, target.id, offer)
            await writer.update_target_tracking(
                target.id,
                success=True,
                invalid=False,
                zero_price=False,
                baseline=baseline,
                last_status="ok",
            )
        return _succeeded(drift_alert=drift_alert)

    def _evaluate_drift(self, target: ScrapeTarget, offer: NormalizedOffer, log):
        if not should_count_toward_drift(offer):
            return False, None

        baseline = TargetBaseline.from_target(target)
        metrics = compute_derived_metrics(baseline, offer)
        alert = check_drift_alert(metrics, self.thresholds)
        if alert:
            log.warning(
                "drift_alert",
                kind=alert.kind,
                message=alert.message,
                price_delta_pct=alert.price_delta_pct,
                volatility_pct=metrics.volatility_pct,
                identity_key=offer.identity_key,
            )
        return alert is not None, update_baseline(baseline, offer, self.thresholds)

    async def _track(self, target: ScrapeTarget, success: bool, last_status: str):
        async with self.session_factory() as db:
            return await ScrapeWriter(db).update_target_tracking(
                target.id, success=success, last_status=last_status
            )

    async def _track_failure(self, run_id: UUID, target: ScrapeTarget, reason: str, log) -> None:
        async with self.session_factory() as db:
            writer = ScrapeWriter(db)
            counters = await writer.update_target_tracking(target.id, success=False, last_status="failed")
            if should_mark_url_broken(counters.consecutive_failures, self.thresholds):
                await writer.mark_target_broken(
                    run_id,
                    target.id,
                    f"{counters.consecutive_failures} consecutive failures (last: {reason})",
                )

    async def _handle_invalid(
        self,
        run_id: UUID,
        target: ScrapeTarget,
        reasons: List[str],
        zero_price: bool,
        log,
    ) -> TargetOutcome:
        log.warning("offer_invalid", reasons=reasons)

        async with self.session_factory() as db:
            writer = ScrapeWriter(db)
            counters = await writer.update_target_tracking(
                target.id,
                success=None,
                invalid=True,
                zero_price=zero_price,
                last_status="invalid",
            )
            if check_zero_price_disable(counters.consecutive_zero_price, self.thresholds):
                await writer.disable_target(
                    run_id,
                    target.id,
                    f"zero price on {counters.consecutive_zero_price} consecutive runs",
                )
            elif check_auto_disable(counters.consecutive_invalid, self.thresholds):
                await writer.disable_target(
                    run_id,
                    target.id,
                    f"{counters.consecutive_invalid} consecutive invalid offers (last: {', '.join(reasons)})",
                )

        return _failed(reasons[0] if reasons else "invalid", invalid=True)
