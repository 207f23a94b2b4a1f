"""Drift detection and auto-disable policy.

Each target keeps a small rolling baseline (last price, stock state,
sample count, EWMA variance of fractional price deltas). A large delta is
raised as an alert for review; it is a policy threshold, not proof of a
broken scraper, so the offer is still written. Repeated invalid or
zero-price normalizations disable the target; repeated fetch/extract
failures mark it broken.
"""

import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import structlog

from harvester.config import settings
from harvester.scrapers.base import NormalizedOffer

logger = structlog.get_logger(__name__)

ALERT_PRICE_DELTA = "PRICE_DELTA"
ALERT_STOCK_FLIP = "STOCK_FLIP"
ALERT_HIGH_FAILURE_RATE = "HIGH_FAILURE_RATE"
ALERT_ZERO_OFFERS = "ZERO_OFFERS"


@dataclass(frozen=True)
class DriftThresholds:
    """Operational tuning constants, sourced from Settings by default."""

    price_delta_pct: float = 50.0
    baseline_alpha: float = 0.3
    min_baseline_samples: int = 1
    auto_disable_invalid: int = 5
    zero_price_disable: int = 2
    url_broken_failures: int = 5
    run_min_targets: int = 20
    run_failure_rate: float = 0.5

    @classmethod
    def from_settings(cls) -> "DriftThresholds":
        return cls(
            price_delta_pct=settings.DRIFT_ALERT_PRICE_DELTA_PCT,
            baseline_alpha=settings.DRIFT_BASELINE_ALPHA,
            min_baseline_samples=settings.DRIFT_MIN_BASELINE_SAMPLES,
            auto_disable_invalid=settings.AUTO_DISABLE_INVALID_THRESHOLD,
            zero_price_disable=settings.ZERO_PRICE_DISABLE_THRESHOLD,
            url_broken_failures=settings.URL_BROKEN_FAILURE_THRESHOLD,
            run_min_targets=settings.RUN_DRIFT_MIN_TARGETS,
            run_failure_rate=settings.RUN_DRIFT_FAILURE_RATE,
        )


@dataclass(frozen=True)
class TargetBaseline:
    price: Optional[Decimal] = None
    in_stock: Optional[bool] = None
    sample_count: int = 0
    variance: float = 0.0

    @classmethod
    def from_target(cls, target) -> "TargetBaseline":
        return cls(
            price=target.baseline_price,
            in_stock=target.baseline_in_stock,
            sample_count=target.baseline_sample_count or 0,
            variance=target.baseline_variance or 0.0,
        )


@dataclass(frozen=True)
class DriftMetrics:
    price_delta_pct: Optional[float]
    volatility_pct: float
    stock_changed: bool
    sample_count: int


@dataclass(frozen=True)
class DriftAlert:
    kind: str
    message: str
    price_delta_pct: Optional[float] = None


@dataclass(frozen=True)
class RunMetrics:
    attempted: int
    failure_rate: float
    yield_rate: float
    drop_rate: float


def _fractional_delta(previous: Decimal, current: Decimal) -> Optional[float]:
    if previous is None or previous <= 0:
        return None
    return float((Decimal(current) - Decimal(previous)) / Decimal(previous))


def compute_derived_metrics(baseline: TargetBaseline, offer: NormalizedOffer) -> DriftMetrics:
    """Compare an offer with its target's baseline.

    Returns:
        DriftMetrics with the signed percentage price delta (None without a
        usable baseline) and the baseline's volatility in percent
    """
    delta = _fractional_delta(baseline.price, offer.price)
    stock_changed = baseline.in_stock is not None and offer.in_stock is not None and baseline.in_stock != offer.in_stock
    return DriftMetrics(
        price_delta_pct=None if delta is None else round(delta * 100, 4),
        volatility_pct=round(math.sqrt(max(baseline.variance, 0.0)) * 100, 4),
        stock_changed=stock_changed,
        sample_count=baseline.sample_count,
    )


def check_drift_alert(metrics: DriftMetrics, thresholds: DriftThresholds) -> Optional[DriftAlert]:
    """Flag a price move larger than the configured percentage.

    Returns None until the baseline has min_baseline_samples observations.
    """
    if metrics.sample_count < thresholds.min_baseline_samples:
        return None
    if metrics.price_delta_pct is not None and abs(metrics.price_delta_pct) > thresholds.price_delta_pct:
        return DriftAlert(
            kind=ALERT_PRICE_DELTA,
            message=f"price moved {metrics.price_delta_pct:+.1f}% (threshold {thresholds.price_delta_pct}%)",
            price_delta_pct=metrics.price_delta_pct,
        )
    if metrics.stock_changed:
        return DriftAlert(kind=ALERT_STOCK_FLIP, message="stock state changed")
    return None


def check_zero_price_disable(consecutive_zero_price: int, thresholds: DriftThresholds) -> bool:
    """Zero prices across consecutive runs usually mean the price selector broke."""
    return consecutive_zero_price >= thresholds.zero_price_disable


def check_auto_disable(consecutive_invalid: int, thresholds: DriftThresholds) -> bool:
    """Repeated invalid normalizations disable the target."""
    return consecutive_invalid >= thresholds.auto_disable_invalid


def should_mark_url_broken(consecutive_failures: int, thresholds: DriftThresholds) -> bool:
    """Persistent fetch/extract failure (not price drift) marks a URL broken."""
    return consecutive_failures >= thresholds.url_broken_failures


def update_baseline(
    baseline: TargetBaseline,
    offer: NormalizedOffer,
    thresholds: DriftThresholds,
) -> TargetBaseline:
    """Fold a validated observation into the rolling baseline.

    Variance is an exponentially weighted moving average of squared
    fractional price deltas with weight baseline_alpha.
    """
    delta = _fractional_delta(baseline.price, offer.price)
    variance = baseline.variance
    if delta is not None:
        alpha = thresholds.baseline_alpha
        variance = (1 - alpha) * variance + alpha * delta * delta

    return TargetBaseline(
        price=offer.price,
        in_stock=offer.in_stock,
        sample_count=baseline.sample_count + 1,
        variance=variance,
    )


def compute_run_metrics(attempted: int, succeeded: int, failed: int, skipped: int, invalid: int = 0) -> RunMetrics:
    """Run-level rates stored on ScrapeRun at finalization.

    failure_rate counts failures among attempted targets; yield_rate is the
    share that produced a written offer; drop_rate is invalid offers among
    those that got as far as normalization.
    """
    if attempted <= 0:
        return RunMetrics(attempted=0, failure_rate=0.0, yield_rate=0.0, drop_rate=0.0)
    normalized = succeeded + invalid
    return RunMetrics(
        attempted=attempted,
        failure_rate=round(failed / attempted, 4),
        yield_rate=round(succeeded / attempted, 4),
        drop_rate=round(invalid / normalized, 4) if normalized else 0.0,
    )


def check_run_drift(metrics: RunMetrics, succeeded: int, thresholds: DriftThresholds) -> Optional[DriftAlert]:
    """Adapter-level alert when a whole batch looks broken."""
    if metrics.attempted < thresholds.run_min_targets:
        return None
    if metrics.failure_rate >= thresholds.run_failure_rate:
        return DriftAlert(
            kind=ALERT_HIGH_FAILURE_RATE,
            message=f"{metrics.failure_rate:.0%} of {metrics.attempted} targets failed",
        )
    if succeeded == 0:
        return DriftAlert(kind=ALERT_ZERO_OFFERS, message="run produced no offers")
    return None
