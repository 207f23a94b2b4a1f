"""SQLAlchemy models for the harvester.

All models are imported here so metadata.create_all sees every table.
"""

from harvester.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from harvester.models.scrape_target import (
    ScrapeTarget,
    TARGET_STATUS_ACTIVE,
    TARGET_STATUS_BROKEN,
    TARGET_STATUS_DISABLED,
)
from harvester.models.scrape_run import (
    ScrapeRun,
    RUN_STATUS_RUNNING,
    RUN_STATUS_SUCCESS,
    RUN_STATUS_FAILED,
)
from harvester.models.source_product import SourceProduct
from harvester.models.price_observation import PriceObservation

__all__ = [
    "Base",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    "ScrapeTarget",
    "ScrapeRun",
    "SourceProduct",
    "PriceObservation",
    "TARGET_STATUS_ACTIVE",
    "TARGET_STATUS_BROKEN",
    "TARGET_STATUS_DISABLED",
    "RUN_STATUS_RUNNING",
    "RUN_STATUS_SUCCESS",
    "RUN_STATUS_FAILED",
]
