"""Services module for validation, drift detection and persistence.

Services sit between the adapters and the database: nothing outside this
package writes offers, targets or runs.
"""

from harvester.services.drift_detector import DriftThresholds, TargetBaseline
from harvester.services.run_dedupe import RunDedupe
from harvester.services.validator import ValidationResult, validate_offer
from harvester.services.writer import ScrapeWriter

__all__ = [
    "DriftThresholds",
    "TargetBaseline",
    "RunDedupe",
    "ValidationResult",
    "validate_offer",
    "ScrapeWriter",
]
