"""Retailer adapters."""

from harvester.scrapers.adapters.primaryarms import PrimaryArmsAdapter
from harvester.scrapers.adapters.sgammo import SGAmmoAdapter

__all__ = [
    "PrimaryArmsAdapter",
    "SGAmmoAdapter",
]
