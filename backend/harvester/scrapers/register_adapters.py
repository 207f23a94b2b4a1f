"""Register all retailer adapters with the registry.

The process entry point calls register_all_adapters() once at startup.
Adding a retailer means adding it to ADAPTER_CLASSES below.
"""

from typing import List, Optional, Type

import structlog

from harvester.scrapers.adapters import PrimaryArmsAdapter, SGAmmoAdapter
from harvester.scrapers.base import BaseAdapter
from harvester.scrapers.fetcher import Fetcher
from harvester.scrapers.registry import AdapterRegistry, get_adapter_registry

logger = structlog.get_logger(__name__)

ADAPTER_CLASSES: List[Type[BaseAdapter]] = [
    PrimaryArmsAdapter,  # json
    SGAmmoAdapter,  # html
]


def register_all_adapters(fetcher: Fetcher, registry: Optional[AdapterRegistry] = None) -> AdapterRegistry:
    """Register every known adapter, sharing one fetcher.

    Args:
        fetcher: Policy-aware fetcher injected into each adapter
        registry: Target registry, defaults to the global one

    Returns:
        The populated registry
    """
    registry = registry or get_adapter_registry()

    for adapter_class in ADAPTER_CLASSES:
        registry.register(adapter_class(fetcher=fetcher))

    logger.info(
        "all_adapters_registered",
        count=len(ADAPTER_CLASSES),
        adapters=[manifest.id for manifest in registry.list()],
    )
    return registry
