"""Registry mapping site identifiers to adapter instances."""

from typing import Dict, List
from urllib.parse import urlsplit

import structlog

from harvester.core.exceptions import DuplicateAdapter, InvalidManifest, UnknownAdapter
from harvester.scrapers.base import CONTENT_MODES, AdapterManifest, BaseAdapter
from harvester.scrapers.utils.url import get_registrable_domain

logger = structlog.get_logger(__name__)


def validate_manifest(adapter: BaseAdapter) -> AdapterManifest:
    """Check an adapter's manifest before it is registered.

    Raises:
        InvalidManifest: If a required field is missing or inconsistent
    """
    manifest = adapter.manifest
    if manifest is None or not isinstance(manifest, AdapterManifest):
        raise InvalidManifest(type(adapter).__name__, "adapter has no manifest")

    site_id = manifest.id or type(adapter).__name__
    if not manifest.id or not manifest.id.strip():
        raise InvalidManifest(site_id, "id is required")
    if not manifest.domain:
        raise InvalidManifest(site_id, "domain is required")
    if manifest.mode not in CONTENT_MODES:
        raise InvalidManifest(site_id, f"mode must be one of {CONTENT_MODES}")
    if manifest.mode != adapter.mode:
        raise InvalidManifest(site_id, f"manifest mode '{manifest.mode}' does not match {type(adapter).__name__}")
    if not manifest.base_urls:
        raise InvalidManifest(site_id, "at least one base URL is required")
    for base_url in manifest.base_urls:
        parts = urlsplit(base_url)
        if parts.scheme != "https" or not parts.hostname:
            raise InvalidManifest(site_id, f"base URL must be https: {base_url}")
    return manifest


class AdapterRegistry:
    """Closed set of adapters, populated explicitly at process start.

    There is no discovery: an adapter is only reachable after register()
    has been called for it, so the active list is always auditable.
    """

    def __init__(self):
        self._adapters: Dict[str, BaseAdapter] = {}
        self._domains: Dict[str, str] = {}

    def register(self, adapter: BaseAdapter) -> None:
        """Register an adapter instance under its manifest id.

        Args:
            adapter: Adapter instance (must inherit from BaseAdapter)

        Raises:
            InvalidManifest: If the manifest fails validation
            DuplicateAdapter: If the id or registrable domain is already registered
        """
        if not isinstance(adapter, BaseAdapter):
            raise InvalidManifest(type(adapter).__name__, "adapter must inherit from BaseAdapter")

        manifest = validate_manifest(adapter)
        if manifest.id in self._adapters:
            raise DuplicateAdapter(manifest.id)

        domain = get_registrable_domain(manifest.domain)
        owner = self._domains.get(domain)
        if owner is not None:
            raise DuplicateAdapter(manifest.id, f"domain '{domain}' already claimed by '{owner}'")

        self._adapters[manifest.id] = adapter
        self._domains[domain] = manifest.id
        logger.info(
            "adapter_registered",
            adapter_id=manifest.id,
            mode=manifest.mode,
            version=manifest.version,
        )

    def get(self, site_id: str) -> BaseAdapter:
        """Look up an adapter.

        Raises:
            UnknownAdapter: If nothing is registered under site_id
        """
        adapter = self._adapters.get(site_id)
        if adapter is None:
            logger.warning("adapter_not_found", adapter_id=site_id)
            raise UnknownAdapter(site_id)
        return adapter

    def list(self) -> List[AdapterManifest]:
        """Registered manifests sorted by id."""
        return [self._adapters[key].manifest for key in sorted(self._adapters)]

    def has_adapter(self, site_id: str) -> bool:
        return site_id in self._adapters

    def reset(self) -> None:
        """Clear all registrations. Test isolation only."""
        self._adapters.clear()
        self._domains.clear()


# Global registry instance
adapter_registry = AdapterRegistry()


def get_adapter_registry() -> AdapterRegistry:
    """Get the global adapter registry instance.

    Returns:
        AdapterRegistry instance
    """
    return adapter_registry
