"""Manual scraper runner for testing and debugging adapters.

Runs one adapter either over explicit URLs (targets are created on the
fly if they do not exist) or over every active/broken target stored for
the adapter, then prints the run summary.

Usage:
    python scripts/run_scraper.py --list
    python scripts/run_scraper.py --adapter primaryarms --url https://www.primaryarms.com/api/items?url=...
    python scripts/run_scraper.py --adapter sgammo --from-db
"""

import argparse
import asyncio
import os
import sys
from typing import List

# Add backend to path so we can import harvester modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "backend"))

import httpx
from sqlalchemy import select

from harvester.config import settings
from harvester.core.exceptions import HarvesterException
from harvester.core.logging import configure_logging
from harvester.db.session import async_session_factory, engine, init_db
from harvester.models import ScrapeTarget
from harvester.scrapers.fetcher import Fetcher
from harvester.scrapers.register_adapters import register_all_adapters
from harvester.scrapers.registry import AdapterRegistry
from harvester.scrapers.scraper_service import ScraperService
from harvester.scrapers.utils.lock import DistributedLock
from harvester.scrapers.utils.rate_limiter import DomainRateLimiter
from harvester.scrapers.utils.robots import RobotsPolicy
from harvester.scrapers.utils.url import canonicalize_url
from harvester.services.redis_client import close_redis, get_redis
from harvester.services.run_dedupe import RunDedupe


async def _ensure_targets(adapter_id: str, urls: List[str], registry: AdapterRegistry) -> List[ScrapeTarget]:
    """Load or create a target per URL for ad-hoc runs."""
    manifest = registry.get(adapter_id).manifest
    targets = []

    async with async_session_factory() as db:
        for url in urls:
            canonical = canonicalize_url(url)
            result = await db.execute(
                select(ScrapeTarget).where(
                    ScrapeTarget.source_id == manifest.id,
                    ScrapeTarget.canonical_url == canonical,
                )
            )
            target = result.scalar_one_or_none()
            if target is None:
                target = ScrapeTarget(
                    source_id=manifest.id,
                    retailer_id=manifest.domain,
                    adapter_id=manifest.id,
                    url=url,
                    canonical_url=canonical,
                )
                db.add(target)
                await db.commit()
                await db.refresh(target)
            targets.append(target)

    return targets


async def run_scraper(adapter_id: str, urls: List[str], from_db: bool) -> int:
    """Run an adapter and display the results.

    Args:
        adapter_id: Registered adapter id (e.g., "primaryarms")
        urls: Explicit target URLs
        from_db: Run every stored active/broken target for the adapter

    Returns:
        Process exit code
    """
    await init_db(engine)
    redis = get_redis()

    async with httpx.AsyncClient(headers={"User-Agent": settings.get_user_agent()}) as client:
        fetcher = Fetcher(
            client=client,
            robots=RobotsPolicy(client),
            rate_limiter=DomainRateLimiter(redis),
        )
        registry = register_all_adapters(fetcher, AdapterRegistry())

        if not registry.has_adapter(adapter_id):
            print(f"\nError: Unknown adapter '{adapter_id}'")
            print("\nAvailable adapters:")
            for manifest in registry.list():
                print(f"   - {manifest.id} ({manifest.domain}, {manifest.mode})")
            return 2

        service = ScraperService(
            async_session_factory,
            registry=registry,
            lock=DistributedLock(redis),
            dedupe=RunDedupe(redis),
        )

        print(f"\n{'='*70}")
        print(f"  Running {adapter_id.upper()} adapter")
        print(f"{'='*70}\n")

        try:
            if from_db:
                summary = await service.run_from_db(adapter_id, trigger="manual")
            else:
                targets = await _ensure_targets(adapter_id, urls, registry)
                summary = await service.run_adapter(adapter_id, targets, trigger="manual")
        except HarvesterException as e:
            print(f"\nError: {e}")
            return 1

    print(f"{'='*70}")
    print("  Summary")
    print(f"{'='*70}")
    print(f"  Run:          {summary.run_id}")
    print(f"  Succeeded:    {summary.succeeded}")
    print(f"  Failed:       {summary.failed}")
    print(f"  Skipped:      {summary.skipped}")
    print(f"  Invalid:      {summary.invalid}")
    print(f"  Drift alerts: {summary.drift_alerts}")
    print(f"  Finalized:    {summary.finalized}")
    print(f"{'='*70}\n")
    return 0


async def _main(args: argparse.Namespace) -> int:
    try:
        if args.list:
            registry = register_all_adapters(fetcher=None, registry=AdapterRegistry())
            for manifest in registry.list():
                print(f"{manifest.id:<16} {manifest.domain:<24} {manifest.mode}")
            return 0
        return await run_scraper(args.adapter, args.url or [], args.from_db)
    finally:
        await close_redis()
        await engine.dispose()


def main():
    """Parse arguments and run the scraper."""
    parser = argparse.ArgumentParser(
        description="Run a retailer adapter over one or more targets",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/run_scraper.py --list
  python scripts/run_scraper.py --adapter sgammo --url https://sgammo.com/product/some-ammo
  python scripts/run_scraper.py --adapter primaryarms --from-db
        """,
    )

    parser.add_argument(
        "--adapter",
        help="Adapter id (e.g., 'primaryarms', 'sgammo')",
    )

    parser.add_argument(
        "--url",
        action="append",
        help="Target URL; repeat for several targets",
    )

    parser.add_argument(
        "--from-db",
        action="store_true",
        help="Run every active or broken target stored for the adapter",
    )

    parser.add_argument(
        "--list",
        action="store_true",
        help="List registered adapters and exit",
    )

    args = parser.parse_args()

    if not args.list:
        if not args.adapter:
            parser.error("--adapter is required")
        if not args.url and not args.from_db:
            parser.error("one of --url or --from-db is required")

    configure_logging()
    sys.exit(asyncio.run(_main(args)))


if __name__ == "__main__":
    main()
