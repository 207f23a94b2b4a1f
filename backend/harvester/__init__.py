"""Offer harvester: policy-aware retailer scraping and offer ingestion."""

__version__ = "0.1.0"
