"""
Ingestion pipeline shared by every feed.

Modules:
    base: FeedSource interface (fetch units, normalize one unit, merge policy)
    results: SourceUnit, Accepted / Skipped and RunResult
    locks: Cross-process write locks over named resources
    stream: Chunked stream reader and temporary downloads
    checkpoint: Progress cursors and run records
    runner: Batch orchestrator
    scheduler: APScheduler integration for periodic passes and lock sweeps

Subpackages:
    extractors: CSV and paginated API feed sources, contact feeds
    transformers: Contact normalization and validation
    loaders: Null-preserving merge upsert

Architecture:
    Units are pulled lazily from a feed, normalized one by one and
    collected into fixed-size batches. Each full batch is merged into the
    destination table inside one transaction while the destination's
    write lock is held; the feed's cursor advances only afterwards.
    Several independent processes may run feeds into the same table at
    once; the lock table is what serializes them.

Usage:
    from core.database import async_session_maker
    from ingestion.extractors.contacts import ContactCSVFeed
    from ingestion.runner import ETLRunner

    feed = ContactCSVFeed("contacts_csv", "https://example.com/export.csv")
    result = await ETLRunner(async_session_maker).run(feed)
    print(f"Loaded {result.records_loaded} records")
"""

__all__ = [
    "FeedSource",
    "ETLRunner",
    "LockManager",
    "ChunkedStreamReader",
    "CheckpointStore",
]
