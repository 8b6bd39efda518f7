"""
Pydantic schemas for data validation and serialization.

Schemas:
    normalized: ContactRecord, the validated shape of one contact from any feed
    api: Response models for the health, locks and stats endpoints

Validation failures in ``normalized`` never escape the pipeline: the
normalizer turns them into skipped units with a readable reason.
"""

__all__ = [
    "ContactRecord",
    "HealthCheckResponse",
    "LocksResponse",
    "StatsResponse",
]
