"""
Feed source interface consumed by the batch runner
"""

from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional
from ingestion.loaders.upsert_loader import MergePolicy
from ingestion.results import NormalizeResult, SourceUnit
from models.base import SourceType


class FeedSource(ABC):
    """
    Abstract base class for all feeds.

    A feed only knows how to produce raw units, how to normalize one unit
    and where its records go. Batching, locking, merging and progress
    tracking are the runner's job and are the same for every feed.
    """

    source_type: SourceType
    checkpoint_type: str = "row"

    # A finished pass starts the next one from the beginning; the cursor
    # only serves to resume a pass that failed half way
    reset_cursor_on_success: bool = True

    def __init__(self, source_name: str):
        self.source_name = source_name

    @abstractmethod
    def fetch_source(self, cursor: Optional[str] = None) -> AsyncIterator[SourceUnit]:
        """
        Lazily produce raw units positioned after ``cursor``.

        Args:
            cursor: Last committed cursor (row number, page, ...) or None

        Returns:
            Async iterator of SourceUnit
        """
        pass

    @abstractmethod
    def normalize(self, unit: SourceUnit) -> NormalizeResult:
        """Turn one raw unit into Accepted(record) or Skipped(reason)"""
        pass

    @abstractmethod
    def merge_policy(self) -> MergePolicy:
        """Destination table, unique key and mergeable columns"""
        pass

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.source_name}>"
