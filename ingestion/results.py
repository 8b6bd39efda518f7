"""
Per-unit results passed between feed sources and the batch runner
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Union


@dataclass(frozen=True)
class SourceUnit:
    """One raw unit of a feed (a CSV row, an API item) and its resume cursor."""
    payload: Any
    cursor: Optional[str] = None


@dataclass(frozen=True)
class Accepted:
    """A unit that normalized into a record ready for merging."""
    record: Dict[str, Any]


@dataclass(frozen=True)
class Skipped:
    """A unit that failed validation and is left out of the batch."""
    reason: str


NormalizeResult = Union[Accepted, Skipped]


@dataclass
class RunResult:
    """Outcome of one pass of a feed through the batch runner."""
    status: str
    records_read: int = 0
    records_loaded: int = 0
    records_skipped: int = 0
    batches_flushed: int = 0
    checkpoint: Optional[str] = None
    skipped_details: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
