"""
CSV feed source with chunked reading and row-number cursors
"""

import asyncio
import itertools
import pandas as pd
from abc import abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional
from pathlib import Path
from ingestion.base import FeedSource
from ingestion.results import NormalizeResult, SourceUnit, Skipped
from ingestion.stream import ChunkedStreamReader
from models.base import SourceType
from core.config import settings
from core.exceptions import CSVExtractionError
import logging

logger = logging.getLogger(__name__)

# Placeholder written into the first cell of a row pandas could not split;
# the suffix indexes the stashed raw fields
_MALFORMED_MARKER = "__malformed_row__:"


@dataclass(frozen=True)
class MalformedRow:
    """A data line with more fields than the header."""
    fields: List[str]
    expected: int


class CSVFeedSource(FeedSource):
    """
    Read a delimited export (URL or local path) row by row.

    The export is first copied to a temporary file through the chunked
    stream reader, then parsed by pandas ``chunk_rows`` rows at a time so
    only one frame is resident. Parsing runs in a worker thread.

    Supports:
    - Resume after a failed pass via the 1-based data row number
    - Header normalization
    - Blank cells as None
    - Lines with too many fields kept in place as skipped units
    """

    source_type = SourceType.CSV
    checkpoint_type = "row"

    def __init__(
        self,
        source_name: str,
        source: str,
        delimiter: str = ";",
        reader: Optional[ChunkedStreamReader] = None,
        chunk_rows: Optional[int] = None,
        encoding: str = "utf-8"
    ):
        super().__init__(source_name)
        self.source = str(source)
        self.delimiter = delimiter
        self.reader = reader or ChunkedStreamReader()
        self.chunk_rows = chunk_rows or settings.CSV_READ_CHUNK_ROWS
        self.encoding = encoding

    async def fetch_source(self, cursor: Optional[str] = None) -> AsyncIterator[SourceUnit]:
        """
        Yield rows after ``cursor``.

        Args:
            cursor: Last committed row number
        """
        start_after = self._parse_cursor(cursor)
        if start_after:
            logger.info(f"Resuming {self.source_name} after row {start_after}")

        async with self.reader.temporary_download(self.source, prefix="csv_", suffix=".csv") as path:
            malformed: Dict[str, MalformedRow] = {}
            frames = await asyncio.to_thread(self._open_frames, path, malformed)
            if frames is None:
                return

            row_number = 0
            try:
                while True:
                    frame = await asyncio.to_thread(self._next_frame, frames)
                    if frame is None:
                        break

                    first_column = frame.columns[0]
                    for row in frame.to_dict(orient="records"):
                        row_number += 1
                        payload: Any = row
                        marker = row.get(first_column)
                        if isinstance(marker, str) and marker in malformed:
                            payload = malformed.pop(marker)
                        if row_number <= start_after:
                            continue
                        yield SourceUnit(payload=payload, cursor=str(row_number))
            finally:
                frames.close()

            logger.info(f"Read {row_number} rows from {self.source_name}")

    def normalize(self, unit: SourceUnit) -> NormalizeResult:
        if isinstance(unit.payload, MalformedRow):
            return Skipped(
                f"Malformed line: expected {unit.payload.expected} fields, saw {len(unit.payload.fields)}"
            )
        return self.normalize_row(unit.payload)

    @abstractmethod
    def normalize_row(self, row: Dict[str, Any]) -> NormalizeResult:
        """Turn one well-formed row into Accepted(record) or Skipped(reason)"""
        pass

    def _open_frames(self, path: Path, malformed: Dict[str, MalformedRow]):
        options = dict(sep=self.delimiter, dtype=str, encoding=self.encoding, engine="python")
        try:
            header = pd.read_csv(path, nrows=0, **options)
            return pd.read_csv(
                path,
                chunksize=self.chunk_rows,
                keep_default_na=False,
                na_values=[""],
                on_bad_lines=self._bad_line_handler(len(header.columns), malformed),
                **options
            )
        except pd.errors.EmptyDataError:
            logger.warning(f"CSV export is empty: {self.source}")
            return None
        except (pd.errors.ParserError, UnicodeDecodeError) as e:
            raise self._parse_error(e)

    def _bad_line_handler(self, width: int, malformed: Dict[str, MalformedRow]) -> Callable[[List[str]], List[str]]:
        counter = itertools.count()

        def handle(fields: List[str]) -> List[str]:
            marker = f"{_MALFORMED_MARKER}{next(counter)}"
            malformed[marker] = MalformedRow(fields=list(fields), expected=width)
            logger.warning(
                f"Malformed line in {self.source_name}: expected {width} fields, "
                f"saw {len(fields)}: {self.delimiter.join(fields)[:200]}"
            )
            return [marker] + [""] * (width - 1)
        return handle

    def _next_frame(self, frames) -> Optional[pd.DataFrame]:
        try:
            frame = next(frames, None)
        except (pd.errors.ParserError, UnicodeDecodeError) as e:
            raise self._parse_error(e)
        if frame is None:
            return None
        # pandas reads a first data line wider than the header as an
        # implicit index column, which shifts every row
        if not isinstance(frame.index, pd.RangeIndex):
            raise CSVExtractionError(
                "First data line has more fields than the header",
                context={"source_name": self.source_name, "source": self.source}
            )
        return self._clean(frame)

    def _parse_error(self, error: Exception) -> CSVExtractionError:
        return CSVExtractionError(
            "Failed to parse CSV export",
            context={
                "source_name": self.source_name,
                "source": self.source,
                "delimiter": self.delimiter
            },
            original_exception=error
        )

    @staticmethod
    def _clean(frame: pd.DataFrame) -> pd.DataFrame:
        # Normalize column names (strip whitespace, lowercase)
        frame.columns = frame.columns.str.strip().str.lower().str.replace(" ", "_")
        frame = frame.astype(object)
        return frame.where(frame.notna(), None)

    @staticmethod
    def _parse_cursor(cursor: Optional[str]) -> int:
        if not cursor:
            return 0
        try:
            return max(int(cursor), 0)
        except ValueError:
            logger.warning(f"Ignoring malformed row cursor {cursor!r}")
            return 0
