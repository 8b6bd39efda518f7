"""
Process memory guard for long-running ingestion loops.

Compares resident memory against a configured limit and warns when the
process gets close to it. Purely advisory: it never raises and never
stops the loop that calls it.
"""

import logging
import re
from typing import Callable, Optional, Union

import psutil

from core.config import settings

try:
    import resource
except ImportError:  # Windows has no resource module
    resource = None

logger = logging.getLogger(__name__)

MB = 1024 * 1024

_LIMIT_PATTERN = re.compile(r"^\s*(\d+)\s*([KMG]?)B?\s*$", re.IGNORECASE)
_UNITS = {"": 1, "K": 1024, "M": MB, "G": 1024 * MB}


def parse_memory_limit(value: Union[str, int]) -> int:
    """
    Convert a limit like "128M", "1G", "512K" or a plain byte count to bytes.

    Raises:
        ValueError: If the value cannot be parsed or is not positive
    """
    if isinstance(value, int):
        limit = value
    else:
        match = _LIMIT_PATTERN.match(value)
        if not match:
            raise ValueError(f"Invalid memory limit: {value!r}")
        limit = int(match.group(1)) * _UNITS[match.group(2).upper()]

    if limit <= 0:
        raise ValueError(f"Memory limit must be positive, got {value!r}")
    return limit


def format_bytes(size: int) -> str:
    """Format a size in bytes as a human readable string."""
    units = ["B", "KB", "MB", "GB"]
    value = float(size)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2)} {units[i]}"


def _current_rss() -> int:
    return psutil.Process().memory_info().rss


class MemoryGuard:
    """
    Track process memory against a limit.

    The effective thresholds are the limit minus a fixed safety buffer and
    a soft ceiling expressed as a share of the limit; crossing either one
    produces a warning.
    """

    def __init__(
        self,
        limit_bytes: Optional[int] = None,
        safety_buffer_bytes: Optional[int] = None,
        max_usage: Optional[float] = None,
        usage_probe: Optional[Callable[[], int]] = None
    ):
        self.limit_bytes = limit_bytes or settings.MEMORY_LIMIT_MB * MB
        self.safety_buffer_bytes = (
            safety_buffer_bytes if safety_buffer_bytes is not None
            else settings.MEMORY_SAFETY_BUFFER_MB * MB
        )
        self.max_usage = max_usage if max_usage is not None else settings.MEMORY_MAX_USAGE
        self._usage_probe = usage_probe or _current_rss
        self._observed_peak = 0

    def current_usage(self) -> int:
        used = self._usage_probe()
        if used > self._observed_peak:
            self._observed_peak = used
        return used

    def peak_usage(self) -> int:
        """Peak resident size: the OS high-water mark when available."""
        peak = self._observed_peak
        if resource is not None and self._usage_probe is _current_rss:
            # ru_maxrss is kilobytes on Linux
            peak = max(peak, resource.getrusage(resource.RUSAGE_SELF).ru_maxrss * 1024)
        return peak

    def check_usage(self) -> bool:
        """
        Warn if memory usage is close to the configured limit.

        Returns:
            True when a warning was emitted
        """
        try:
            used = self.current_usage()
        except (psutil.Error, OSError) as e:
            logger.warning(f"Could not read process memory usage: {e}")
            return False

        safe_limit = self.limit_bytes - self.safety_buffer_bytes
        usage_percent = used / self.limit_bytes

        if used > safe_limit or usage_percent > self.max_usage:
            logger.warning(
                "Memory usage: %s/%s (%.1f%%)",
                format_bytes(used),
                format_bytes(self.limit_bytes),
                usage_percent * 100
            )
            return True
        return False

    def log_snapshot(self, label: str) -> None:
        """Log current and peak usage for diagnostics."""
        try:
            used = self.current_usage()
            peak = self.peak_usage()
        except (psutil.Error, OSError) as e:
            logger.warning(f"[{label}] Could not read process memory usage: {e}")
            return

        logger.info(
            "[%s] Memory: %s (peak: %s) of %s (%.1f%%)",
            label,
            format_bytes(used),
            format_bytes(peak),
            format_bytes(self.limit_bytes),
            (used / self.limit_bytes) * 100
        )
