"""
Retry delay policy shared by the lock manager and the feed clients
"""


def backoff_delay(attempt: int, base: float = 0.1, cap: float = 5.0) -> float:
    """
    Exponential backoff: the base delay doubles with every attempt.

    Args:
        attempt: Zero-based attempt number
        base: Delay for the first attempt, in seconds
        cap: Upper bound, in seconds

    Returns:
        Seconds to wait before the next attempt
    """
    if attempt < 0:
        attempt = 0
    # 2 ** 64 is already far past any sane cap; avoids float overflow
    return min(cap, base * (2 ** min(attempt, 64)))
