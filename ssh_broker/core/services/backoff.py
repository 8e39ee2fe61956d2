"""
Retry delay policies shared by tunnel restarts and session recovery.
"""

from ..domain.session import RecoveryStrategy


def exponential_delay(attempt: int, base_ms: float, cap_ms: float) -> float:
    """min(base * 2^(attempt-1), cap), in milliseconds. ``attempt`` starts at 1."""
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    return min(base_ms * (2 ** (attempt - 1)), cap_ms)


def recovery_delay(strategy: RecoveryStrategy, attempt: int, base_ms: float,
                   cap_ms: float = 60000) -> float:
    """
    Delay before recovery attempt ``attempt`` (1-based), in milliseconds.

    Args:
        strategy: immediate (always base), linear (base * n) or
            exponential (base * 2^(n-1), capped)
        attempt: Attempt number, starting at 1
        base_ms: Base delay
        cap_ms: Upper bound for the exponential strategy
    """
    if strategy == RecoveryStrategy.IMMEDIATE:
        return base_ms
    if strategy == RecoveryStrategy.LINEAR:
        return base_ms * attempt
    if strategy == RecoveryStrategy.EXPONENTIAL:
        return exponential_delay(attempt, base_ms, cap_ms)
    raise ValueError(f"Unknown recovery strategy: {strategy}")
