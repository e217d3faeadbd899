from typing import List

# Ultra-spike thresholds on max/p99 and p99/p95
ULTRA_MAX_TO_P99 = 3.0
ULTRA_P99_TO_P95 = 1.5
ULTRA_MAX_TO_P99_ALONE = 4.0

# Relative tolerance for threshold comparisons, so 1.2/0.3 counts as 4.0
_RATIO_TOLERANCE = 1e-9


def avg(samples: List[float]) -> float:
    if not samples:
        raise ValueError("samples must not be empty")
    return sum(samples) / len(samples)


def percentile(samples: List[float], fraction: float) -> float:
    """Nearest-rank (lower) percentile: element at floor(fraction * (n - 1)) of a sorted copy."""
    if not samples:
        raise ValueError("samples must not be empty")
    if not (0 <= fraction <= 1):
        raise ValueError("fraction must be between 0 and 1")
    s = sorted(samples)
    idx = min(int(fraction * (len(s) - 1) + 1e-9), len(s) - 1)
    return float(s[idx])


def p50(samples: List[float]) -> float:
    return percentile(samples, 0.50)


def p95(samples: List[float]) -> float:
    return percentile(samples, 0.95)


def p99(samples: List[float]) -> float:
    return percentile(samples, 0.99)


def ratio(numerator: float, denominator: float) -> float:
    if denominator == 0:
        if numerator == 0:
            return 1.0
        return float('inf')
    return numerator / denominator


def exceeds(value: float, threshold: float) -> bool:
    """value > threshold, treating values within float noise of the threshold as reaching it."""
    return value > threshold or abs(value - threshold) <= _RATIO_TOLERANCE * threshold


def is_ultra_spike(max_to_p99: float, p99_to_p95: float) -> bool:
    return (
        (exceeds(max_to_p99, ULTRA_MAX_TO_P99) and exceeds(p99_to_p95, ULTRA_P99_TO_P95))
        or exceeds(max_to_p99, ULTRA_MAX_TO_P99_ALONE)
    )
