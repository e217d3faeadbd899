import math
from typing import Any, Optional

from kubernetes.utils import parse_quantity

CPU_UNIT = 0.001          # one millicore
MEMORY_UNIT = 1024 ** 2   # one MiB
GIB = 1024 ** 3


def parse_cpu(value: Any) -> float:
    """Kubernetes CPU quantity ("250m", "1", "12345n") -> cores. Missing -> 0."""
    if value is None or value == "":
        return 0.0
    return float(parse_quantity(value))


def parse_memory(value: Any) -> float:
    """Kubernetes memory quantity ("128Mi", "1G", "1048576") -> bytes. Missing -> 0."""
    if value is None or value == "":
        return 0.0
    return float(parse_quantity(value))


def _units(value: float, unit: float) -> float:
    # Guard against 0.15 / 0.001 landing at 149.99999999999997
    return round(value / unit, 6)


def round_up(value: float, unit: float) -> float:
    return math.ceil(_units(value, unit)) * unit


def round_toward(value: float, current: float, unit: float) -> float:
    """Round to a whole unit in the direction of `current`."""
    if value >= current:
        return math.floor(_units(value, unit)) * unit
    return math.ceil(_units(value, unit)) * unit


def format_cpu(cores: float) -> str:
    if cores <= 0:
        return "0"
    millis = int(math.ceil(_units(cores, CPU_UNIT)))
    if millis % 1000 == 0:
        return str(millis // 1000)
    return f"{millis}m"


def format_memory(num_bytes: float) -> str:
    if num_bytes <= 0:
        return "0"
    mib = int(math.ceil(_units(num_bytes, MEMORY_UNIT)))
    if mib % 1024 == 0:
        return f"{mib // 1024}Gi"
    return f"{mib}Mi"


def format_optional(value: float, fmt) -> Optional[str]:
    """Format a resource value, mapping unset (0) to None."""
    if not value:
        return None
    return fmt(value)
