"""
Uptime statistics over stored observations.
"""

import time
from typing import Iterable, Optional

from uptime_monitor.models import Observation


def calculate_uptime_percentage(
    observations: Iterable[Observation], hours_back: int = 24, now: Optional[float] = None
) -> float:
    """
    Percentage of up observations within the last ``hours_back`` hours.

    Returns 0.0 when there are no observations in the window. The result is
    rounded to one decimal place.
    """
    now = now if now is not None else time.time()
    cutoff = int(now) - hours_back * 3600

    recent = [o for o in observations if o.checked_at >= cutoff]
    if not recent:
        return 0.0

    up_count = sum(1 for o in recent if o.is_up)
    return round(up_count / len(recent) * 100, 1)


def uptime_label(percentage: float) -> str:
    if percentage >= 99:
        return "Excellent"
    if percentage >= 95:
        return "Good"
    if percentage >= 90:
        return "Fair"
    return "Poor"
