"""Utilities package initialization."""
from rank_tracker.utils.time import utc_now, reference_today, start_of_reference_day, due_cutoff

__all__ = [
    "utc_now",
    "reference_today",
    "start_of_reference_day",
    "due_cutoff"
]
