"""API routes package initialization."""
from rank_tracker.api.routes import health, quota, rank_checks

__all__ = ["health", "quota", "rank_checks"]
