"""Workers package initialization."""
from rank_tracker.workers.rank_check_worker import RankCheckWorker, RankCheckOutcome
from rank_tracker.workers.sweep_worker import SweepWorker, SweepRun

__all__ = ["RankCheckWorker", "RankCheckOutcome", "SweepWorker", "SweepRun"]
