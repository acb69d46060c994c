"""Worker process running the queue consumers and the cron scheduler."""

from automation_engine.workers.runner import main, run_worker

__all__ = ["main", "run_worker"]
