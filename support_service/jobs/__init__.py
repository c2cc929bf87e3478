"""
Background Jobs for the Support Service.

- scheduler: in-process periodic sweeps started by the app lifespan
- maintenance: cron-friendly cleanup and routing jobs with alerting
"""

from .maintenance import run_auto_route_job, run_tracking_cleanup_job
from .scheduler import BackgroundJobs

__all__ = [
    "BackgroundJobs",
    "run_auto_route_job",
    "run_tracking_cleanup_job",
]
