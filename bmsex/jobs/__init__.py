"""
BMSEX Jobs Module

Components:
- RateLimiter: token-bucket limits for vendor calls
- ProgressNotifier: non-blocking progress event fan-out

The batch orchestrator (``bmsex.jobs.registry.BatchRegistry``) and its
file runner (``bmsex.jobs.worker.BatchWorker``) are imported from their
modules.
"""

from .events import ProgressNotifier
from .rate_limiter import RateLimitConfig, RateLimiter

__all__ = [
    'ProgressNotifier',
    'RateLimitConfig',
    'RateLimiter',
]
