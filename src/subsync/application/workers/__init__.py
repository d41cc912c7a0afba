"""Background workers."""

from subsync.application.workers.download_queue import DownloadQueue, create_download_queue
from subsync.application.workers.subscription_checker import CheckResult, SubscriptionChecker

__all__ = [
    "CheckResult",
    "DownloadQueue",
    "SubscriptionChecker",
    "create_download_queue",
]
