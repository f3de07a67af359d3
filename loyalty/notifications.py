"""
Best-effort notifications for point changes.

Ledger mutations never wait on delivery: the dispatcher hands each
notification to a worker thread and only logs failures.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class PointsNotification(BaseModel):
    account_id: str
    title: str
    message: str
    channels: list[str] = Field(default_factory=lambda: ["in_app"])
    data: dict[str, Any] = Field(default_factory=dict)


class Notifier(Protocol):
    def dispatch(self, notification: PointsNotification) -> None:
        ...


class NullNotifier:
    def dispatch(self, notification: PointsNotification) -> None:
        return None


class LoggingNotifier:
    """Delivers by writing to the log. Default sender when nothing else is wired."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def dispatch(self, notification: PointsNotification) -> None:
        self.log.info(
            "Notify %s via %s: %s - %s",
            notification.account_id, ",".join(notification.channels), notification.title, notification.message,
        )


class BackgroundNotificationDispatcher:
    """Queues notifications on a thread pool so senders can be slow or fail."""

    def __init__(self, send: Callable[[PointsNotification], None], max_workers: int = 2):
        self._send = send
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="points-notify")

    def dispatch(self, notification: PointsNotification) -> Future:
        future = self._executor.submit(self._send, notification)
        future.add_done_callback(lambda f: self._log_failure(f, notification))
        return future

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    @staticmethod
    def _log_failure(future: Future, notification: PointsNotification) -> None:
        if future.cancelled():
            logger.warning("Notification for %s was cancelled", notification.account_id)
            return
        error = future.exception()
        if error is not None:
            logger.error(
                "Notification '%s' for %s failed: %s",
                notification.title, notification.account_id, error,
            )
