"""
Owner notifications for expired files

Notifications are queued on their own thread pool and retried with
exponential backoff, independently of the sweep that produced them.
"""
import logging
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor

from core.email import send_file_deleted_email

logger = logging.getLogger(__name__)

Notifier = Callable[[str, str], None]


class EmailNotifier:
    """Sends the file-deleted email to owners whose id is an email address"""

    def __init__(self, retention_days: int, send=send_file_deleted_email):
        self.retention_days = retention_days
        self._send = send

    @staticmethod
    def resolve_address(owner_id: str) -> str | None:
        owner_id = owner_id.strip()
        if "@" in owner_id and not owner_id.startswith("@") and not owner_id.endswith("@"):
            return owner_id
        return None

    def __call__(self, owner_id: str, display_name: str) -> None:
        address = self.resolve_address(owner_id)
        if address is None:
            logger.warning(
                "No email address for owner %s, not notifying about %s",
                owner_id, display_name,
            )
            return
        self._send(address, display_name, self.retention_days)


class NotificationDispatcher:
    """
    Fire-and-forget delivery of owner notifications.

    dispatch() returns immediately with a Future resolving to True on
    delivery or False once all attempts failed. Failures are only logged.
    """

    def __init__(
        self,
        notify: Notifier,
        max_attempts: int = 3,
        backoff_seconds: float = 5.0,
        max_workers: int = 2,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._notify = notify
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="notify"
        )

    def dispatch(self, owner_id: str, display_name: str) -> Future:
        """Queue a notification for delivery"""
        return self._executor.submit(self._deliver, owner_id, display_name)

    def _deliver(self, owner_id: str, display_name: str) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            try:
                self._notify(owner_id, display_name)
                return True
            except Exception as exc:
                if attempt == self.max_attempts:
                    logger.error(
                        "Giving up notifying %s about %s after %d attempts: %s",
                        owner_id, display_name, attempt, exc,
                    )
                    return False
                delay = self.backoff_seconds * 2 ** (attempt - 1)
                logger.warning(
                    "Notification to %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    owner_id, attempt, self.max_attempts, delay, exc,
                )
                self._sleep(delay)
        return False

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting notifications; optionally drain the queue"""
        self._executor.shutdown(wait=wait)
