import logging
from concurrent.futures import Executor
from typing import Optional, Protocol
from uuid import UUID

from .models import NotificationRequest

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def send(self, request: NotificationRequest) -> None:
        ...


class LoggingNotifier:
    """Default collaborator: writes the message to the log."""

    def send(self, request: NotificationRequest) -> None:
        logger.info("Notify %s [%s]: %s", request.user_id, request.event, request.message)


class NotificationDispatcher:
    """Fire-and-forget delivery. Failures are logged and never raised, so a
    broken SMS or email gateway cannot undo a committed ledger change.

    Call only after the ledger write has committed and outside any lock.
    """

    def __init__(self, notifier: Optional[Notifier] = None, executor: Optional[Executor] = None):
        self.notifier = notifier or LoggingNotifier()
        self.executor = executor

    def notify(self, user_id: UUID, event: str, message: str) -> None:
        request = NotificationRequest(user_id=user_id, event=event, message=message)
        if self.executor is not None:
            self.executor.submit(self._deliver, request)
        else:
            self._deliver(request)

    def _deliver(self, request: NotificationRequest) -> None:
        try:
            self.notifier.send(request)
        except Exception:
            logger.exception("Failed to deliver %s notification to %s", request.event, request.user_id)
