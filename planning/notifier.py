import logging
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel

from planning.models import BatchWarning

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]


class Level(StrEnum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class Notification(BaseModel):
    level: Level
    message: str
    code: str | None = None
    created_at: datetime


Subscriber = Callable[[Notification], None]

_LOG_LEVELS = {
    Level.INFO: logging.INFO,
    Level.SUCCESS: logging.INFO,
    Level.WARNING: logging.WARNING,
    Level.ERROR: logging.WARNING,
}


class Notifier:
    """
    Collects user-facing notices and fans them out to the host shell.
    """

    def __init__(
        self, *, now_fn: NowFn | None = None, history_size: int = 100
    ) -> None:
        self._now_fn = now_fn or (lambda: datetime.now(UTC))
        self._pending: deque[Notification] = deque(maxlen=history_size)
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        self._subscribers.append(subscriber)
        return lambda: self._subscribers.remove(subscriber)

    def notify(
        self, level: Level, message: str, *, code: str | None = None
    ) -> Notification:
        notification = Notification(
            level=level, message=message, code=code, created_at=self._now_fn()
        )
        logger.log(_LOG_LEVELS[level], "[%s] %s", level.value, message)
        self._pending.append(notification)
        for subscriber in list(self._subscribers):
            subscriber(notification)
        return notification

    def info(self, message: str, *, code: str | None = None) -> Notification:
        return self.notify(Level.INFO, message, code=code)

    def success(self, message: str, *, code: str | None = None) -> Notification:
        return self.notify(Level.SUCCESS, message, code=code)

    def warning(self, message: str, *, code: str | None = None) -> Notification:
        return self.notify(Level.WARNING, message, code=code)

    def error(self, message: str, *, code: str | None = None) -> Notification:
        return self.notify(Level.ERROR, message, code=code)

    def warnings(self, warnings: list[BatchWarning]) -> None:
        for w in warnings:
            level = Level.ERROR if w.severity == "error" else Level.WARNING
            if w.severity == "info":
                level = Level.INFO
            self.notify(level, w.message, code=w.type)

    def pending(self) -> list[Notification]:
        return list(self._pending)

    def drain(self) -> list[Notification]:
        drained = list(self._pending)
        self._pending.clear()
        return drained
