"""User-visible, dismissible notifications."""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

from optisync.errors import GatewayError, user_message
from optisync.utils.time import utc_now_iso

if TYPE_CHECKING:
    from optisync.reconciler import MutationDescriptor

logger = logging.getLogger(__name__)

Level = Literal["info", "error"]


@dataclass
class Notification:
    id: int
    level: Level
    title: str
    message: str
    code: str | None = None
    created_at: str = field(default_factory=utc_now_iso)
    dismissed: bool = False


class NotificationCenter:
    def __init__(self) -> None:
        self._items: list[Notification] = []
        self._ids = itertools.count(1)
        self._listeners: list[Callable[[Notification], None]] = []

    def info(self, title: str, message: str) -> Notification:
        return self._push("info", title, message, None)

    def error(self, exc: BaseException, title: str = "Error") -> Notification:
        code = getattr(exc, "code", None)
        return self._push("error", title, user_message(exc), code)

    def notify_failure(
        self, error: GatewayError, descriptor: MutationDescriptor | None = None
    ) -> None:
        if descriptor is None:
            title = "Could not load"
        else:
            title = f"Could not {descriptor.kind.value} {descriptor.entity.name}"
        self.error(error, title=title)

    def active(self) -> list[Notification]:
        return [item for item in self._items if not item.dismissed]

    def dismiss(self, notification_id: int) -> bool:
        for item in self._items:
            if item.id == notification_id and not item.dismissed:
                item.dismissed = True
                return True
        return False

    def dismiss_all(self) -> None:
        for item in self._items:
            item.dismissed = True

    def subscribe(self, listener: Callable[[Notification], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _push(self, level: Level, title: str, message: str, code: str | None) -> Notification:
        item = Notification(
            id=next(self._ids), level=level, title=title, message=message, code=code
        )
        self._items.append(item)
        logger.info("Notification [%s] %s: %s", level, title, message)
        for listener in list(self._listeners):
            try:
                listener(item)
            except Exception:
                logger.exception("Notification listener failed")
        return item
