"""External collaborators consulted or informed by the core."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Protocol

from .state import utc_now
from .store import CoreStore

logger = logging.getLogger(__name__)


class SafetyGateway(Protocol):
    def is_blocked(self, user_a: int, user_b: int) -> bool:
        """True when either user has blocked the other."""


class BlockList(SafetyGateway, Protocol):
    on_block: Callable[[int, int], Any] | None

    def block(self, blocker: int, blocked: int) -> None:
        """Record a block and run ``on_block``."""

    def unblock(self, blocker: int, blocked: int) -> bool:
        """Drop a block; False when there was none."""

    def blocked_by(self, blocker: int) -> list[int]:
        """Return the users ``blocker`` has blocked."""


class Notifier(Protocol):
    def notify(self, title: str, content: str, **fields: Any) -> None:
        """Deliver a notification; may raise, callers do not depend on it."""


def notify_safely(notifier: Notifier | None, title: str, content: str, **fields: Any) -> None:
    """Fire-and-forget delivery: failures are logged and dropped."""
    if notifier is None:
        return
    try:
        notifier.notify(title, content, **fields)
    except Exception:
        logger.warning("Notification %r could not be delivered", title, exc_info=True)


class LoggingNotifier:
    def notify(self, title: str, content: str, **fields: Any) -> None:
        logger.info("%s: %s", title, content, extra=fields)


@dataclass
class StoreSafety:
    """Block list persisted through the core store.

    ``on_block`` runs after a block is recorded; the app wires it to the match
    service so that blocking also dissolves an existing match.
    """

    store: CoreStore
    on_block: Callable[[int, int], Any] | None = None
    clock: Callable[[], datetime] = utc_now

    def block(self, blocker: int, blocked: int) -> None:
        if self.store.add_block(blocker, blocked, self.clock()):
            logger.info("User %s blocked user %s", blocker, blocked, extra={"user_id": blocker})
        if self.on_block is not None:
            self.on_block(blocker, blocked)

    def unblock(self, blocker: int, blocked: int) -> bool:
        return self.store.remove_block(blocker, blocked)

    def blocked_by(self, blocker: int) -> list[int]:
        return self.store.list_blocked(blocker)

    def is_blocked(self, user_a: int, user_b: int) -> bool:
        return self.store.is_blocked(user_a, user_b)
