"""
Notifier: the contract for delivering a message to one user.

The lifecycle service never talks to a transport directly. It collects
Notice objects while its transaction is open and hands them to a Notifier
only after commit, through dispatch_notices(), which bounds every call with
a timeout and swallows failures. Delivery is best-effort: a lost
notification never rolls back or fails an order operation.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, Optional

from app.models.notification import NotificationType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notice:
    """A message waiting to be delivered."""
    user_id: str
    kind: NotificationType
    title: str
    message: str
    link: Optional[str] = None


class Notifier(ABC):
    """Fire-and-forget delivery to a user. Return values are never relied upon."""

    @abstractmethod
    async def notify(
        self,
        user_id: str,
        kind: NotificationType,
        title: str,
        message: str,
        link: Optional[str] = None,
    ) -> None:
        pass


class NullNotifier(Notifier):
    """Drops everything. Used by scripts that must not message customers."""

    async def notify(self, user_id, kind, title, message, link=None) -> None:
        logger.debug(f"Dropped {kind} notification for {user_id}")


async def dispatch_notices(notifier: Notifier, notices: Iterable[Notice], timeout: float) -> int:
    """
    Deliver notices one by one after commit.

    Each call is bounded by ``timeout`` seconds. Failures are logged and
    skipped. Returns the number delivered without error.
    """
    delivered = 0
    for notice in notices:
        try:
            await asyncio.wait_for(
                notifier.notify(
                    notice.user_id,
                    notice.kind,
                    notice.title,
                    notice.message,
                    notice.link,
                ),
                timeout=timeout,
            )
            delivered += 1
        except asyncio.TimeoutError:
            logger.error(f"Notification to {notice.user_id} timed out after {timeout}s ({notice.kind.value})")
        except Exception as e:
            logger.error(f"Failed to notify {notice.user_id} ({notice.kind.value}): {e}")
    return delivered
