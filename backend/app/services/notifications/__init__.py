"""
Notification delivery: the Notifier contract, message templates and the
in-app (database + Redis) implementation.
"""

from app.services.notifications.base import Notice, Notifier, NullNotifier, dispatch_notices

__all__ = ["Notice", "Notifier", "NullNotifier", "dispatch_notices"]
