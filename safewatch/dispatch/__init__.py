"""
Notification dispatch for SafeWatch.
"""

from .dispatcher import NotificationDispatcher, attempt_id_for

__all__ = ["NotificationDispatcher", "attempt_id_for"]
