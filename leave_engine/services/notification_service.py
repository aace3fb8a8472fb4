"""
Status-change notifications.

Delivery is owned by external systems; they register a callback here. A
failing callback is logged and never undoes or fails the transition.
"""
import logging
from typing import Callable, List, Optional

from leave_engine.models.leave import LeaveRequest, LeaveStatus

logger = logging.getLogger(__name__)

# (request, previous status or None on submission, new status)
Notifier = Callable[[LeaveRequest, Optional[LeaveStatus], LeaveStatus], None]

_notifiers: List[Notifier] = []


def register_notifier(notifier: Notifier) -> Notifier:
    _notifiers.append(notifier)
    return notifier


def unregister_notifier(notifier: Notifier) -> None:
    if notifier in _notifiers:
        _notifiers.remove(notifier)


def clear_notifiers() -> None:
    _notifiers.clear()


def notify_status_change(leave: LeaveRequest, old_status: Optional[LeaveStatus], new_status: LeaveStatus) -> None:
    logger.info(
        "Leave request %s for employee %s: %s -> %s",
        leave.id, leave.employee_id, old_status.value if old_status else "draft", new_status.value,
    )
    for notifier in list(_notifiers):
        try:
            notifier(leave, old_status, new_status)
        except Exception:
            logger.warning(
                "Notifier %r failed for leave request %s", notifier, leave.id, exc_info=True,
            )
