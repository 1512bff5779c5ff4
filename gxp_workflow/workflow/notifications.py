"""
Notification events emitted after a transition commits.

Delivery (email, SMS, push) belongs to the deployment; the executor only
hands events to an injected sink and never lets a sink failure reach the
caller.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationEvent:
    """A committed workflow event, addressed to interested users."""

    case_type: str
    case_id: int
    case_number: str
    action: str
    actor_id: str
    old_status: Optional[str]
    new_status: Optional[str]
    timestamp: datetime
    title: str
    message: str
    category: str = "approval"
    recipient_ids: List[str] = field(default_factory=list)
    signature_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


class NotificationSink(ABC):
    """Receives notification events after commit."""

    @abstractmethod
    def notify(self, event: NotificationEvent) -> None:
        """Deliver or enqueue the event. May raise; callers contain it."""


class LoggingNotificationSink(NotificationSink):
    """Default sink that writes events to the log."""

    def notify(self, event: NotificationEvent) -> None:
        logger.info(
            "Notification %s: %s [%s %s -> %s] recipients=%s",
            event.category,
            event.title,
            event.case_number,
            event.old_status,
            event.new_status,
            ",".join(event.recipient_ids) or "-",
        )


class NullNotificationSink(NotificationSink):
    """Discards events; used when notifications are disabled."""

    def notify(self, event: NotificationEvent) -> None:
        return None


def dispatch(sink: NotificationSink, event: NotificationEvent) -> bool:
    """Hand ``event`` to ``sink``; log and swallow delivery failures.

    Returns True when the sink accepted the event.
    """
    try:
        sink.notify(event)
    except Exception:
        logger.exception(
            "Notification for %s %s (%s) failed; transition is unaffected",
            event.case_type,
            event.case_number,
            event.action,
        )
        return False
    return True
