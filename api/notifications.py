import logging
from dataclasses import asdict

import push
from broker import Publisher, Queue, QueueUnavailableError
from database import create_notification
from models import Notification, NotificationEvent, NotificationType

logger = logging.getLogger(__name__)

GENERIC_TITLE = "Notification"
GENERIC_MESSAGE = "You have a new notification"


def _render(event: NotificationEvent) -> tuple[str, str, str]:
    """Return (type, title, message) for an event."""
    p = event.payload
    loop_title = p.get("loopTitle", "your loop")
    try:
        kind = NotificationType(event.event_type)
    except ValueError:
        return NotificationType.SYSTEM.value, GENERIC_TITLE, GENERIC_MESSAGE

    if kind == NotificationType.NEW_COMMENT:
        title = "New Comment"
        message = f'{p.get("commenterUsername", "Someone")} commented on "{loop_title}"'
    elif kind == NotificationType.NEW_RATING:
        title = "New Rating"
        message = f'Someone rated "{loop_title}" with {p.get("rating", "?")} stars'
    elif kind == NotificationType.NEW_DOWNLOAD:
        title = "Loop Downloaded"
        message = f'{p.get("downloaderUsername", "Someone")} downloaded "{loop_title}"'
    elif kind == NotificationType.PROCESSING_COMPLETE:
        title = "Loop Ready"
        message = f'Your loop "{loop_title}" has been processed and is now available'
    else:
        title = p.get("title") or "System Notice"
        message = p.get("message") or GENERIC_MESSAGE
    return kind.value, title, message


def notify(
    publisher: Publisher,
    event_type: NotificationType,
    recipient_id: str,
    actor_id: str | None,
    payload: dict,
) -> bool:
    """Enqueue a notification for ``recipient_id``. Fire and forget.

    Nothing is sent when the actor is the recipient. A broker outage is logged
    and swallowed; the action that triggered the notification still stands.
    """
    if actor_id is not None and actor_id == recipient_id:
        return False
    event = NotificationEvent(event_type=event_type.value, recipient_id=recipient_id, payload=payload)
    try:
        publisher.publish(Queue.NOTIFICATIONS, event.to_message())
    except QueueUnavailableError as e:
        logger.warning(f"Dropping {event_type.value} notification for {recipient_id}: {e}")
        return False
    return True


def handle_event(message: dict) -> Notification:
    """Persist a queued event as a notification and push it to live clients."""
    event = NotificationEvent.from_message(message)
    kind, title, text = _render(event)
    if kind != event.event_type:
        logger.warning(f"Unknown notification type {event.event_type!r}, storing as {kind}")

    notification = create_notification(event.recipient_id, kind, title, text, event.payload)
    logger.info(f"Notification {notification.id} ({kind}) created for user {event.recipient_id}")

    push.send_to_user(event.recipient_id, "notification", asdict(notification))
    return notification
