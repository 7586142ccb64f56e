from typing import Callable, Dict, Iterable, Optional
from sqlalchemy.orm import Session
from checkout.domain.enums import NotificationChannel
from checkout.domain.models import Notification
from shared.core import get_logger

logger = get_logger(__name__)

def _humanize(value: str) -> str:
    return value.replace("_", " ").lower()

TEMPLATES: Dict[str, Callable[..., Dict[str, str]]] = {
    "new_order": lambda order_number, payment_type: {
        "title": "New Order Received",
        "message": f"You have received a new order #{order_number}. Payment type: {_humanize(payment_type)}.",
    },
    "payment_confirmed": lambda order_number: {
        "title": "Payment Approved",
        "message": f"Your payment for order #{order_number} has been approved. Your order will be processed shortly.",
    },
    "payment_received": lambda order_number: {
        "title": "Payment Received",
        "message": f"Payment for order #{order_number} has been confirmed. Please review and approve the order.",
    },
    "payment_failed": lambda order_number, reason=None: {
        "title": "Payment Rejected",
        "message": f"Your payment for order #{order_number} has been rejected. "
                   + (f"Reason: {reason}" if reason else "Please contact support for assistance."),
    },
    "order_approved": lambda order_number: {
        "title": "Order Confirmed",
        "message": f"Your order #{order_number} has been confirmed and is being processed.",
    },
    "order_status": lambda order_number, status, status_message=None: {
        "title": f"Order {status.replace('_', ' ').title()}",
        "message": status_message or f"Your order #{order_number} is now {_humanize(status)}.",
    },
    "order_rejected": lambda order_number, reason: {
        "title": "Order Rejected",
        "message": f"Your order #{order_number} has been rejected. Reason: {reason}",
    },
}

def render(template: str, **params) -> Dict[str, str]:
    return TEMPLATES[template](**params)

class NotificationDispatcher:
    """Persists in-app notifications and hands them to the channel senders.

    Channel delivery is log-only here; email and SMS providers plug in through
    ``senders``. Callers treat every dispatch as best-effort.
    """

    def __init__(self, db: Session, senders: Optional[Dict[NotificationChannel, Callable[[Notification], None]]] = None):
        self.db = db
        self.senders = senders or {}

    def dispatch(
        self,
        receiver_id: str,
        channel: NotificationChannel,
        template: str,
        order_id: Optional[int] = None,
        sender_id: Optional[str] = None,
        **params,
    ) -> Notification:
        content = render(template, **params)
        notification = Notification(
            receiver_id=receiver_id,
            sender_id=sender_id,
            order_id=order_id,
            type=NotificationChannel(channel).value,
            title=content["title"],
            message=content["message"],
        )
        self.db.add(notification)
        self.db.commit()
        sender = self.senders.get(NotificationChannel(channel))
        if sender:
            sender(notification)
        else:
            logger.info(
                f"Sending {notification.type}: {notification.title}",
                extra={'extra_fields': {'receiver_id': receiver_id, 'order_id': order_id, 'template': template}},
            )
        return notification

    def notify_many(
        self,
        receiver_ids: Iterable[str],
        channels: Iterable[NotificationChannel],
        template: str,
        order_id: Optional[int] = None,
        sender_id: Optional[str] = None,
        **params,
    ) -> int:
        """Best-effort fan-out; returns how many notifications were delivered."""
        sent = 0
        channels = list(channels)
        for receiver_id in receiver_ids:
            for channel in channels:
                try:
                    self.dispatch(receiver_id, channel, template, order_id=order_id, sender_id=sender_id, **params)
                    sent += 1
                except Exception:
                    self.db.rollback()
                    logger.error(
                        "Failed to send notification",
                        exc_info=True,
                        extra={'extra_fields': {'receiver_id': receiver_id, 'channel': str(channel), 'template': template}},
                    )
        return sent
