import json
from typing import Any, Dict, List, Optional
from sqlalchemy import select
from sqlalchemy.orm import Session
from checkout.domain.enums import TimelineActor, TimelineEventType
from checkout.domain.models import OrderTimeline
from shared.core import get_logger

logger = get_logger(__name__)

def parse_json_blob(value: Optional[str]):
    """Decode a stored JSON column; text that is not JSON is returned as-is."""
    if not value:
        return None
    try:
        return json.loads(value)
    except ValueError:
        return value

class OrderTimelineLogger:
    """Append-only audit trail of order transitions.

    Recording is best-effort: a failure to persist an event is logged and
    swallowed so it never breaks the order or payment flow it describes.
    """

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        order_id: int,
        event_type: TimelineEventType,
        actor: TimelineActor,
        description: str,
        actor_id: Optional[str] = None,
        actor_name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        old_status: Optional[str] = None,
        new_status: Optional[str] = None,
    ) -> Optional[OrderTimeline]:
        try:
            event = OrderTimeline(
                order_id=order_id,
                action=TimelineEventType(event_type).value,
                actor_role=TimelineActor(actor).value,
                actor_id=actor_id,
                actor_name=actor_name,
                old_status=old_status,
                new_status=new_status,
                description=description,
                metadata_json=json.dumps(metadata, default=str) if metadata else None,
            )
            self.db.add(event)
            self.db.commit()
            return event
        except Exception:
            self.db.rollback()
            logger.error(
                "Failed to create order timeline event",
                exc_info=True,
                extra={'extra_fields': {'order_id': order_id, 'event_type': str(event_type)}},
            )
            return None

    def get_timeline(self, order_id: int) -> List[OrderTimeline]:
        """Events for an order, newest first."""
        stmt = (
            select(OrderTimeline)
            .where(OrderTimeline.order_id == order_id)
            .order_by(OrderTimeline.created_at.desc(), OrderTimeline.id.desc())
        )
        return list(self.db.scalars(stmt))

    def order_created(self, order_id: int, customer_id: str, customer_name: Optional[str], payment_type: str):
        return self.record(
            order_id,
            TimelineEventType.ORDER_CREATED,
            TimelineActor.CUSTOMER,
            f"Order created with {payment_type} payment",
            actor_id=customer_id,
            actor_name=customer_name or "Customer",
            metadata={"paymentType": payment_type},
        )

    def payment_submitted(self, order_id: int, customer_id: str, customer_name: Optional[str], method: str, amount):
        return self.record(
            order_id,
            TimelineEventType.PAYMENT_SUBMITTED,
            TimelineActor.CUSTOMER,
            f"Payment submitted via {method} (KES {amount})",
            actor_id=customer_id,
            actor_name=customer_name or "Customer",
            metadata={"method": method, "amount": str(amount)},
        )

    def payment_confirmed(
        self,
        order_id: int,
        actor_id: Optional[str] = None,
        actor_name: Optional[str] = None,
        automatic: bool = False,
        old_status: Optional[str] = None,
    ):
        return self.record(
            order_id,
            TimelineEventType.PAYMENT_CONFIRMED,
            TimelineActor.SYSTEM if automatic else TimelineActor.ADMIN,
            "Payment automatically verified and confirmed" if automatic
            else "Payment manually verified and confirmed",
            actor_id=None if automatic else actor_id,
            actor_name="System" if automatic else (actor_name or "Admin"),
            metadata={"automatic": automatic},
            old_status=old_status,
            new_status="PAID",
        )

    def payment_failed(self, order_id: int, status: str, reason: Optional[str], result_code: Optional[int] = None):
        return self.record(
            order_id,
            TimelineEventType.PAYMENT_FAILED,
            TimelineActor.SYSTEM,
            f"Payment {status.lower()}: {reason or 'no reason given'}",
            actor_name="System",
            metadata={"status": status, "reason": reason, "resultCode": result_code},
        )

    def order_approved(self, order_id: int, seller_id: str, seller_name: Optional[str], old_status: Optional[str] = None):
        return self.record(
            order_id,
            TimelineEventType.ORDER_APPROVED,
            TimelineActor.SELLER,
            "Order approved by seller and processing started",
            actor_id=seller_id,
            actor_name=seller_name or "Seller",
            old_status=old_status,
            new_status="APPROVED",
        )

    def status_updated(self, order_id: int, seller_id: str, seller_name: Optional[str], old_status: str, new_status: str):
        return self.record(
            order_id,
            TimelineEventType.STATUS_UPDATED,
            TimelineActor.SELLER,
            f"Order status updated from {old_status} to {new_status}",
            actor_id=seller_id,
            actor_name=seller_name or "Seller",
            metadata={"oldStatus": old_status, "newStatus": new_status},
            old_status=old_status,
            new_status=new_status,
        )

    def order_rejected(self, order_id: int, actor_id: str, actor_name: Optional[str], reason: str, old_status: str):
        return self.record(
            order_id,
            TimelineEventType.ORDER_REJECTED,
            TimelineActor.ADMIN,
            f"Order rejected: {reason}",
            actor_id=actor_id,
            actor_name=actor_name or "Admin",
            metadata={"reason": reason},
            old_status=old_status,
            new_status="REJECTED",
        )
