from fastapi import Depends
from sqlalchemy.orm import Session
from checkout.application.order_service import OrderService
from checkout.application.payment_service import PaymentService
from checkout.application.timeline import OrderTimelineLogger
from checkout.infrastructure.db import get_db
from checkout.infrastructure.lipia import LipiaClient, get_lipia_client
from checkout.infrastructure.notifications import NotificationDispatcher

def get_notifier(db: Session = Depends(get_db)) -> NotificationDispatcher:
    return NotificationDispatcher(db)

def get_timeline(db: Session = Depends(get_db)) -> OrderTimelineLogger:
    return OrderTimelineLogger(db)

def get_gateway() -> LipiaClient:
    return get_lipia_client()

def get_order_service(
    db: Session = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_notifier),
    timeline: OrderTimelineLogger = Depends(get_timeline),
) -> OrderService:
    return OrderService(db, notifier=notifier, timeline=timeline)

def get_payment_service(
    db: Session = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_notifier),
    timeline: OrderTimelineLogger = Depends(get_timeline),
) -> PaymentService:
    return PaymentService(db, notifier=notifier, timeline=timeline)
