from dataclasses import asdict, dataclass
from typing import Iterable, List, Optional
import logging
import time

import requests
from sqlmodel import Session, col, select

from labflow import config
from labflow.errors import AuthorizationError, NotFoundError
from labflow.models.notification import NotificationRecord, NotificationType
from labflow.models.order import Order
from labflow.services.events import EventType, LifecycleEvent
from labflow.services.store import OrderStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PushMessage:
    notification_id: int
    recipient_id: str
    title: str
    body: str
    order_id: int
    url: str


class PushTransport:
    """Posts push messages to a webhook. Never raises; failures are logged."""

    def __init__(self, webhook_url: str = None, timeout: float = None, max_retries: int = 2):
        self.webhook = config.PUSH_WEBHOOK_URL if webhook_url is None else webhook_url
        self.timeout = timeout or config.PUSH_TIMEOUT_SECONDS
        self.max_retries = max_retries
        logger.debug("PushTransport initialized with webhook=%s max_retries=%s", self.webhook or "<disabled>", self.max_retries)

    @property
    def enabled(self) -> bool:
        return bool(self.webhook)

    def send(self, message: PushMessage) -> bool:
        if not self.enabled:
            return False
        headers = {
            "Content-Type": "application/json",
            # the receiver may see the same notification twice after a retry
            "Idempotency-Key": f"notification-{message.notification_id}",
        }
        payload = {
            "recipientId": message.recipient_id,
            "title": message.title,
            "body": message.body,
            "orderId": message.order_id,
            "url": message.url,
        }
        for attempt in range(1, self.max_retries + 1):
            try:
                resp = requests.post(self.webhook, json=payload, timeout=self.timeout, headers=headers)
                resp.raise_for_status()
                logger.debug("Pushed notification=%s to %s status=%s", message.notification_id, message.recipient_id, resp.status_code)
                return True
            except requests.RequestException as e:
                logger.warning("Attempt %s: failed to push notification=%s: %s", attempt, message.notification_id, e)
            if attempt < self.max_retries:
                time.sleep(0.5 * attempt)
        logger.error("Giving up on push notification=%s recipient=%s", message.notification_id, message.recipient_id)
        return False


class NotificationDispatcher:
    """Turns lifecycle events into notification rows and, after commit, pushes."""

    def __init__(self, store: OrderStore, transport: Optional[PushTransport] = None, app_url: str = None):
        self.store = store
        self.transport = transport or PushTransport()
        self.app_url = (app_url or config.APP_URL).rstrip("/")

    def recipients(self, session: Session, order: Order, actor_id: Optional[str] = None) -> List[str]:
        """Doctor plus the assigned lab's staff, deduplicated and sorted; ``actor_id`` is left out when given."""
        ids = {order.doctor_id}
        ids.update(self.store.lab_staff_ids(session, order.assigned_lab_id))
        if actor_id is not None:
            ids.discard(actor_id)
        return sorted(ids)

    def _route(self, session: Session, order: Order, event: LifecycleEvent):
        """Returns (recipients, type, title, message) or None when the event is silent."""
        ref = f"order #{order.id} ({order.patient_name})"
        t = event.type
        if t == EventType.ORDER_CREATED:
            if event.lab_id is None:
                return None
            return self.store.lab_staff_ids(session, event.lab_id), NotificationType.ASSIGNMENT, "New order assigned", f"You have been assigned {ref}"
        if t == EventType.SUBMITTED_TO_MARKETPLACE:
            return (
                self.store.all_lab_staff_ids(session),
                NotificationType.NEW_MARKETPLACE_ORDER,
                "New marketplace order",
                f"A {order.restoration_type.value} order is open for applications",
            )
        if t == EventType.STATUS_CHANGED:
            return (
                self.recipients(session, order),
                NotificationType.STATUS_CHANGE,
                "Order status updated",
                f"Status of {ref} changed from {event.old_status.value} to {event.new_status.value}",
            )
        if t == EventType.NOTE_ADDED:
            return self.recipients(session, order, event.actor_id), NotificationType.NEW_NOTE, "New note", f"New note on {ref}: {event.note}"
        if t == EventType.DELIVERY_CONFIRMED:
            return self.recipients(session, order), NotificationType.STATUS_CHANGE, "Delivery confirmed", f"Delivery of {ref} was confirmed"
        if t == EventType.APPLICATION_SUBMITTED:
            return [order.doctor_id], NotificationType.LAB_REQUEST, "New lab application", f"Lab {event.lab_id} applied for {ref}"
        if t == EventType.APPLICATION_ACCEPTED:
            return self.store.lab_staff_ids(session, event.lab_id), NotificationType.REQUEST_ACCEPTED, "Application accepted", f"Your lab was selected for {ref}"
        if t in (EventType.APPLICATION_REJECTED, EventType.APPLICATION_SUPERSEDED):
            return (
                self.store.lab_staff_ids(session, event.lab_id),
                NotificationType.REQUEST_REFUSED,
                "Application not selected",
                f"Your application for order #{order.id} was not selected",
            )
        if t == EventType.DISPUTE_RAISED:
            return self.recipients(session, order), NotificationType.INVOICE_UPDATE, "Invoice disputed", f"The invoice for {ref} is disputed: {event.note}"
        if t == EventType.DISPUTE_RESOLVED:
            return self.recipients(session, order), NotificationType.INVOICE_UPDATE, "Invoice dispute resolved", f"The dispute on the invoice for {ref} was resolved"
        return None

    def dispatch(self, session: Session, order: Order, event: LifecycleEvent) -> List[PushMessage]:
        routed = self._route(session, order, event)
        if routed is None:
            return []
        recipients, ntype, title, message = routed
        records = []
        for user_id in sorted(set(recipients)):
            record = NotificationRecord(user_id=user_id, order_id=order.id, type=ntype, title=title, message=message)
            session.add(record)
            records.append(record)
        session.flush()
        logger.debug("Event %s on order id=%s notified %s recipient(s)", event.type.value, order.id, len(records))
        url = f"{self.app_url}/orders/{order.id}"
        return [PushMessage(r.id, r.user_id, r.title, r.message, order.id, url) for r in records]

    def deliver(self, messages: Iterable[PushMessage]) -> int:
        """Push after commit. Returns how many messages the transport accepted."""
        if not self.transport.enabled:
            return 0
        sent = 0
        for message in messages:
            try:
                if self.transport.send(message):
                    sent += 1
            except Exception:
                # a broken transport must not undo a committed command
                logger.exception("Push transport failed for %s", asdict(message))
        return sent

    # inbox queries

    def inbox(self, session: Session, user_id: str, unread_only: bool = False) -> List[NotificationRecord]:
        stmt = select(NotificationRecord).where(NotificationRecord.user_id == user_id)
        if unread_only:
            stmt = stmt.where(NotificationRecord.read == False)  # noqa: E712
        return list(session.exec(stmt.order_by(col(NotificationRecord.id).desc())).all())

    def for_order(self, session: Session, order_id: int) -> List[NotificationRecord]:
        stmt = select(NotificationRecord).where(NotificationRecord.order_id == order_id).order_by(NotificationRecord.id)
        return list(session.exec(stmt).all())

    def mark_read(self, session: Session, user_id: str, notification_id: int) -> NotificationRecord:
        record = session.get(NotificationRecord, notification_id)
        if record is None:
            raise NotFoundError("NotificationNotFound", f"notification {notification_id} not found")
        if record.user_id != user_id:
            raise AuthorizationError("NotRecipient", f"notification {notification_id} belongs to another user")
        record.read = True
        session.add(record)
        return record
