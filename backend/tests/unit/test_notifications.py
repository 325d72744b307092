"""
Unit tests for notification fan-out and the push transport.
"""
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
import requests

from labflow.errors import AuthorizationError
from labflow.models.notification import NotificationType
from labflow.models.order import OrderStatus
from labflow.services.commands import OrderDesk
from labflow.services.notifications import PushMessage, PushTransport


def inbox_types(desk, actor):
    return [n.type for n in desk.notifications_for(actor)]


class TestRecipients:
    def test_assignment_goes_to_lab_staff(self, desk, labs, make_order, staff_a, staff_a2, staff_b):
        make_order(assigned_lab_id="lab-a")
        assert inbox_types(desk, staff_a) == [NotificationType.ASSIGNMENT]
        assert inbox_types(desk, staff_a2) == [NotificationType.ASSIGNMENT]
        assert inbox_types(desk, staff_b) == []

    def test_status_change_includes_actor(self, desk, labs, make_order, doctor, staff_a, staff_a2):
        order = make_order(assigned_lab_id="lab-a")
        desk.update_status(staff_a, order.id, OrderStatus.IN_PROGRESS)

        for actor in (doctor, staff_a, staff_a2):
            assert NotificationType.STATUS_CHANGE in inbox_types(desk, actor)

    def test_note_excludes_author(self, desk, labs, make_order, doctor, staff_a, staff_a2):
        order = make_order(assigned_lab_id="lab-a")
        desk.add_note(staff_a, order.id, "bite registration missing")

        assert NotificationType.NEW_NOTE in inbox_types(desk, doctor)
        assert NotificationType.NEW_NOTE in inbox_types(desk, staff_a2)
        assert NotificationType.NEW_NOTE not in inbox_types(desk, staff_a)

    def test_recipients_are_deduplicated_and_sorted(self, desk, labs, make_order, doctor):
        order = make_order(assigned_lab_id="lab-a")
        with desk.db.transaction() as session:
            stored = desk.store.get(session, order.id)
            assert desk.notifications.recipients(session, stored) == ["doc-1", "tech-a1", "tech-a2"]
            assert desk.notifications.recipients(session, stored, "tech-a1") == ["doc-1", "tech-a2"]

    def test_marketplace_flow_notifications(self, desk, labs, make_order, doctor, staff_a, staff_b, staff_c):
        order = make_order(auto_assign_pending=True)
        for actor in (staff_a, staff_b, staff_c):
            assert inbox_types(desk, actor) == [NotificationType.NEW_MARKETPLACE_ORDER]

        app_a = desk.apply_to_order(staff_a, order.id, Decimal("100"))
        desk.apply_to_order(staff_b, order.id)
        app_c = desk.apply_to_order(staff_c, order.id)
        assert inbox_types(desk, doctor).count(NotificationType.LAB_REQUEST) == 3

        desk.reject_application(doctor, app_c.id)
        desk.accept_application(doctor, app_a.id)
        assert inbox_types(desk, staff_a)[0] == NotificationType.REQUEST_ACCEPTED
        assert inbox_types(desk, staff_b)[0] == NotificationType.REQUEST_REFUSED
        assert inbox_types(desk, staff_c)[0] == NotificationType.REQUEST_REFUSED


class TestInbox:
    def test_mark_read(self, desk, labs, make_order, staff_a):
        make_order(assigned_lab_id="lab-a")
        note = desk.notifications_for(staff_a)[0]
        assert desk.mark_notification_read(staff_a, note.id).read is True
        assert desk.notifications_for(staff_a, unread_only=True) == []

    def test_cannot_mark_someone_elses(self, desk, labs, make_order, staff_a, staff_b):
        make_order(assigned_lab_id="lab-a")
        note = desk.notifications_for(staff_a)[0]
        with pytest.raises(AuthorizationError):
            desk.mark_notification_read(staff_b, note.id)


class TestPushDelivery:
    def test_messages_pushed_after_commit(self, database, qc, labs, doctor, order_payload):
        transport = MagicMock(spec=PushTransport)
        transport.enabled = True
        transport.send.return_value = True
        desk = OrderDesk(database, qc, transport)

        order = desk.create_order(doctor, order_payload(assigned_lab_id="lab-a"))
        sent = [c.args[0] for c in transport.send.call_args_list]
        assert sorted(m.recipient_id for m in sent) == ["tech-a1", "tech-a2"]
        assert all(m.url.endswith(f"/orders/{order.id}") for m in sent)

    def test_transport_failure_keeps_records(self, database, qc, labs, doctor, staff_a, order_payload):
        """A dead webhook is logged; the command and its notification rows stand."""
        transport = PushTransport(webhook_url="http://push.invalid/hook", max_retries=2)
        desk = OrderDesk(database, qc, transport)

        with patch("labflow.services.notifications.requests.post", side_effect=requests.ConnectionError("down")) as post, patch(
            "labflow.services.notifications.time.sleep"
        ):
            order = desk.create_order(doctor, order_payload(assigned_lab_id="lab-a"))

        assert post.call_count == 4  # two recipients, two attempts each
        assert order.id is not None
        assert inbox_types(desk, staff_a) == [NotificationType.ASSIGNMENT]

    def test_raising_transport_does_not_escape(self, database, qc, labs, doctor, order_payload):
        transport = MagicMock(spec=PushTransport)
        transport.enabled = True
        transport.send.side_effect = RuntimeError("boom")
        desk = OrderDesk(database, qc, transport)
        assert desk.create_order(doctor, order_payload(assigned_lab_id="lab-a")).id is not None

    def test_push_payload_and_idempotency_key(self):
        transport = PushTransport(webhook_url="http://push.local/hook")
        message = PushMessage(42, "doc-1", "Order status updated", "moved", 7, "http://app/orders/7")
        with patch("labflow.services.notifications.requests.post") as post:
            post.return_value.raise_for_status.return_value = None
            assert transport.send(message) is True

        _, kwargs = post.call_args
        assert kwargs["headers"]["Idempotency-Key"] == "notification-42"
        assert kwargs["json"] == {"recipientId": "doc-1", "title": "Order status updated", "body": "moved", "orderId": 7, "url": "http://app/orders/7"}

    def test_disabled_transport_sends_nothing(self):
        with patch("labflow.services.notifications.requests.post") as post:
            assert PushTransport(webhook_url="").send(PushMessage(1, "u", "t", "b", 1, "x")) is False
        post.assert_not_called()
