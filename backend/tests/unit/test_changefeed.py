"""
Unit tests for the change feed and deduplicating consumers.
"""
import pytest

from labflow.errors import GuardViolation
from labflow.models.order import OrderStatus
from labflow.services.changefeed import ChangeFeed, ChangeRecord, DedupConsumer


class TestChangeFeed:
    def test_subscription_filters_by_table_and_predicate(self):
        feed = ChangeFeed()
        sub = feed.subscribe("order", lambda r: r.payload.get("status") == "InProgress")

        feed.publish(ChangeRecord("order", 1, 2, {"status": "InProgress"}))
        feed.publish(ChangeRecord("order", 2, 2, {"status": "Cancelled"}))
        feed.publish(ChangeRecord("invoice", 1, 2, {"status": "InProgress"}))

        assert [(r.table, r.entity_id) for r in sub.drain()] == [("order", 1)]

    def test_closed_subscription_ends_iteration(self):
        feed = ChangeFeed()
        sub = feed.subscribe("order")
        feed.publish(ChangeRecord("order", 1, 1))
        sub.close()
        feed.publish(ChangeRecord("order", 1, 2))
        assert list(sub) == [ChangeRecord("order", 1, 1)]

    def test_get_times_out(self):
        sub = ChangeFeed().subscribe("order")
        assert sub.get(timeout=0.01) is None

    def test_failing_predicate_does_not_break_publish(self):
        feed = ChangeFeed()
        feed.subscribe("order", lambda r: 1 / 0)
        healthy = feed.subscribe("order")
        assert feed.publish(ChangeRecord("order", 1, 1)) == 1
        assert len(healthy.drain()) == 1


class TestDedupConsumer:
    def test_redelivery_is_dropped(self):
        seen = []
        consumer = DedupConsumer(seen.append)
        record = ChangeRecord("order", 5, 3, {"status": "Delivered"})

        assert consumer(record) is True
        assert consumer(ChangeRecord("order", 5, 3, {"status": "Delivered"})) is False
        assert consumer(ChangeRecord("order", 5, 4)) is True
        assert [r.version for r in seen] == [3, 4]


class TestDeskPublishes:
    def test_committed_commands_reach_subscribers(self, desk, labs, make_order, staff_a):
        sub = desk.feed.subscribe("order")
        order = make_order(assigned_lab_id="lab-a")
        desk.update_status(staff_a, order.id, OrderStatus.IN_PROGRESS)

        records = sub.drain()
        assert [(r.entity_id, r.version) for r in records] == [(order.id, 1), (order.id, 2)]
        assert records[-1].payload["status"] == "InProgress"

    def test_failed_command_publishes_nothing(self, desk, labs, make_order, staff_a):
        order = make_order(assigned_lab_id="lab-a")
        sub = desk.feed.subscribe("order")
        with pytest.raises(GuardViolation):
            desk.update_status(staff_a, order.id, OrderStatus.DELIVERED)
        assert sub.drain() == []

    def test_invoice_commands_publish_invoice_changes(self, desk, labs, make_order, doctor, admin):
        order = make_order(assigned_lab_id="lab-a")
        invoice, _ = desk.invoice_for_order(doctor, order.id)
        sub = desk.feed.subscribe("invoice")

        locked = desk.lock_invoice(admin, invoice.id)

        (record,) = sub.drain()
        assert (record.entity_id, record.version) == (invoice.id, locked.version)
        assert record.payload["status"] == "Locked"

    def test_close_ends_subscriptions(self, desk):
        sub = desk.feed.subscribe("notification")
        desk.feed.close()
        assert sub.closed
