"""
Shared fixtures.

Every test gets a fresh in-memory SQLite database (single shared connection),
a QC checklist that answers "incomplete" unless told otherwise, and a push
transport with no webhook so nothing leaves the process.
"""
from datetime import date, timedelta

import pytest

from labflow.db.session import Database
from labflow.models.actor import Actor, Role
from labflow.models.order import OrderCreate, OrderStatus, RestorationType, Urgency
from labflow.services.commands import OrderDesk
from labflow.services.notifications import PushTransport
from labflow.services.qc import StaticQCChecklist


@pytest.fixture
def database():
    db = Database.from_url("sqlite://", echo=False)
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def qc():
    return StaticQCChecklist(default=False)


@pytest.fixture
def transport():
    return PushTransport(webhook_url="")


@pytest.fixture
def desk(database, qc, transport):
    return OrderDesk(database, qc, transport)


@pytest.fixture
def doctor():
    return Actor("doc-1", Role.DOCTOR)


@pytest.fixture
def other_doctor():
    return Actor("doc-2", Role.DOCTOR)


@pytest.fixture
def admin():
    return Actor("admin-1", Role.ADMIN)


@pytest.fixture
def staff_a():
    return Actor("tech-a1", Role.LAB_STAFF)


@pytest.fixture
def staff_a2():
    return Actor("tech-a2", Role.LAB_STAFF)


@pytest.fixture
def staff_b():
    return Actor("tech-b1", Role.LAB_STAFF)


@pytest.fixture
def staff_c():
    return Actor("tech-c1", Role.LAB_STAFF)


@pytest.fixture
def labs(desk, admin, staff_a, staff_a2, staff_b, staff_c):
    """Three onboarded labs: lab-a (two technicians), lab-b and lab-c."""
    desk.upsert_lab_member(admin, "lab-a", staff_a.actor_id, True)
    desk.upsert_lab_member(admin, "lab-a", staff_a2.actor_id, True)
    desk.upsert_lab_member(admin, "lab-b", staff_b.actor_id, True)
    desk.upsert_lab_member(admin, "lab-c", staff_c.actor_id, True)
    return {"lab-a": [staff_a, staff_a2], "lab-b": [staff_b], "lab-c": [staff_c]}


def order_data(**overrides) -> OrderCreate:
    fields = {
        "patient_name": "Jane Roe",
        "restoration_type": RestorationType.ZIRCONIA,
        "urgency": Urgency.NORMAL,
        "teeth_number": "11,12",
        "expected_delivery_date": date.today() + timedelta(days=7),
    }
    fields.update(overrides)
    return OrderCreate(**fields)


@pytest.fixture
def order_payload():
    return order_data


@pytest.fixture
def make_order(desk, doctor):
    def _make(actor=None, **overrides):
        return desk.create_order(actor or doctor, order_data(**overrides))

    return _make


@pytest.fixture
def delivered_order(desk, qc, labs, make_order, staff_a, doctor):
    """A lab-a order walked to Delivered and confirmed by the doctor."""
    order = make_order(assigned_lab_id="lab-a")
    desk.update_status(staff_a, order.id, OrderStatus.IN_PROGRESS)
    desk.update_status(staff_a, order.id, OrderStatus.READY_FOR_QC)
    qc.set(order.id, True)
    desk.update_status(staff_a, order.id, OrderStatus.READY_FOR_DELIVERY)
    desk.update_status(staff_a, order.id, OrderStatus.DELIVERED)
    return desk.confirm_delivery(doctor, order.id)
