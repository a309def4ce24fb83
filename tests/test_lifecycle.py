"""Tests for lead completion and the stage-2 (contract) status rules."""
from collections import defaultdict
from datetime import datetime
from decimal import Decimal

import pytest
from werkzeug.security import generate_password_hash

from app.crm import auth, create_app
from app.crm.db import session_scope
from app.crm.errors import OperationFailed, ValidationFailed
from app.crm.models import AuditEvent, Base, User
from app.crm.modules.customers.lifecycle import complete_lead, set_stage2_status
from app.crm.modules.customers.models import Customer
from app.crm.modules.customers.service import CustomerFilter, create_customer, list_customers, set_lead_status, update_customer
from app.crm.rbac import Principal

ALICE = Principal(id=1, username="alice", role="employee")
BOB = Principal(id=2, username="bob", role="employee")

CONTRACT = {"real_name": "Li Na", "phone": "13800000000", "target_company": "Acme", "hourly_rate": "150"}


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setattr(auth, "_login_attempts", defaultdict(list))

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        s.add_all(
            [
                User(id=1, username="alice", password_hash=generate_password_hash("pw"), role="employee", is_active=True),
                User(id=2, username="bob", password_hash=generate_password_hash("pw"), role="employee", is_active=True),
            ]
        )
    return app


def _new_lead(app, principal=ALICE, nickname="lead") -> int:
    with session_scope(app) as s:
        c = create_customer(
            s,
            principal,
            {"nickname": nickname, "contact": "wx", "source": "offline", "intention": "high", "status": "communicating"},
        )
        return c.id


def _contracted(app, principal=ALICE) -> int:
    cid = _new_lead(app, principal)
    with session_scope(app) as s:
        complete_lead(s, principal, cid, CONTRACT)
    return cid


def test_complete_lead_moves_customer_to_contracts(app):
    cid = _new_lead(app)
    with session_scope(app) as s:
        complete_lead(s, ALICE, cid, CONTRACT)

    with session_scope(app) as s:
        c = s.get(Customer, cid)
        assert c.status == "closed"
        assert c.stage2_status == "awaiting_interview"
        assert c.wallet_balance == Decimal("0")
        assert c.hourly_rate == Decimal("150.00")
        assert c.real_name == "Li Na"
        assert c.interview_notice_time is None
        assert c.last_payment_time is None
        assert s.query(AuditEvent).filter(AuditEvent.action == "customer.complete").count() == 1

        assert list_customers(s, ALICE, CustomerFilter(stage="lead")).total == 0
        assert list_customers(s, ALICE, CustomerFilter(stage="contract")).total == 1


@pytest.mark.parametrize("missing", ["real_name", "phone", "target_company", "hourly_rate"])
def test_complete_lead_requires_every_contract_field(app, missing):
    cid = _new_lead(app)
    with session_scope(app) as s:
        with pytest.raises(ValidationFailed) as ei:
            complete_lead(s, ALICE, cid, {**CONTRACT, missing: ""})
        assert missing in ei.value.fields()

    with session_scope(app) as s:
        c = s.get(Customer, cid)
        assert c.status == "communicating"
        assert c.stage2_status is None


def test_complete_lead_rejects_negative_rate(app):
    cid = _new_lead(app)
    with session_scope(app) as s:
        with pytest.raises(ValidationFailed):
            complete_lead(s, ALICE, cid, {**CONTRACT, "hourly_rate": "-1"})


@pytest.mark.parametrize("rate", ["1e30", "12345678901", "Infinity"])
def test_complete_lead_rejects_unstorable_rate(app, rate):
    cid = _new_lead(app)
    with session_scope(app) as s:
        with pytest.raises(ValidationFailed) as ei:
            complete_lead(s, ALICE, cid, {**CONTRACT, "hourly_rate": rate})
        assert ei.value.fields() == {"hourly_rate"}

    with session_scope(app) as s:
        c = s.get(Customer, cid)
        assert c.status == "communicating"
        assert c.hourly_rate is None


def test_complete_lead_out_of_scope(app):
    cid = _new_lead(app, BOB)
    with session_scope(app) as s:
        with pytest.raises(OperationFailed):
            complete_lead(s, ALICE, cid, CONTRACT)


def test_complete_lead_twice_is_refused(app):
    cid = _contracted(app)
    with session_scope(app) as s:
        with pytest.raises(ValidationFailed):
            complete_lead(s, ALICE, cid, CONTRACT)


def test_contracted_customer_cannot_return_to_lead_stage(app):
    cid = _contracted(app)
    with session_scope(app) as s:
        with pytest.raises(ValidationFailed):
            set_lead_status(s, ALICE, cid, "communicating")
        # Editing lead fields keeps the contract status.
        update_customer(
            s,
            ALICE,
            cid,
            {"nickname": "renamed", "contact": "wx", "source": "offline", "intention": "low", "status": "communicating"},
        )
    with session_scope(app) as s:
        c = s.get(Customer, cid)
        assert c.status == "closed"
        assert c.nickname == "renamed"


def test_interview_notified_requires_notice_time(app):
    cid = _contracted(app)
    with session_scope(app) as s:
        with pytest.raises(ValidationFailed) as ei:
            set_stage2_status(s, ALICE, cid, "interview_notified")
        assert ei.value.fields() == {"interview_notice_time"}
        with pytest.raises(ValidationFailed):
            set_stage2_status(s, ALICE, cid, "interview_notified", "next tuesday")

    with session_scope(app) as s:
        assert s.get(Customer, cid).stage2_status == "awaiting_interview"


def test_notice_time_kept_only_while_notified(app):
    cid = _contracted(app)
    with session_scope(app) as s:
        set_stage2_status(s, ALICE, cid, "interview_notified", "2026-03-01T14:30")
    with session_scope(app) as s:
        c = s.get(Customer, cid)
        assert c.stage2_status == "interview_notified"
        assert c.interview_notice_time == datetime(2026, 3, 1, 14, 30)

    with session_scope(app) as s:
        # A submitted time is discarded for any other stage.
        set_stage2_status(s, ALICE, cid, "interview_passed", "2026-03-02T10:00")
    with session_scope(app) as s:
        c = s.get(Customer, cid)
        assert c.stage2_status == "interview_passed"
        assert c.interview_notice_time is None


def test_stage2_transitions_are_free(app):
    cid = _contracted(app)
    for value in ("completed", "awaiting_interview", "training", "interview_failed"):
        with session_scope(app) as s:
            set_stage2_status(s, ALICE, cid, value)
        with session_scope(app) as s:
            assert s.get(Customer, cid).stage2_status == value


def test_stage2_rejects_unknown_value_and_leads(app):
    cid = _contracted(app)
    lead_id = _new_lead(app, nickname="still-a-lead")
    with session_scope(app) as s:
        with pytest.raises(ValidationFailed):
            set_stage2_status(s, ALICE, cid, "hired")
        with pytest.raises(ValidationFailed):
            set_stage2_status(s, ALICE, lead_id, "training")


def test_stage2_out_of_scope(app):
    cid = _contracted(app, BOB)
    with session_scope(app) as s:
        with pytest.raises(OperationFailed):
            set_stage2_status(s, ALICE, cid, "training")


def test_complete_via_form(app):
    cid = _new_lead(app)
    client = app.test_client()
    client.post("/auth/login", data={"username": "alice", "password": "pw"})
    client.get("/dashboard")
    with client.session_transaction() as sess:
        token = sess["csrf_token"]

    r = client.post(f"/customers/{cid}/complete", data={**CONTRACT, "csrf_token": token}, follow_redirects=True)
    assert r.status_code == 200
    assert b"Li Na" in r.data

    r = client.post(
        f"/customers/{cid}/stage2",
        data={"stage2_status": "interview_notified", "interview_notice_time": "2026-03-01T09:00", "csrf_token": token},
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.get(Customer, cid).interview_notice_time == datetime(2026, 3, 1, 9, 0)
