"""Tests for the customer repository: scoping, CRUD, filters, sorting, pagination."""
from collections import defaultdict
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash

from app.crm import auth, create_app
from app.crm.db import session_scope
from app.crm.errors import OperationFailed, ValidationFailed
from app.crm.models import AuditEvent, Base, User
from app.crm.modules.customers.models import Customer
from app.crm.modules.customers.service import (
    CustomerFilter,
    CustomerSort,
    create_customer,
    dashboard_summary,
    delete_customer,
    get_customer,
    list_customers,
    owner_options,
    set_lead_status,
    update_customer,
)
from app.crm.rbac import Principal

ADMIN = Principal(id=1, username="admin", role="admin")
ALICE = Principal(id=2, username="alice", role="employee")
BOB = Principal(id=3, username="bob", role="employee")


def _lead(nickname: str, **overrides) -> dict:
    payload = {
        "nickname": nickname,
        "contact": f"wx-{nickname}",
        "source": "offline",
        "intention": "high",
        "status": "communicating",
        "age": "30",
        "gender": "female",
    }
    payload.update(overrides)
    return payload


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setattr(auth, "_login_attempts", defaultdict(list))

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        s.add_all(
            [
                User(id=1, username="admin", password_hash=generate_password_hash("pw"), role="admin", is_active=True),
                User(id=2, username="alice", password_hash=generate_password_hash("pw"), role="employee", is_active=True),
                User(id=3, username="bob", password_hash=generate_password_hash("pw"), role="employee", is_active=True),
            ]
        )
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _login(client, username: str) -> str:
    client.post("/auth/login", data={"username": username, "password": "pw"})
    client.get("/dashboard")
    with client.session_transaction() as sess:
        return sess["csrf_token"]


# ---------- service ----------

def test_create_forces_owner_to_principal(app):
    with session_scope(app) as s:
        c = create_customer(s, ALICE, {**_lead("n1"), "owner": "bob"})
        cid = c.id
    with session_scope(app) as s:
        c = s.get(Customer, cid)
        assert c.owner == "alice"
        assert c.status == "communicating"
        assert c.wallet_balance == 0
        assert c.stage2_status is None


def test_create_validates_required_fields_and_enums(app):
    with session_scope(app) as s:
        with pytest.raises(ValidationFailed) as ei:
            create_customer(s, ALICE, {"nickname": "", "contact": "", "source": "tv", "intention": "maybe", "status": "closed"})
    assert {"nickname", "contact", "source", "intention", "status"} <= ei.value.fields()


def test_create_rejects_out_of_range_age(app):
    with session_scope(app) as s:
        with pytest.raises(ValidationFailed) as ei:
            create_customer(s, ALICE, _lead("n1", age="121"))
        assert ei.value.fields() == {"age"}
        with pytest.raises(ValidationFailed):
            create_customer(s, ALICE, _lead("n2", age="abc"))
        # Age is optional.
        c = create_customer(s, ALICE, _lead("n3", age=""))
        assert c.age is None


def test_employee_sees_only_own_rows(app):
    with session_scope(app) as s:
        create_customer(s, ALICE, _lead("a1"))
        create_customer(s, ALICE, _lead("a2"))
        b = create_customer(s, BOB, _lead("b1"))
        b_id = b.id

    with session_scope(app) as s:
        assert list_customers(s, ALICE).total == 2
        assert list_customers(s, BOB).total == 1
        assert list_customers(s, ADMIN).total == 3
        # Owner filter is ignored for employees.
        assert list_customers(s, ALICE, CustomerFilter(owner="bob")).total == 2
        assert list_customers(s, ADMIN, CustomerFilter(owner="bob")).total == 1

        with pytest.raises(OperationFailed):
            get_customer(s, ALICE, b_id)
        assert get_customer(s, ADMIN, b_id).nickname == "b1"


def test_out_of_scope_update_and_delete_change_nothing(app):
    with session_scope(app) as s:
        b_id = create_customer(s, BOB, _lead("b1")).id

    with session_scope(app) as s:
        with pytest.raises(OperationFailed):
            update_customer(s, ALICE, b_id, _lead("hijacked"))
        with pytest.raises(OperationFailed):
            delete_customer(s, ALICE, b_id)
        with pytest.raises(OperationFailed):
            set_lead_status(s, ALICE, b_id, "rejected")

    with session_scope(app) as s:
        c = s.get(Customer, b_id)
        assert c.nickname == "b1"
        assert c.status == "communicating"


def test_update_records_before_after_diff(app):
    with session_scope(app) as s:
        cid = create_customer(s, ALICE, _lead("n1")).id
    with session_scope(app) as s:
        update_customer(s, ALICE, cid, _lead("n1-renamed", intention="low", contact="wx-n1"))
    with session_scope(app) as s:
        c = s.get(Customer, cid)
        assert c.nickname == "n1-renamed"
        assert c.intention == "low"
        ev = s.query(AuditEvent).filter(AuditEvent.action == "customer.update").one()
        assert '"fields_changed": ["nickname", "intention"]' in ev.metadata_json


def test_set_lead_status_only_accepts_lead_statuses(app):
    with session_scope(app) as s:
        cid = create_customer(s, ALICE, _lead("n1")).id
    with session_scope(app) as s:
        set_lead_status(s, ALICE, cid, "rejected")
        with pytest.raises(ValidationFailed):
            set_lead_status(s, ALICE, cid, "closed")
    with session_scope(app) as s:
        assert s.get(Customer, cid).status == "rejected"


def test_delete_removes_row(app):
    with session_scope(app) as s:
        cid = create_customer(s, ALICE, _lead("n1")).id
    with session_scope(app) as s:
        delete_customer(s, ALICE, cid)
    with session_scope(app) as s:
        assert s.get(Customer, cid) is None
        assert s.query(AuditEvent).filter(AuditEvent.action == "customer.delete").count() == 1


def test_filters_combine(app):
    with session_scope(app) as s:
        create_customer(s, ALICE, _lead("Zhang Wei", intention="high", source="douyin", age="25"))
        create_customer(s, ALICE, _lead("zhang li", intention="low", source="douyin", age="40"))
        create_customer(s, ALICE, _lead("Wang", intention="high", source="offline", age="35", status="rejected"))

    with session_scope(app) as s:
        assert list_customers(s, ALICE, CustomerFilter(q="ZHANG")).total == 2
        assert list_customers(s, ALICE, CustomerFilter(q="zhang", intention="high")).total == 1
        assert list_customers(s, ALICE, CustomerFilter(source="douyin", min_age=30)).total == 1
        assert list_customers(s, ALICE, CustomerFilter(min_age=30, max_age=40)).total == 2
        assert list_customers(s, ALICE, CustomerFilter(status="rejected")).total == 1
        assert list_customers(s, ALICE, CustomerFilter(stage="contract")).total == 0
        assert list_customers(s, ALICE, CustomerFilter(stage="lead")).total == 3
        # LIKE wildcards in the search term are literal.
        assert list_customers(s, ALICE, CustomerFilter(q="%")).total == 0


def test_default_sort_is_newest_first_and_sort_is_stable(app):
    base = datetime(2026, 1, 1, 9, 0)
    with session_scope(app) as s:
        for i, name in enumerate(["first", "second", "third"]):
            c = create_customer(s, ALICE, _lead(name, age=str(20 + (i % 2))))
            c.created_at = base + timedelta(days=i)

    with session_scope(app) as s:
        names = [c.nickname for c in list_customers(s, ALICE).items]
        assert names == ["third", "second", "first"]

        by_age = list_customers(s, ALICE, sort=CustomerSort.parse("age", "asc")).items
        assert [c.age for c in by_age] == [20, 20, 21]
        # Equal keys fall back to id order.
        assert by_age[0].id < by_age[1].id

        by_name = list_customers(s, ALICE, sort=CustomerSort.parse("nickname", "desc")).items
        assert [c.nickname for c in by_name] == ["third", "second", "first"]
        by_name = list_customers(s, ALICE, sort=CustomerSort.parse("nickname", "asc")).items
        assert [c.nickname for c in by_name] == ["first", "second", "third"]

        # Unknown sort column falls back to the default.
        assert CustomerSort.parse("password_hash", "asc") == CustomerSort()


def test_pagination_reports_totals(app):
    with session_scope(app) as s:
        for i in range(12):
            create_customer(s, ALICE, _lead(f"n{i:02d}"))

    with session_scope(app) as s:
        p1 = list_customers(s, ALICE, page=1, per_page=5)
        p3 = list_customers(s, ALICE, page=3, per_page=5)
        assert p1.total == 12
        assert p1.pages == 3
        assert len(p1.items) == 5
        assert p1.has_next and not p1.has_prev
        assert len(p3.items) == 2
        assert not p3.has_next
        # per_page is clamped
        assert list_customers(s, ALICE, per_page=10_000).per_page == 100
        assert list_customers(s, ALICE, per_page=50, max_per_page=20).per_page == 20


def test_dashboard_summary_counts_within_scope(app):
    with session_scope(app) as s:
        create_customer(s, ALICE, _lead("a1"))
        create_customer(s, ALICE, _lead("a2", status="rejected"))
        create_customer(s, BOB, _lead("b1"))

    with session_scope(app) as s:
        mine = dashboard_summary(s, ALICE)
        assert mine.total == 2
        assert mine.communicating == 1
        assert mine.rejected == 1
        assert mine.closed == 0
        assert [c.nickname for c in mine.recent] == ["a2", "a1"]

        everyone = dashboard_summary(s, ADMIN)
        assert everyone.total == 3
        assert owner_options(s) == ["admin", "alice", "bob"]


# ---------- HTTP ----------

def test_leads_page_lists_own_leads(client, app):
    with session_scope(app) as s:
        create_customer(s, ALICE, _lead("alice-lead"))
        create_customer(s, BOB, _lead("bob-lead"))

    _login(client, "alice")
    r = client.get("/customers/leads")
    assert r.status_code == 200
    assert b"alice-lead" in r.data
    assert b"bob-lead" not in r.data


def test_create_lead_via_form(client, app):
    token = _login(client, "alice")
    r = client.post(
        "/customers/leads/new",
        data={**_lead("form-lead"), "owner": "bob", "csrf_token": token},
        follow_redirects=True,
    )
    assert r.status_code == 200
    assert b"form-lead" in r.data
    with session_scope(app) as s:
        c = s.query(Customer).filter(Customer.nickname == "form-lead").one()
        assert c.owner == "alice"


def test_create_lead_invalid_form_shows_errors(client, app):
    token = _login(client, "alice")
    r = client.post(
        "/customers/leads/new",
        data={"nickname": "", "contact": "", "source": "offline", "intention": "high", "status": "communicating"},
        headers={"X-CSRF-Token": token},
    )
    assert r.status_code == 400
    assert b"Nickname is required." in r.data
    with session_scope(app) as s:
        assert s.query(Customer).count() == 0


def test_edit_someone_elses_lead_is_refused(client, app):
    with session_scope(app) as s:
        b_id = create_customer(s, BOB, _lead("bob-lead")).id

    token = _login(client, "alice")
    r = client.post(f"/customers/{b_id}/edit", data={**_lead("mine-now"), "csrf_token": token}, follow_redirects=True)
    assert b"Operation failed." in r.data
    with session_scope(app) as s:
        assert s.get(Customer, b_id).nickname == "bob-lead"


def test_status_quick_switch(client, app):
    with session_scope(app) as s:
        cid = create_customer(s, ALICE, _lead("n1")).id
    token = _login(client, "alice")
    r = client.post(f"/customers/{cid}/status", data={"status": "rejected", "csrf_token": token})
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.get(Customer, cid).status == "rejected"


def test_delete_via_form(client, app):
    with session_scope(app) as s:
        cid = create_customer(s, ALICE, _lead("n1")).id
    token = _login(client, "alice")
    r = client.post(f"/customers/{cid}/delete", data={"csrf_token": token})
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.get(Customer, cid) is None


def test_admin_can_filter_leads_by_owner(client, app):
    with session_scope(app) as s:
        create_customer(s, ALICE, _lead("alice-lead"))
        create_customer(s, BOB, _lead("bob-lead"))
    _login(client, "admin")
    r = client.get("/customers/leads?owner=bob")
    assert r.status_code == 200
    assert b"bob-lead" in r.data
    assert b"alice-lead" not in r.data


def test_leads_page_paginates(client, app):
    with session_scope(app) as s:
        for i in range(7):
            create_customer(s, ALICE, _lead(f"lead-{i}"))
    _login(client, "alice")
    r = client.get("/customers/leads?per_page=5&page=2")
    assert r.status_code == 200
    assert b"page 2 of 2" in r.data


def test_leads_page_size_follows_max_page_size_setting(client, app):
    app.config["MAX_PAGE_SIZE"] = 3
    with session_scope(app) as s:
        for i in range(5):
            create_customer(s, ALICE, _lead(f"lead-{i}"))
    _login(client, "alice")
    r = client.get("/customers/leads?per_page=50")
    assert r.status_code == 200
    assert b"page 1 of 2" in r.data


def test_database_error_at_commit_is_reported_not_raised(client, app, monkeypatch):
    token = _login(client, "alice")

    def failing_commit(self):
        raise OperationalError("COMMIT", {}, Exception("connection dropped"))

    monkeypatch.setattr(Session, "commit", failing_commit)
    r = client.post("/customers/leads/new", data={**_lead("unsaved"), "csrf_token": token})
    assert r.status_code == 400
    assert b"Operation failed." in r.data

    monkeypatch.undo()
    with session_scope(app) as s:
        assert s.query(Customer).count() == 0
