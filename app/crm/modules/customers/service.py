"""
CUSTOMER REPOSITORY
===================

Every function takes the acting Principal explicitly. Visibility rule:

Principal        | Rows visible / writable
-----------------|------------------------------------------
admin            | all customers
employee         | customers.owner == principal.username

A row outside the caller's scope behaves exactly like a missing row: the call
raises OperationFailed and nothing is written.

Follow-ups live in their own table (customer_follow_ups) so that adding a note is
a single INSERT and concurrent notes never overwrite each other.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_
from sqlalchemy.orm import Query, Session

from app.crm.audit import record_event
from app.crm.constants import (
    AGE_MAX,
    AGE_MIN,
    CUSTOMER_STATUSES,
    GENDERS,
    INTENTIONS,
    LEAD_STATUSES,
    SOURCES,
    STAGE2_STATUSES,
    STATUS_CLOSED,
    STATUS_COMMUNICATING,
    STATUS_REJECTED,
)
from app.crm.config import DEFAULT_MAX_PAGE_SIZE, DEFAULT_PAGE_SIZE
from app.crm.errors import OperationFailed, ValidationError, backend_call, raise_if_invalid
from app.crm.models import User
from app.crm.modules.customers.models import Customer, FollowUp
from app.crm.rbac import Principal
from app.crm.utils import clean_str, parse_int

logger = logging.getLogger(__name__)

STAGE_LEAD = "lead"
STAGE_CONTRACT = "contract"

SORTABLE_COLUMNS = {
    "created_at": Customer.created_at,
    "updated_at": Customer.updated_at,
    "nickname": Customer.nickname,
    "real_name": Customer.real_name,
    "age": Customer.age,
    "intention": Customer.intention,
    "status": Customer.status,
    "owner": Customer.owner,
    "source": Customer.source,
    "hourly_rate": Customer.hourly_rate,
    "wallet_balance": Customer.wallet_balance,
    "stage2_status": Customer.stage2_status,
    "last_payment_time": Customer.last_payment_time,
    "interview_notice_time": Customer.interview_notice_time,
}

# Editable lead fields, in form order.
LEAD_FIELDS = ("nickname", "contact", "source", "intention", "status", "age", "gender", "work_experience", "notes")


@dataclass(frozen=True)
class CustomerFilter:
    q: str | None = None
    status: str | None = None
    intention: str | None = None
    owner: str | None = None
    source: str | None = None
    min_age: int | None = None
    max_age: int | None = None
    stage: str | None = None  # "lead" | "contract"
    stage2_status: str | None = None


@dataclass(frozen=True)
class CustomerSort:
    field: str = "created_at"
    descending: bool = True

    @classmethod
    def parse(cls, field_name: str | None, order: str | None) -> "CustomerSort":
        """Unknown columns fall back to the default ordering."""
        f = (field_name or "").strip()
        if f not in SORTABLE_COLUMNS:
            return cls()
        o = (order or "").strip().lower()
        return cls(field=f, descending=o not in ("asc", "ascend", "ascending"))


@dataclass
class Page:
    items: list[Any]
    total: int
    page: int
    per_page: int

    @property
    def pages(self) -> int:
        return max(1, -(-self.total // self.per_page))

    @property
    def has_prev(self) -> bool:
        return self.page > 1

    @property
    def has_next(self) -> bool:
        return self.page * self.per_page < self.total


def scoped_query(s: Session, principal: Principal) -> Query:
    q = s.query(Customer)
    if not principal.is_privileged:
        q = q.filter(Customer.owner == principal.username)
    return q


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def apply_filters(q: Query, principal: Principal, filters: CustomerFilter) -> Query:
    if filters.q:
        like = f"%{_escape_like(filters.q)}%"
        q = q.filter(or_(Customer.nickname.ilike(like, escape="\\"), Customer.real_name.ilike(like, escape="\\")))
    if filters.status:
        q = q.filter(Customer.status == filters.status)
    if filters.intention:
        q = q.filter(Customer.intention == filters.intention)
    if filters.source:
        q = q.filter(Customer.source == filters.source)
    # Owner filter is an admin tool; employees are already pinned to their own rows.
    if filters.owner and principal.is_privileged:
        q = q.filter(Customer.owner == filters.owner)
    if filters.min_age is not None:
        q = q.filter(Customer.age >= filters.min_age)
    if filters.max_age is not None:
        q = q.filter(Customer.age <= filters.max_age)
    if filters.stage == STAGE_LEAD:
        q = q.filter(Customer.status != STATUS_CLOSED)
    elif filters.stage == STAGE_CONTRACT:
        q = q.filter(Customer.status == STATUS_CLOSED)
    if filters.stage2_status:
        q = q.filter(Customer.stage2_status == filters.stage2_status)
    return q


def list_customers(
    s: Session,
    principal: Principal,
    filters: CustomerFilter | None = None,
    *,
    sort: CustomerSort | None = None,
    page: int = 1,
    per_page: int = DEFAULT_PAGE_SIZE,
    max_per_page: int = DEFAULT_MAX_PAGE_SIZE,
) -> Page:
    """Routes pass max_per_page from the MAX_PAGE_SIZE setting."""
    filters = filters or CustomerFilter()
    sort = sort or CustomerSort()
    page = max(1, page)
    per_page = min(max(1, per_page), max(1, max_per_page))

    with backend_call("customer.list", logger):
        q = apply_filters(scoped_query(s, principal), principal, filters)
        total = q.order_by(None).count()
        col = SORTABLE_COLUMNS[sort.field]
        ordering = (col.desc(), Customer.id.desc()) if sort.descending else (col.asc(), Customer.id.asc())
        items = q.order_by(*ordering).offset((page - 1) * per_page).limit(per_page).all()
    return Page(items=items, total=total, page=page, per_page=per_page)


def get_customer(s: Session, principal: Principal, customer_id: int) -> Customer:
    with backend_call("customer.get", logger):
        c = scoped_query(s, principal).filter(Customer.id == customer_id).one_or_none()
    if c is None:
        logger.info("customer %s not visible to %s", customer_id, principal.username)
        raise OperationFailed("customer.get", f"customer {customer_id} not found")
    return c


def validate_customer_payload(payload: dict[str, Any], *, allowed_statuses: tuple[str, ...] = LEAD_STATUSES) -> list[ValidationError]:
    errs: list[ValidationError] = []
    if not clean_str(payload.get("nickname")):
        errs.append(ValidationError("nickname", "Nickname is required."))
    if not clean_str(payload.get("contact")):
        errs.append(ValidationError("contact", "Contact is required."))

    source = clean_str(payload.get("source"))
    if not source:
        errs.append(ValidationError("source", "Source is required."))
    elif source not in SOURCES:
        errs.append(ValidationError("source", f"Source must be one of: {', '.join(SOURCES)}."))

    intention = clean_str(payload.get("intention"))
    if not intention:
        errs.append(ValidationError("intention", "Intention is required."))
    elif intention not in INTENTIONS:
        errs.append(ValidationError("intention", f"Intention must be one of: {', '.join(INTENTIONS)}."))

    status = clean_str(payload.get("status"))
    if not status:
        errs.append(ValidationError("status", "Status is required."))
    elif status not in allowed_statuses:
        errs.append(ValidationError("status", f"Status must be one of: {', '.join(allowed_statuses)}."))

    try:
        age = parse_int(payload.get("age"))
    except ValueError:
        errs.append(ValidationError("age", "Age must be a whole number."))
    else:
        if age is not None and not (AGE_MIN <= age <= AGE_MAX):
            errs.append(ValidationError("age", f"Age must be between {AGE_MIN} and {AGE_MAX}."))

    gender = clean_str(payload.get("gender"))
    if gender and gender not in GENDERS:
        errs.append(ValidationError("gender", f"Gender must be one of: {', '.join(GENDERS)}."))
    return errs


def _lead_values(payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "nickname": clean_str(payload.get("nickname")),
        "contact": clean_str(payload.get("contact")),
        "source": clean_str(payload.get("source")),
        "intention": clean_str(payload.get("intention")),
        "status": clean_str(payload.get("status")),
        "age": parse_int(payload.get("age")),
        "gender": clean_str(payload.get("gender")),
        "work_experience": clean_str(payload.get("work_experience")),
        "notes": clean_str(payload.get("notes")),
    }


def create_customer(s: Session, principal: Principal, payload: dict[str, Any]) -> Customer:
    """
    Create a lead. Any submitted owner is ignored: the row always belongs to the
    acting principal.
    """
    raise_if_invalid(validate_customer_payload(payload))
    values = _lead_values(payload)
    now = datetime.utcnow()
    with backend_call("customer.create", logger):
        c = Customer(**values, owner=principal.username, created_at=now, updated_at=now)
        s.add(c)
        s.flush()
    record_event(
        s,
        actor=principal,
        action="customer.create",
        entity_type="Customer",
        entity_id=str(c.id),
        metadata={"nickname": c.nickname, "owner": c.owner, "status": c.status},
    )
    return c


def update_customer(s: Session, principal: Principal, customer_id: int, payload: dict[str, Any]) -> Customer:
    """
    Edit lead fields. Owner and contract columns are not editable here; a
    contracted customer keeps status "closed" whatever the payload says.
    """
    c = get_customer(s, principal, customer_id)
    data = dict(payload)
    if c.is_contracted:
        data["status"] = STATUS_CLOSED
        raise_if_invalid(validate_customer_payload(data, allowed_statuses=(STATUS_CLOSED,)))
    else:
        raise_if_invalid(validate_customer_payload(data))
    values = _lead_values(data)

    before = {k: getattr(c, k) for k in LEAD_FIELDS}
    for k, v in values.items():
        setattr(c, k, v)
    after = {k: getattr(c, k) for k in LEAD_FIELDS}
    fields_changed = [k for k in LEAD_FIELDS if before[k] != after[k]]
    if fields_changed:
        c.updated_at = datetime.utcnow()
    with backend_call("customer.update", logger):
        s.flush()
    record_event(
        s,
        actor=principal,
        action="customer.update",
        entity_type="Customer",
        entity_id=str(c.id),
        metadata={"before": before, "after": after, "fields_changed": fields_changed},
    )
    return c


def delete_customer(s: Session, principal: Principal, customer_id: int) -> None:
    c = get_customer(s, principal, customer_id)
    record_event(
        s,
        actor=principal,
        action="customer.delete",
        entity_type="Customer",
        entity_id=str(c.id),
        metadata={"nickname": c.nickname, "owner": c.owner, "status": c.status},
    )
    with backend_call("customer.delete", logger):
        s.delete(c)
        s.flush()


def set_lead_status(s: Session, principal: Principal, customer_id: int, status: str) -> Customer:
    """
    Quick switch between lead statuses. Closing a lead goes through
    lifecycle.complete_lead, which collects the contract fields.
    """
    status = (status or "").strip()
    if status not in LEAD_STATUSES:
        raise_if_invalid([ValidationError("status", f"Status must be one of: {', '.join(LEAD_STATUSES)}.")])
    c = get_customer(s, principal, customer_id)
    if c.is_contracted:
        raise_if_invalid([ValidationError("status", "Contracted customers cannot return to the lead stage.")])
    before = c.status
    c.status = status
    c.updated_at = datetime.utcnow()
    with backend_call("customer.status", logger):
        s.flush()
    record_event(
        s,
        actor=principal,
        action="customer.status",
        entity_type="Customer",
        entity_id=str(c.id),
        metadata={"before": before, "after": status},
    )
    return c


# ============================================================================
# Follow-up log
# ============================================================================

def add_follow_up(
    s: Session,
    principal: Principal,
    customer_id: int,
    content: str,
    *,
    now: datetime | None = None,
) -> FollowUp:
    text = clean_str(content)
    if not text:
        raise_if_invalid([ValidationError("content", "Follow-up content is required.")])
    c = get_customer(s, principal, customer_id)
    with backend_call("follow_up.create", logger):
        fu = FollowUp(content=text, author=principal.username, created_at=now or datetime.utcnow())
        c.follow_ups.append(fu)
        s.flush()
    record_event(
        s,
        actor=principal,
        action="follow_up.create",
        entity_type="FollowUp",
        entity_id=str(fu.id),
        metadata={"customer_id": c.id},
    )
    return fu


def list_follow_ups(s: Session, principal: Principal, customer_id: int) -> list[FollowUp]:
    c = get_customer(s, principal, customer_id)
    with backend_call("follow_up.list", logger):
        return s.query(FollowUp).filter(FollowUp.customer_id == c.id).order_by(FollowUp.id.asc()).all()


# ============================================================================
# Dashboard
# ============================================================================

@dataclass(frozen=True)
class DashboardSummary:
    total: int
    by_status: dict[str, int]
    by_stage2: dict[str, int]
    recent: list[Customer]

    @property
    def communicating(self) -> int:
        return self.by_status.get(STATUS_COMMUNICATING, 0)

    @property
    def closed(self) -> int:
        return self.by_status.get(STATUS_CLOSED, 0)

    @property
    def rejected(self) -> int:
        return self.by_status.get(STATUS_REJECTED, 0)


def dashboard_summary(s: Session, principal: Principal, *, recent_limit: int = 5) -> DashboardSummary:
    with backend_call("dashboard.summary", logger):
        base = scoped_query(s, principal)
        status_rows = base.with_entities(Customer.status, func.count(Customer.id)).group_by(Customer.status).all()
        stage2_rows = (
            base.filter(Customer.status == STATUS_CLOSED, Customer.stage2_status.isnot(None))
            .with_entities(Customer.stage2_status, func.count(Customer.id))
            .group_by(Customer.stage2_status)
            .all()
        )
        recent = base.order_by(Customer.created_at.desc(), Customer.id.desc()).limit(recent_limit).all()
    by_status = {st: 0 for st in CUSTOMER_STATUSES}
    by_status.update({st: int(n) for st, n in status_rows})
    by_stage2 = {st: 0 for st in STAGE2_STATUSES}
    by_stage2.update({st: int(n) for st, n in stage2_rows})
    return DashboardSummary(total=sum(by_status.values()), by_status=by_status, by_stage2=by_stage2, recent=recent)


def owner_options(s: Session) -> list[str]:
    with backend_call("owner.options", logger):
        rows = s.query(User.username).order_by(User.username.asc()).all()
    return [r[0] for r in rows]
