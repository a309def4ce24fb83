"""
Customer lifecycle.

Stage 1 (lead):      communicating <-> rejected, then "complete" -> closed
Stage 2 (contract):  awaiting_interview -> interview_notified -> interview_passed | interview_failed
                     interview_passed -> training -> completed

Stage-2 values are not a state machine: any value may be written at any time.
The only enforced pairing is interview_notice_time, which is set if and only if
stage2_status == "interview_notified".
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from app.crm.audit import record_event
from app.crm.constants import STAGE2_AWAITING_INTERVIEW, STAGE2_INTERVIEW_NOTIFIED, STAGE2_STATUSES, STATUS_CLOSED
from app.crm.errors import ValidationError, backend_call, raise_if_invalid
from app.crm.modules.customers.models import Customer
from app.crm.modules.customers.service import get_customer
from app.crm.rbac import Principal
from app.crm.utils import MoneyOutOfRange, clean_str, parse_datetime, parse_money

logger = logging.getLogger(__name__)

CONTRACT_FIELDS = ("real_name", "phone", "target_company", "hourly_rate")


def validate_completion_payload(payload: dict[str, Any]) -> tuple[dict[str, Any], list[ValidationError]]:
    errs: list[ValidationError] = []
    values: dict[str, Any] = {
        "real_name": clean_str(payload.get("real_name")),
        "phone": clean_str(payload.get("phone")),
        "target_company": clean_str(payload.get("target_company")),
        "hourly_rate": None,
    }
    if not values["real_name"]:
        errs.append(ValidationError("real_name", "Real name is required."))
    if not values["phone"]:
        errs.append(ValidationError("phone", "Phone is required."))
    if not values["target_company"]:
        errs.append(ValidationError("target_company", "Target company is required."))
    try:
        rate = parse_money(payload.get("hourly_rate"))
    except MoneyOutOfRange:
        errs.append(ValidationError("hourly_rate", "Hourly rate must be less than 10,000,000,000."))
    except ValueError:
        errs.append(ValidationError("hourly_rate", "Hourly rate must be a number."))
    else:
        if rate is None:
            errs.append(ValidationError("hourly_rate", "Hourly rate is required."))
        elif rate < 0:
            errs.append(ValidationError("hourly_rate", "Hourly rate cannot be negative."))
        values["hourly_rate"] = rate
    return values, errs


def complete_lead(s: Session, principal: Principal, customer_id: int, payload: dict[str, Any]) -> Customer:
    """
    Turn a lead into a contracted customer. All four contract fields are required;
    on success the stage-2 columns are reset whatever they held before.
    """
    values, errs = validate_completion_payload(payload)
    raise_if_invalid(errs)
    c = get_customer(s, principal, customer_id)
    if c.is_contracted:
        # Re-completing would zero the wallet while payments still exist.
        raise_if_invalid([ValidationError("status", "Customer is already contracted.")])

    before_status = c.status
    c.real_name = values["real_name"]
    c.phone = values["phone"]
    c.target_company = values["target_company"]
    c.hourly_rate = values["hourly_rate"]
    c.status = STATUS_CLOSED
    c.stage2_status = STAGE2_AWAITING_INTERVIEW
    c.wallet_balance = Decimal("0")
    c.interview_notice_time = None
    c.last_payment_time = None
    c.updated_at = datetime.utcnow()
    with backend_call("customer.complete", logger):
        s.flush()
    record_event(
        s,
        actor=principal,
        action="customer.complete",
        entity_type="Customer",
        entity_id=str(c.id),
        metadata={"before_status": before_status, **{k: values[k] for k in CONTRACT_FIELDS}},
    )
    return c


def set_stage2_status(
    s: Session,
    principal: Principal,
    customer_id: int,
    stage2_status: str,
    interview_notice_time: Any = None,
) -> Customer:
    value = (stage2_status or "").strip()
    errs: list[ValidationError] = []
    if value not in STAGE2_STATUSES:
        errs.append(ValidationError("stage2_status", f"Stage must be one of: {', '.join(STAGE2_STATUSES)}."))

    notice_time: datetime | None = None
    if value == STAGE2_INTERVIEW_NOTIFIED:
        try:
            notice_time = parse_datetime(interview_notice_time)
        except ValueError:
            errs.append(ValidationError("interview_notice_time", "Interview notice time is not a valid date/time."))
        else:
            if notice_time is None:
                errs.append(ValidationError("interview_notice_time", "Interview notice time is required when the interview is notified."))
    raise_if_invalid(errs)

    c = get_customer(s, principal, customer_id)
    if not c.is_contracted:
        raise_if_invalid([ValidationError("status", "Only contracted customers have a stage-2 status.")])

    before = {"stage2_status": c.stage2_status, "interview_notice_time": c.interview_notice_time}
    c.stage2_status = value
    # Any other stage clears the notice time, even if one was submitted.
    c.interview_notice_time = notice_time
    c.updated_at = datetime.utcnow()
    with backend_call("customer.stage2", logger):
        s.flush()
    record_event(
        s,
        actor=principal,
        action="customer.stage2",
        entity_type="Customer",
        entity_id=str(c.id),
        metadata={"before": before, "after": {"stage2_status": value, "interview_notice_time": notice_time}},
    )
    return c
