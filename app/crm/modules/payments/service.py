"""
Payment ledger.

The payments table is the source of truth. Customer.wallet_balance is a display
cache that is recomputed from SUM(payments.amount) inside the same transaction
as each insert, so the two cannot drift apart on a partial failure.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.crm.audit import record_event
from app.crm.errors import ValidationError, backend_call, raise_if_invalid
from app.crm.modules.customers.models import Customer
from app.crm.modules.customers.service import get_customer
from app.crm.modules.payments.models import Payment
from app.crm.rbac import Principal
from app.crm.utils import MONEY_QUANT, MoneyOutOfRange, clean_str, parse_datetime, parse_money

logger = logging.getLogger(__name__)


def ledger_balance(s: Session, customer_id: int) -> Decimal:
    """SUM of every payment for the customer; 0 when there are none."""
    with backend_call("payment.balance", logger):
        total = (
            s.query(func.coalesce(func.sum(Payment.amount), 0))
            .filter(Payment.customer_id == customer_id)
            .scalar()
        )
    return Decimal(str(total or 0)).quantize(MONEY_QUANT)


def reconcile_wallet_balance(s: Session, customer: Customer) -> Decimal:
    """Rewrite the cached balance from the ledger. Returns the new balance."""
    balance = ledger_balance(s, customer.id)
    customer.wallet_balance = balance
    return balance


def validate_payment_payload(amount: Any, payment_time: Any) -> tuple[Decimal | None, datetime | None, list[ValidationError]]:
    errs: list[ValidationError] = []
    parsed_amount: Decimal | None = None
    parsed_time: datetime | None = None
    try:
        parsed_amount = parse_money(amount)
    except MoneyOutOfRange:
        errs.append(ValidationError("amount", "Amount must be less than 10,000,000,000 in magnitude."))
    except ValueError:
        errs.append(ValidationError("amount", "Amount must be a number."))
    else:
        if parsed_amount is None:
            errs.append(ValidationError("amount", "Amount is required."))
    try:
        parsed_time = parse_datetime(payment_time)
    except ValueError:
        errs.append(ValidationError("payment_time", "Payment time is not a valid date/time."))
    else:
        if parsed_time is None:
            errs.append(ValidationError("payment_time", "Payment time is required."))
    return parsed_amount, parsed_time, errs


def record_payment(
    s: Session,
    principal: Principal,
    customer_id: int,
    amount: Any,
    payment_time: Any,
    *,
    payment_name: str | None = None,
    notes: str | None = None,
) -> Payment:
    """
    Append a payment (negative amount = refund) and refresh the customer's cached
    balance and last payment time. Balances may go negative.
    """
    parsed_amount, parsed_time, errs = validate_payment_payload(amount, payment_time)
    raise_if_invalid(errs)
    c = get_customer(s, principal, customer_id)
    if not c.is_contracted:
        raise_if_invalid([ValidationError("customer", "Payments can only be recorded for contracted customers.")])

    with backend_call("payment.create", logger):
        p = Payment(
            customer_id=c.id,
            amount=parsed_amount,
            payment_name=clean_str(payment_name),
            payment_time=parsed_time,
            notes=clean_str(notes),
            created_by=principal.username,
            created_at=datetime.utcnow(),
        )
        s.add(p)
        s.flush()
        balance = reconcile_wallet_balance(s, c)
        c.last_payment_time = parsed_time
        c.updated_at = datetime.utcnow()
        s.flush()

    logger.info("payment %s recorded for customer %s by %s (balance=%s)", p.id, c.id, principal.username, balance)
    record_event(
        s,
        actor=principal,
        action="payment.create",
        entity_type="Payment",
        entity_id=str(p.id),
        metadata={"customer_id": c.id, "amount": parsed_amount, "wallet_balance": balance},
    )
    return p


def list_payments(s: Session, principal: Principal, customer_id: int) -> list[Payment]:
    """Every payment for the customer, most recent payment_time first."""
    c = get_customer(s, principal, customer_id)
    with backend_call("payment.list", logger):
        return (
            s.query(Payment)
            .filter(Payment.customer_id == c.id)
            .order_by(Payment.payment_time.desc(), Payment.id.desc())
            .all()
        )
