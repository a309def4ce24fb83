from __future__ import annotations

from flask import Blueprint, flash, redirect, render_template, request, url_for

from app.crm.admin import commit, handle_failure
from app.crm.db import db_session
from app.crm.errors import OperationFailed, ValidationFailed
from app.crm.modules.customers.service import get_customer
from app.crm.modules.payments.service import list_payments, record_payment
from app.crm.rbac import current_principal, require_login

bp = Blueprint("payments", __name__)


@bp.get("/<int:customer_id>/payments")
@require_login
def payments_get(customer_id: int):
    s = db_session()
    principal = current_principal()
    try:
        c = get_customer(s, principal, customer_id)
        payments = list_payments(s, principal, customer_id)
    except OperationFailed as e:
        handle_failure(s, e)
        return redirect(url_for("customers.contracts_list"))
    return render_template("payments/history.html", customer=c, payments=payments)


@bp.post("/<int:customer_id>/payments")
@require_login
def payments_post(customer_id: int):
    s = db_session()
    try:
        p = record_payment(
            s,
            current_principal(),
            customer_id,
            request.form.get("amount"),
            request.form.get("payment_time"),
            payment_name=request.form.get("payment_name"),
            notes=request.form.get("notes"),
        )
        commit(s, "payment.create")
    except OperationFailed as e:
        handle_failure(s, e)
        return redirect(url_for("customers.contracts_list"))
    except ValidationFailed as e:
        handle_failure(s, e)
        return redirect(url_for("payments.payments_get", customer_id=customer_id))
    flash(f"Payment of {p.amount:,.2f} recorded.", "success")
    return redirect(url_for("payments.payments_get", customer_id=customer_id))
