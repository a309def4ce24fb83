from __future__ import annotations

from flask import Blueprint, current_app, flash, redirect, render_template, request, url_for

from app.crm.admin import commit, handle_failure
from app.crm.constants import GENDERS, INTENTIONS, LEAD_STATUSES, SOURCES, STAGE2_INTERVIEW_NOTIFIED, STAGE2_STATUSES
from app.crm.db import db_session
from app.crm.errors import OperationFailed, ValidationFailed
from app.crm.modules.customers.lifecycle import complete_lead, set_stage2_status
from app.crm.modules.customers.service import (
    LEAD_FIELDS,
    STAGE_CONTRACT,
    STAGE_LEAD,
    CustomerFilter,
    CustomerSort,
    add_follow_up,
    create_customer,
    delete_customer,
    get_customer,
    list_customers,
    list_follow_ups,
    owner_options,
    set_lead_status,
    update_customer,
)
from app.crm.rbac import current_principal, require_login
from app.crm.utils import parse_int

bp = Blueprint("customers", __name__)


def _arg_int(name: str) -> int | None:
    try:
        return parse_int(request.args.get(name))
    except ValueError:
        return None


def _list_args(stage: str) -> tuple[CustomerFilter, CustomerSort, int, int]:
    filters = CustomerFilter(
        q=(request.args.get("q") or "").strip() or None,
        status=(request.args.get("status") or "").strip() or None,
        intention=(request.args.get("intention") or "").strip() or None,
        owner=(request.args.get("owner") or "").strip() or None,
        source=(request.args.get("source") or "").strip() or None,
        min_age=_arg_int("min_age"),
        max_age=_arg_int("max_age"),
        stage=stage,
        stage2_status=(request.args.get("stage2_status") or "").strip() or None,
    )
    sort = CustomerSort.parse(request.args.get("sort"), request.args.get("order"))
    page = _arg_int("page") or 1
    per_page = _arg_int("per_page") or current_app.config["DEFAULT_PAGE_SIZE"]
    per_page = min(max(1, per_page), current_app.config["MAX_PAGE_SIZE"])
    return filters, sort, page, per_page


def _lead_payload() -> dict:
    return {k: request.form.get(k) for k in LEAD_FIELDS}


def _render_list(template: str, stage: str, **extra):
    s = db_session()
    principal = current_principal()
    filters, sort, page, per_page = _list_args(stage)
    try:
        result = list_customers(
            s,
            principal,
            filters,
            sort=sort,
            page=page,
            per_page=per_page,
            max_per_page=current_app.config["MAX_PAGE_SIZE"],
        )
        owners = owner_options(s) if principal.is_privileged else []
    except OperationFailed as e:
        handle_failure(s, e, "Could not load customers.")
        return redirect(url_for("admin.dashboard"))
    # Pagination links keep every filter except the page number.
    link_args = {k: v for k, v in request.args.items() if k != "page" and v}
    return render_template(
        template,
        page=result,
        filters=filters,
        sort=sort,
        owners=owners,
        link_args=link_args,
        intentions=INTENTIONS,
        sources=SOURCES,
        **extra,
    )


# ---------- Stage 1: leads ----------
@bp.get("/leads")
@require_login
def leads_list():
    return _render_list("customers/leads.html", STAGE_LEAD, statuses=LEAD_STATUSES)


@bp.get("/leads/new")
@require_login
def leads_new_get():
    return render_template(
        "customers/form.html",
        customer=None,
        form={"status": LEAD_STATUSES[0]},
        statuses=LEAD_STATUSES,
        intentions=INTENTIONS,
        sources=SOURCES,
        genders=GENDERS,
    )


@bp.post("/leads/new")
@require_login
def leads_new_post():
    s = db_session()
    payload = _lead_payload()
    try:
        c = create_customer(s, current_principal(), payload)
        commit(s, "customer.create")
    except (ValidationFailed, OperationFailed) as e:
        handle_failure(s, e)
        return render_template(
            "customers/form.html",
            customer=None,
            form=payload,
            statuses=LEAD_STATUSES,
            intentions=INTENTIONS,
            sources=SOURCES,
            genders=GENDERS,
        ), 400
    flash(f"Lead {c.nickname} created.", "success")
    return redirect(url_for("customers.leads_list"))


@bp.get("/<int:customer_id>/edit")
@require_login
def customer_edit_get(customer_id: int):
    s = db_session()
    try:
        c = get_customer(s, current_principal(), customer_id)
    except OperationFailed as e:
        handle_failure(s, e)
        return redirect(url_for("customers.leads_list"))
    return render_template(
        "customers/form.html",
        customer=c,
        form={k: getattr(c, k) for k in LEAD_FIELDS},
        statuses=LEAD_STATUSES,
        intentions=INTENTIONS,
        sources=SOURCES,
        genders=GENDERS,
    )


@bp.post("/<int:customer_id>/edit")
@require_login
def customer_edit_post(customer_id: int):
    s = db_session()
    try:
        c = update_customer(s, current_principal(), customer_id, _lead_payload())
        commit(s, "customer.update")
    except (ValidationFailed, OperationFailed) as e:
        handle_failure(s, e)
        return redirect(url_for("customers.customer_edit_get", customer_id=customer_id))
    flash("Customer updated.", "success")
    return redirect(url_for("customers.contracts_list" if c.is_contracted else "customers.leads_list"))


@bp.post("/<int:customer_id>/delete")
@require_login
def customer_delete_post(customer_id: int):
    s = db_session()
    next_url = request.form.get("next") or url_for("customers.leads_list")
    try:
        delete_customer(s, current_principal(), customer_id)
        commit(s, "customer.delete")
        flash("Customer deleted.", "success")
    except (ValidationFailed, OperationFailed) as e:
        handle_failure(s, e)
    if not next_url.startswith("/"):
        next_url = url_for("customers.leads_list")
    return redirect(next_url)


@bp.post("/<int:customer_id>/status")
@require_login
def customer_status_post(customer_id: int):
    s = db_session()
    try:
        set_lead_status(s, current_principal(), customer_id, request.form.get("status") or "")
        commit(s, "customer.status")
        flash("Status updated.", "success")
    except (ValidationFailed, OperationFailed) as e:
        handle_failure(s, e)
    return redirect(url_for("customers.leads_list"))


# ---------- Follow-ups ----------
@bp.get("/<int:customer_id>/follow-ups")
@require_login
def follow_ups_get(customer_id: int):
    s = db_session()
    principal = current_principal()
    try:
        c = get_customer(s, principal, customer_id)
        entries = list_follow_ups(s, principal, customer_id)
    except OperationFailed as e:
        handle_failure(s, e)
        return redirect(url_for("customers.leads_list"))
    return render_template("customers/follow_ups.html", customer=c, follow_ups=entries)


@bp.post("/<int:customer_id>/follow-ups")
@require_login
def follow_ups_post(customer_id: int):
    s = db_session()
    try:
        add_follow_up(s, current_principal(), customer_id, request.form.get("content") or "")
        commit(s, "follow_up.create")
        flash("Follow-up added.", "success")
    except OperationFailed as e:
        handle_failure(s, e)
        return redirect(url_for("customers.leads_list"))
    except ValidationFailed as e:
        handle_failure(s, e)
    return redirect(url_for("customers.follow_ups_get", customer_id=customer_id))


# ---------- Lead -> contract ----------
@bp.get("/<int:customer_id>/complete")
@require_login
def complete_get(customer_id: int):
    s = db_session()
    try:
        c = get_customer(s, current_principal(), customer_id)
    except OperationFailed as e:
        handle_failure(s, e)
        return redirect(url_for("customers.leads_list"))
    if c.is_contracted:
        flash("Customer is already contracted.", "info")
        return redirect(url_for("customers.contracts_list"))
    return render_template("customers/complete.html", customer=c, form={})


@bp.post("/<int:customer_id>/complete")
@require_login
def complete_post(customer_id: int):
    s = db_session()
    principal = current_principal()
    payload = {k: request.form.get(k) for k in ("real_name", "phone", "target_company", "hourly_rate")}
    try:
        c = complete_lead(s, principal, customer_id, payload)
        commit(s, "customer.complete")
    except OperationFailed as e:
        handle_failure(s, e)
        return redirect(url_for("customers.leads_list"))
    except ValidationFailed as e:
        handle_failure(s, e)
        try:
            c = get_customer(s, principal, customer_id)
        except OperationFailed:
            return redirect(url_for("customers.leads_list"))
        return render_template("customers/complete.html", customer=c, form=payload), 400
    flash(f"{c.display_name} moved to contracts.", "success")
    return redirect(url_for("customers.contracts_list"))


# ---------- Stage 2: contracts ----------
@bp.get("/contracts")
@require_login
def contracts_list():
    return _render_list("customers/contracts.html", STAGE_CONTRACT, stage2_statuses=STAGE2_STATUSES)


@bp.get("/<int:customer_id>/stage2")
@require_login
def stage2_get(customer_id: int):
    s = db_session()
    try:
        c = get_customer(s, current_principal(), customer_id)
    except OperationFailed as e:
        handle_failure(s, e)
        return redirect(url_for("customers.contracts_list"))
    return render_template(
        "customers/stage2.html",
        customer=c,
        stage2_statuses=STAGE2_STATUSES,
        notified=STAGE2_INTERVIEW_NOTIFIED,
    )


@bp.post("/<int:customer_id>/stage2")
@require_login
def stage2_post(customer_id: int):
    s = db_session()
    try:
        set_stage2_status(
            s,
            current_principal(),
            customer_id,
            request.form.get("stage2_status") or "",
            request.form.get("interview_notice_time"),
        )
        commit(s, "customer.stage2")
    except OperationFailed as e:
        handle_failure(s, e)
        return redirect(url_for("customers.contracts_list"))
    except ValidationFailed as e:
        handle_failure(s, e)
        return redirect(url_for("customers.stage2_get", customer_id=customer_id))
    flash("Stage updated.", "success")
    return redirect(url_for("customers.contracts_list"))
