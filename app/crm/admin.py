from datetime import date, datetime, time, timedelta

from flask import Blueprint, current_app, flash, redirect, render_template, request, url_for
from sqlalchemy.orm import Session

from app.crm.constants import ROLES
from app.crm.db import db_session
from app.crm.errors import OperationFailed, ValidationFailed, backend_call
from app.crm.models import AuditEvent
from app.crm.modules.customers.service import dashboard_summary
from app.crm.rbac import current_principal, require_admin, require_login
from app.crm.users import create_user, delete_user, get_user, list_users, update_user

bp = Blueprint("admin", __name__)

GENERIC_FAILURE = "Operation failed."


def handle_failure(s: Session, exc: Exception, failure_message: str = GENERIC_FAILURE) -> None:
    """
    Roll back and tell the user what went wrong: each broken rule for validation
    failures, one generic line for everything the backend refused.
    """
    s.rollback()
    if isinstance(exc, ValidationFailed):
        current_app.logger.info("Validation failed: %s", exc.summary())
        for e in exc.errors:
            flash(e.message, "danger")
    else:
        flash(failure_message, "danger")


def commit(s: Session, operation: str) -> None:
    """Commit the request session; a database error at commit time becomes OperationFailed."""
    with backend_call(f"{operation}.commit", current_app.logger):
        s.commit()


def _parse_date(s: str) -> date | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


@bp.get("/dashboard")
@require_login
def dashboard():
    s = db_session()
    try:
        summary = dashboard_summary(s, current_principal())
    except OperationFailed as e:
        handle_failure(s, e, "Could not load the dashboard.")
        summary = None
    return render_template("admin/dashboard.html", summary=summary)


@bp.get("/audit")
@require_admin
def audit_list():
    """
    Minimal audit trail UI (last 200 events) with simple filters:
    - action (contains)
    - actor (contains)
    - date range (YYYY-MM-DD)
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    actor = (request.args.get("actor") or "").strip()
    date_from = _parse_date(request.args.get("date_from") or "")
    date_to = _parse_date(request.args.get("date_to") or "")

    if (request.args.get("date_from") or "").strip() and not date_from:
        flash("date_from must be YYYY-MM-DD", "danger")
    if (request.args.get("date_to") or "").strip() and not date_to:
        flash("date_to must be YYYY-MM-DD", "danger")

    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor:
        q = q.filter(AuditEvent.actor_username.like(f"%{actor}%"))
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        # inclusive end-date (treat as whole day)
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(200).all()
    return render_template(
        "admin/audit/list.html",
        events=events,
        action=action,
        actor=actor,
        date_from=(request.args.get("date_from") or "").strip(),
        date_to=(request.args.get("date_to") or "").strip(),
    )


# ============================================================================
# USER ADMINISTRATION (Admin Only)
# ============================================================================

@bp.get("/users")
@require_admin
def users_list():
    s = db_session()
    try:
        users = list_users(s)
    except OperationFailed as e:
        handle_failure(s, e, "Could not load users.")
        users = []
    return render_template("admin/users/list.html", users=users, roles=ROLES)


@bp.post("/users/new")
@require_admin
def users_new_post():
    s = db_session()
    payload = {
        "username": request.form.get("username"),
        "password": request.form.get("password"),
        "role": request.form.get("role"),
    }
    try:
        user = create_user(s, current_principal(), payload)
        commit(s, "user.create")
        flash(f"Account created for {user.username}.", "success")
    except (ValidationFailed, OperationFailed) as e:
        handle_failure(s, e)
    return redirect(url_for("admin.users_list"))


@bp.get("/users/<int:user_id>")
@require_admin
def users_detail(user_id: int):
    s = db_session()
    try:
        user = get_user(s, user_id)
    except OperationFailed as e:
        handle_failure(s, e)
        return redirect(url_for("admin.users_list"))
    return render_template("admin/users/detail.html", account=user, roles=ROLES)


@bp.post("/users/<int:user_id>")
@require_admin
def users_update_post(user_id: int):
    s = db_session()
    payload = {
        "username": request.form.get("username"),
        "password": request.form.get("password"),
        "role": request.form.get("role"),
        "is_active": request.form.get("is_active") == "1",
    }
    try:
        user = update_user(s, current_principal(), user_id, payload)
        commit(s, "user.update")
        flash(f"Account updated for {user.username}.", "success")
    except (ValidationFailed, OperationFailed) as e:
        handle_failure(s, e)
    return redirect(url_for("admin.users_detail", user_id=user_id))


@bp.post("/users/<int:user_id>/delete")
@require_admin
def users_delete_post(user_id: int):
    s = db_session()
    try:
        delete_user(s, current_principal(), user_id)
        commit(s, "user.delete")
        flash("Account deleted.", "success")
    except (ValidationFailed, OperationFailed) as e:
        handle_failure(s, e)
    return redirect(url_for("admin.users_list"))
