"""
Session store: the signed session cookie carries only the user id; the principal
is re-read from the users table on every request.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, session, url_for
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import check_password_hash

from app.crm.audit import record_event
from app.crm.db import db_session
from app.crm.models import User

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds

SESSION_USER_KEY = "user_id"


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def authenticate(s, username: str, password: str) -> User | None:
    """Return the active user matching the credentials, or None."""
    user = s.query(User).filter(User.username == username).one_or_none()
    if not user or not user.is_active:
        return None
    if not check_password_hash(user.password_hash, password):
        return None
    return user


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    if request.path.startswith(("/static/", "/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get(SESSION_USER_KEY)
    if not user_id:
        g.current_user = None
        return

    try:
        s = db_session()
        user = s.get(User, int(user_id))
    except (SQLAlchemyError, ValueError) as e:
        current_app.logger.error("load_current_user failed (clearing session): %s", e)
        user = None
    if not user or not user.is_active:
        session.pop(SESSION_USER_KEY, None)
        g.current_user = None
        return
    g.current_user = user


@bp.get("/login")
def login_get():
    if getattr(g, "current_user", None):
        return redirect(url_for("admin.dashboard"))
    nxt = (request.args.get("next") or "").strip()
    return render_template("auth/login.html", next=nxt)


@bp.post("/login")
def login_post():
    username = (request.form.get("username") or "").strip()
    password = request.form.get("password") or ""
    nxt = (request.form.get("next") or "").strip()
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        flash("Too many login attempts. Please wait 5 minutes.", "danger")
        return redirect(url_for("auth.login_get"))

    _record_attempt(ip)

    s = db_session()
    user = authenticate(s, username, password)
    if not user:
        current_app.logger.warning("Login failed (username=%s ip=%s)", username, ip)
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=username,
            reason="Invalid credentials",
            metadata={"username": username},
        )
        s.commit()
        flash("Invalid credentials.", "danger")
        return redirect(url_for("auth.login_get", next=nxt) if nxt else url_for("auth.login_get"))

    session.clear()
    session[SESSION_USER_KEY] = user.id
    session.permanent = True
    _login_attempts[ip].clear()
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
    s.commit()
    # Optional "next" redirect (only allow local paths to avoid open redirects).
    if nxt.startswith("/") and not nxt.startswith("//"):
        return redirect(nxt)
    return redirect(url_for("admin.dashboard"))


@bp.get("/logout")
def logout():
    user = getattr(g, "current_user", None)
    if user:
        s = db_session()
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.pop(SESSION_USER_KEY, None)
    flash("Signed out.", "success")
    return redirect(url_for("auth.login_get"))
