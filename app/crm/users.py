"""
Staff account management (administrators only; routes enforce the role).
Passwords are stored as salted werkzeug hashes and never echoed back.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash

from app.crm.audit import record_event
from app.crm.constants import ROLE_ADMIN, ROLES
from app.crm.errors import OperationFailed, ValidationError, backend_call, raise_if_invalid
from app.crm.models import User
from app.crm.modules.customers.models import Customer
from app.crm.rbac import Principal
from app.crm.utils import clean_str

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6
MAX_USERNAME_LENGTH = 150


def list_users(s: Session) -> list[User]:
    with backend_call("user.list", logger):
        return s.query(User).order_by(User.created_at.desc(), User.id.desc()).all()


def get_user(s: Session, user_id: int) -> User:
    with backend_call("user.get", logger):
        user = s.get(User, user_id)
    if user is None:
        raise OperationFailed("user.get", f"user {user_id} not found")
    return user


def _validate_password(password: str, errs: list[ValidationError], *, required: bool) -> None:
    if not password:
        if required:
            errs.append(ValidationError("password", "Password is required."))
        return
    if len(password) < MIN_PASSWORD_LENGTH:
        errs.append(ValidationError("password", f"Password must be at least {MIN_PASSWORD_LENGTH} characters."))


def _validate_username(s: Session, username: str | None, errs: list[ValidationError], *, exclude_id: int | None = None) -> None:
    if not username:
        errs.append(ValidationError("username", "Username is required."))
        return
    if len(username) > MAX_USERNAME_LENGTH:
        errs.append(ValidationError("username", f"Username must be at most {MAX_USERNAME_LENGTH} characters."))
        return
    with backend_call("user.lookup", logger):
        q = s.query(User.id).filter(User.username == username)
        if exclude_id is not None:
            q = q.filter(User.id != exclude_id)
        taken = q.first() is not None
    if taken:
        errs.append(ValidationError("username", "An account with this username already exists."))


def create_user(s: Session, actor: Principal, payload: dict[str, Any]) -> User:
    username = clean_str(payload.get("username"))
    password = payload.get("password") or ""
    role = clean_str(payload.get("role"))

    errs: list[ValidationError] = []
    _validate_username(s, username, errs)
    _validate_password(password, errs, required=True)
    if role not in ROLES:
        errs.append(ValidationError("role", f"Role must be one of: {', '.join(ROLES)}."))
    raise_if_invalid(errs)

    with backend_call("user.create", logger):
        user = User(username=username, password_hash=generate_password_hash(password), role=role, is_active=True)
        s.add(user)
        s.flush()
    record_event(
        s,
        actor=actor,
        action="user.create",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"username": username, "role": role},
    )
    return user


def update_user(s: Session, actor: Principal, user_id: int, payload: dict[str, Any]) -> User:
    """
    Blank password keeps the current one. Renaming a user moves their customers
    to the new username in the same transaction.
    """
    user = get_user(s, user_id)
    username = clean_str(payload.get("username")) or user.username
    password = payload.get("password") or ""
    role = clean_str(payload.get("role")) or user.role
    is_active = payload.get("is_active", user.is_active)
    if isinstance(is_active, str):
        is_active = is_active.strip().lower() in ("1", "true", "on", "yes")

    errs: list[ValidationError] = []
    _validate_username(s, username, errs, exclude_id=user.id)
    _validate_password(password, errs, required=False)
    if role not in ROLES:
        errs.append(ValidationError("role", f"Role must be one of: {', '.join(ROLES)}."))
    if user.id == actor.id:
        if role != ROLE_ADMIN:
            errs.append(ValidationError("role", "You cannot remove your own administrator role."))
        if not is_active:
            errs.append(ValidationError("is_active", "You cannot deactivate your own account."))
    raise_if_invalid(errs)

    before = {"username": user.username, "role": user.role, "is_active": user.is_active}
    old_username = user.username
    with backend_call("user.update", logger):
        user.username = username
        user.role = role
        user.is_active = bool(is_active)
        if password:
            user.password_hash = generate_password_hash(password)
        moved = 0
        if username != old_username:
            moved = (
                s.query(Customer)
                .filter(Customer.owner == old_username)
                .update({Customer.owner: username}, synchronize_session="fetch")
            )
        s.flush()
    after = {"username": user.username, "role": user.role, "is_active": user.is_active}
    record_event(
        s,
        actor=actor,
        action="user.update",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"before": before, "after": after, "password_changed": bool(password), "customers_moved": moved},
    )
    return user


def delete_user(s: Session, actor: Principal, user_id: int) -> None:
    """Customers owned by the deleted user keep the username and stay visible to administrators."""
    user = get_user(s, user_id)
    if user.id == actor.id:
        raise_if_invalid([ValidationError("user", "You cannot delete your own account.")])
    record_event(
        s,
        actor=actor,
        action="user.delete",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"username": user.username, "role": user.role},
    )
    with backend_call("user.delete", logger):
        s.delete(user)
        s.flush()
