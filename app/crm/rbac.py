from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from functools import wraps
from typing import Any

from flask import abort, g, redirect, request, url_for

from app.crm.constants import ROLE_ADMIN
from app.crm.models import User


@dataclass(frozen=True)
class Principal:
    """
    The acting staff member, passed explicitly into every service call.
    Services derive row visibility from it; they never read request globals.
    """

    id: int
    username: str
    role: str

    @property
    def is_privileged(self) -> bool:
        return self.role == ROLE_ADMIN

    @classmethod
    def from_user(cls, user: User) -> "Principal":
        return cls(id=user.id, username=user.username, role=user.role)


def current_principal() -> Principal:
    user: User | None = getattr(g, "current_user", None)
    if not user:
        raise RuntimeError("No current user")
    return Principal.from_user(user)


def _login_redirect():
    nxt = request.full_path or request.path
    # Avoid trailing '?' from full_path when there is no query string.
    if nxt.endswith("?"):
        nxt = nxt[:-1]
    return redirect(url_for("auth.login_get", next=nxt))


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        if not user or not user.is_active:
            return _login_redirect()
        return fn(*args, **kwargs)

    return wrapped


def require_admin(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        # Unauthenticated → redirect to login (UX + reduces confusion).
        if not user or not user.is_active:
            return _login_redirect()
        # Authenticated but not privileged → 403
        if not user.is_admin:
            g.missing_permission = ROLE_ADMIN
            abort(403)
        return fn(*args, **kwargs)

    return wrapped
