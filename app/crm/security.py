import hmac
import secrets

from flask import Request, session

CSRF_SESSION_KEY = "csrf_token"
CSRF_FORM_FIELD = "csrf_token"
CSRF_HEADER = "X-CSRF-Token"


def ensure_csrf_token() -> str:
    """Ensure a CSRF token exists in the session and return it."""
    token = session.get(CSRF_SESSION_KEY)
    if not token:
        token = secrets.token_urlsafe(32)
        session[CSRF_SESSION_KEY] = token
    return token


def _submitted_token(req: Request) -> str | None:
    token = req.headers.get(CSRF_HEADER) or req.form.get(CSRF_FORM_FIELD)
    if not token and req.is_json:
        # silent=True: a malformed body is a missing token, not a 500.
        json_data = req.get_json(silent=True) or {}
        if isinstance(json_data, dict):
            token = json_data.get(CSRF_FORM_FIELD)
    return token


def validate_csrf(req: Request) -> bool:
    """Validate CSRF token from form, header, or JSON body."""
    token = _submitted_token(req)
    expected = session.get(CSRF_SESSION_KEY)
    if not token or not expected:
        return False
    return hmac.compare_digest(str(token), str(expected))
