import logging
from datetime import timedelta

from flask import Flask, g, render_template, request, session

from dotenv import load_dotenv

from app.crm.config import load_config
from app.crm.db import init_db, teardown_db_session
from app.crm.routes import bp as routes_bp
from app.crm.auth import bp as auth_bp, load_current_user
from app.crm.admin import bp as admin_bp
from app.crm.modules.customers.admin import bp as customers_bp
from app.crm.modules.payments.admin import bp as payments_bp

_UNGUARDED_PREFIXES = ("/static/", "/health", "/healthz")


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=app.config["SESSION_HOURS"])
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    from app.crm import constants
    from app.crm.security import ensure_csrf_token, validate_csrf

    @app.context_processor
    def _inject_csrf() -> dict:
        return {"csrf_token": ensure_csrf_token()}

    @app.context_processor
    def _inject_labels() -> dict:
        user = getattr(g, "current_user", None)
        return {
            "current_user": user,
            "is_admin": bool(user and user.is_admin),
            "STATUS_LABELS": constants.STATUS_LABELS,
            "STAGE2_LABELS": constants.STAGE2_LABELS,
            "ROLE_LABELS": constants.ROLE_LABELS,
        }

    @app.template_filter("dateformat")
    def _dateformat_filter(value, format: str = "%Y-%m-%d %H:%M") -> str:
        if value is None:
            return "-"
        if hasattr(value, "strftime"):
            return value.strftime(format)
        return str(value)

    @app.template_filter("money")
    def _money_filter(value) -> str:
        if value is None:
            return "-"
        return f"{value:,.2f}"

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_UNGUARDED_PREFIXES):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Login/logout carry no session yet to protect.
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                app.logger.warning("CSRF check failed (path=%s request_id=%s)", request.path, getattr(g, "request_id", None))
                return render_template("errors/400.html", message="CSRF token missing or invalid."), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp)
    app.register_blueprint(customers_bp, url_prefix="/customers")
    app.register_blueprint(payments_bp, url_prefix="/customers")

    def _load_user_wrapper():
        if request.path.startswith(_UNGUARDED_PREFIXES):
            g.current_user = None
            return None
        return load_current_user()

    # Runs ahead of the CSRF guard so audit/log lines carry the request id.
    app.before_request_funcs.setdefault(None, []).insert(0, _load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return render_template("errors/500.html"), 500

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return render_template("errors/403.html", missing_permission=missing), 403

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return render_template("errors/404.html"), 404

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
