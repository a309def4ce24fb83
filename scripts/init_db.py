import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.crm.constants import ROLE_ADMIN
from app.crm.models import User
from scripts._db_utils import resolve_database_url, script_session


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed the administrator account in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_username = (os.environ.get("ADMIN_USERNAME") or "admin").strip()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = resolve_database_url(database_url)

    # Use direct engine/session so this can run in release without importing app.wsgi (avoids recursion).
    with script_session(db_url) as s:
        user = s.query(User).filter(User.username == admin_username).one_or_none()
        if not user:
            user = User(
                username=admin_username,
                password_hash=generate_password_hash(admin_password),
                role=ROLE_ADMIN,
                is_active=True,
            )
            s.add(user)
        elif user.role != ROLE_ADMIN:
            user.role = ROLE_ADMIN

    print("Initialized database (seed_only).")
    print(f"Admin username: {admin_username}")
    print("Admin password: (from ADMIN_PASSWORD)")


def create_all(*, database_url: str | None = None) -> None:
    """Local development shortcut: build the schema without alembic, then seed."""
    from app.crm.models import Base
    from scripts._db_utils import create_script_engine

    engine = create_script_engine(resolve_database_url(database_url))
    try:
        Base.metadata.create_all(engine)
    finally:
        engine.dispose()
    seed_only(database_url=database_url)


def main() -> None:
    if "--create-all" in sys.argv[1:]:
        create_all(database_url=None)
    else:
        seed_only(database_url=None)


if __name__ == "__main__":
    main()
