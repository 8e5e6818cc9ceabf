import os
import sys
import tempfile
from pathlib import Path


os.environ.setdefault("CHECKOUT_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SESSION_SIGNING_SECRET", "x" * 48)
os.environ.setdefault("CHECKOUT_DATA_DIR", tempfile.mkdtemp(prefix="checkout-data-"))
os.environ.setdefault("UPLOADS_DIR", tempfile.mkdtemp(prefix="checkout-uploads-"))

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base  # noqa: E402
from db.session import SessionLocalCheckout, engine_checkout  # noqa: E402
import models.checkout_models  # noqa: E402,F401
from services.user_access_service import upsert_profile  # noqa: E402


TEST_PASSWORD = "secret-pass"


def reset_database() -> None:
    Base.metadata.drop_all(bind=engine_checkout)
    Base.metadata.create_all(bind=engine_checkout)


def new_session():
    return SessionLocalCheckout()


def make_profile(db, email: str, role: str = "teacher", full_name: str | None = None):
    return upsert_profile(
        db,
        email=email,
        full_name=full_name or email.split("@", 1)[0].title(),
        role=role,
        password=TEST_PASSWORD,
    )
