import os

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


CHECKOUT_DB_URL = _require_env("CHECKOUT_DB_URL")


def _engine_options(db_url: str) -> dict:
    if not db_url.startswith("sqlite"):
        return {"pool_pre_ping": True, "future": True}
    options = {"future": True, "connect_args": {"check_same_thread": False}}
    if ":memory:" in db_url or db_url in {"sqlite://", "sqlite+pysqlite://"}:
        # One shared connection, otherwise every checkout sees its own empty database.
        options["poolclass"] = StaticPool
    return options


def _unicode_lower(value):
    return value.lower() if isinstance(value, str) else value


engine_checkout = create_engine(CHECKOUT_DB_URL, **_engine_options(CHECKOUT_DB_URL))

if CHECKOUT_DB_URL.startswith("sqlite"):

    @event.listens_for(engine_checkout, "connect")
    def _register_sqlite_functions(dbapi_connection, connection_record):
        # SQLite's built-in lower() only folds ASCII letters.
        dbapi_connection.create_function("lower", 1, _unicode_lower, deterministic=True)


SessionLocalCheckout = sessionmaker(
    bind=engine_checkout,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)


def init_db() -> None:
    from db.base import Base
    import models.checkout_models  # noqa: F401

    Base.metadata.create_all(bind=engine_checkout)
