"""
Database Engine & Session Management
SQLAlchemy setup with dependency injection for FastAPI.
"""
import os

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base

from carepay.config import Settings, get_settings

Base = declarative_base()


def _ensure_sqlite_dir(database_url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    if not database_url.startswith("sqlite:///"):
        return
    path = database_url.replace("sqlite:///", "", 1)
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)


def build_engine(settings: Settings, **kwargs):
    """Create an engine for the configured DATABASE_URL."""
    _ensure_sqlite_dir(settings.DATABASE_URL)
    is_sqlite = settings.DATABASE_URL.startswith("sqlite")
    connect_args = {}
    if is_sqlite:
        connect_args["check_same_thread"] = False  # Required for SQLite
    engine = create_engine(
        settings.DATABASE_URL,
        connect_args=connect_args,
        echo=settings.DEBUG,
        **kwargs,
    )
    if is_sqlite:
        # pysqlite defers BEGIN on its own, which breaks SAVEPOINT nesting
        @event.listens_for(engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _emit_begin(conn):
            conn.exec_driver_sql("BEGIN")
    return engine


engine = build_engine(get_settings())

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """FastAPI dependency: yields a database session, auto-closes on finish."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """Create all tables. Called once at application startup."""
    from carepay.models import payment as _payment_model      # noqa: F401
    from carepay.models import customer as _customer_model    # noqa: F401
    from carepay.models import booking as _booking_model      # noqa: F401
    from carepay.models import audit as _audit_model          # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
