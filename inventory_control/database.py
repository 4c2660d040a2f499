from datetime import datetime, timezone

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from inventory_control.config import settings


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every DateTime column is stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url


def make_engine(url: str | None = None) -> Engine:
    url = url or settings.DATABASE_URL
    connect_args = {}
    kwargs = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = settings.TRANSACTION_TIMEOUT_SECONDS
        if _is_memory_sqlite(url):
            kwargs["poolclass"] = StaticPool

    engine = create_engine(url, connect_args=connect_args, echo=settings.DATABASE_ECHO, **kwargs)

    if url.startswith("sqlite"):
        # pysqlite defers BEGIN until the first write, so a SELECT ... then UPDATE
        # would run outside any lock. Take the write lock up front instead.
        @event.listens_for(engine, "connect")
        def _disable_pysqlite_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)


engine = make_engine()
SessionLocal = make_session_factory(engine)


class Base(DeclarativeBase):
    pass


def apply_transaction_timeout(db: Session) -> None:
    """Bound lock waits for the current transaction (PostgreSQL only; SQLite uses its busy timeout)."""
    if db.get_bind().dialect.name != "postgresql":
        return
    timeout_ms = int(settings.TRANSACTION_TIMEOUT_SECONDS * 1000)
    db.execute(text(f"SET LOCAL lock_timeout = {timeout_ms}"))
    db.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))


def init_db(bind: Engine | None = None):
    # Import all models so Base.metadata knows about them
    import inventory_control.models.warehouse  # noqa: F401
    import inventory_control.models.product  # noqa: F401
    import inventory_control.models.order  # noqa: F401
    import inventory_control.models.inventory_item  # noqa: F401
    import inventory_control.models.reservation  # noqa: F401
    import inventory_control.models.stock_movement  # noqa: F401
    import inventory_control.models.cycle_count  # noqa: F401
    import inventory_control.models.transfer_request  # noqa: F401
    import inventory_control.models.audit_log  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
