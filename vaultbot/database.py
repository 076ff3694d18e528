"""SQLModel database engine and session management."""

import logging

from sqlalchemy import inspect, text
from sqlmodel import SQLModel, create_engine, Session

from vaultbot.config import settings

logger = logging.getLogger(__name__)

# SQLite needs check_same_thread=False; PostgreSQL does not
connect_args = {}
if settings.database_url.startswith("sqlite"):
    connect_args["check_same_thread"] = False

engine = create_engine(
    settings.database_url,
    echo=False,
    connect_args=connect_args,
)


def _run_migrations(bind=None):
    """Run lightweight schema migrations for columns added after first deploy."""
    bind = bind or engine
    inspector = inspect(bind)

    if "position" not in inspector.get_table_names():
        return

    columns = {col["name"] for col in inspector.get_columns("position")}
    added = {
        "trailing_step_percent": "FLOAT",
        "reconciled_at": "TIMESTAMP",
        "health_factor": "FLOAT",
    }
    for name, col_type in added.items():
        if name not in columns:
            logger.info(f"Migrating: adding position.{name}")
            with bind.connect() as conn:
                conn.execute(text(f"ALTER TABLE position ADD COLUMN {name} {col_type}"))
                conn.commit()


def create_db_and_tables(bind=None):
    """Create all tables. Called on startup."""
    import vaultbot.models  # noqa: F401  (registers tables on the metadata)

    SQLModel.metadata.create_all(bind or engine)
    _run_migrations(bind)


def get_session() -> Session:
    """Dependency that yields a database session."""
    with Session(engine) as session:
        yield session
