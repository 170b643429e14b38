from typing import Iterable, List, Sequence

from sqlalchemy import create_engine, event, insert
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from pocketbook.config import get_settings

settings = get_settings()

engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    connect_args={"check_same_thread": False} if settings.database_url.startswith("sqlite") else {},
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def enable_sqlite_foreign_keys(target_engine) -> None:
    """Turn on FK enforcement for every new SQLite connection."""

    @event.listens_for(target_engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


if settings.database_url.startswith("sqlite"):
    enable_sqlite_foreign_keys(engine)


def insert_ignoring_conflicts(
    db: Session,
    model,
    rows: Sequence[dict],
    conflict_columns: Iterable[str],
) -> None:
    """
    Insert rows, silently skipping any that collide with an existing unique key.

    "Already exists" is a normal outcome here, not an error: rows whose
    unique key is already present are left exactly as they are.

    Args:
        db: Database session (caller owns commit/rollback)
        model: ORM model class to insert into
        rows: Column-value dicts
        conflict_columns: Columns of the unique constraint to ignore conflicts on

    Raises:
        ValueError: The session is bound to an unsupported dialect
    """
    if not rows:
        return

    dialect = db.get_bind().dialect.name
    columns: List[str] = list(conflict_columns)

    if dialect == "sqlite":
        stmt = sqlite.insert(model).on_conflict_do_nothing(index_elements=columns)
    elif dialect == "postgresql":
        stmt = postgresql.insert(model).on_conflict_do_nothing(index_elements=columns)
    elif dialect in ("mysql", "mariadb"):
        stmt = insert(model).prefix_with("IGNORE")
    else:
        raise ValueError(f"insert_ignoring_conflicts does not support dialect '{dialect}'")

    db.execute(stmt, list(rows))
