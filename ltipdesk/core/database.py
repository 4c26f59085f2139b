from collections.abc import Generator
from pathlib import Path
import os

from sqlalchemy import MetaData, create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from ltipdesk.core.config import get_settings

settings = get_settings()
PROJECT_ROOT = Path(__file__).resolve().parents[2]

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


def _resolve_database_url(raw_url: str) -> str:
    url = make_url(raw_url)
    if url.get_backend_name() != "sqlite":
        return raw_url

    if url.database in (None, "", ":memory:"):
        return raw_url

    db_path = Path(url.database)
    if not db_path.is_absolute():
        db_path = (PROJECT_ROOT / db_path).resolve()

    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        db_path.touch(exist_ok=True)
    except PermissionError as exc:
        raise RuntimeError(f"SQLite database is not writable: {db_path}") from exc

    if not os.access(db_path, os.W_OK):
        raise RuntimeError(f"SQLite database is not writable: {db_path}")

    return str(url.set(database=str(db_path)))


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


def build_engine(database_url: str) -> Engine:
    is_sqlite = database_url.startswith("sqlite")
    connect_args = {"check_same_thread": False, "timeout": 30} if is_sqlite else {}
    built = create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)

    if is_sqlite:
        # Vesting events cascade with their grant; SQLite only honours that with the pragma on.
        @event.listens_for(built, "connect")
        def _enable_foreign_keys(dbapi_connection, _record) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return built


engine = build_engine(_resolve_database_url(settings.database_url))
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, class_=Session)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    from ltipdesk import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
