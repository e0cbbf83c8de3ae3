from contextlib import contextmanager

from loguru import logger
from sqlalchemy import create_engine, event
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import get_settings
from .errors import Conflict, StorageFailure

# Base class for our models
Base = declarative_base()


def make_engine(url: str):
    """Create an engine; SQLite connections get FK enforcement and
    ``BEGIN IMMEDIATE`` so concurrent writers queue on the database lock
    instead of failing on a shared-to-exclusive upgrade."""
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def make_session_factory(engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


engine = make_engine(get_settings().database_url)
SessionLocal = make_session_factory(engine)


def init_db(bind=None) -> None:
    # Register the tables on Base before creating them
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


# Dependency for API routes
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session):
    """Run the block as one unit of work: commit on success, roll back on
    any failure. Driver errors are surfaced as vault errors."""
    try:
        yield db
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.warning(f"Constraint violation, rolled back: {exc.orig}")
        raise Conflict("The request conflicts with existing data.") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(f"Metadata store failure, rolled back: {exc}")
        raise StorageFailure("Metadata store unavailable.") from exc
    except BaseException:
        db.rollback()
        raise
