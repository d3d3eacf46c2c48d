import logging
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import Request
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, text

from .errors import FestivalError, InfrastructureError
from .settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


def build_engine(config: Settings | None = None) -> Engine:
    """Create the engine for the configured database.

    In-memory SQLite (used by tests) gets a single shared connection;
    everything else gets a bounded pool with an acquisition timeout.
    """
    config = config or default_settings
    url = config.database_url
    if url.startswith("sqlite"):
        # Requests run on pool threads. Only an in-memory database shares one connection.
        in_memory = make_url(url).database in (None, "", ":memory:")
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool if in_memory else None,
        )
    return create_engine(
        url,
        pool_size=config.db_pool_size,
        max_overflow=config.db_max_overflow,
        pool_timeout=config.db_pool_timeout,
        pool_pre_ping=True,
    )


def create_db_and_tables(engine: Engine) -> None:
    # Import table models so they register on SQLModel.metadata
    from . import models  # noqa: F401

    SQLModel.metadata.create_all(engine)
    logger.info("Database tables ensured")


def check_db_connection(engine: Engine) -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


def get_session(request: Request) -> Iterator[Session]:
    with Session(request.app.state.engine) as session:
        yield session


@contextmanager
def rollback_on_error(
    session: Session,
    operation: str,
    passthrough: tuple[type[SQLAlchemyError], ...] = (),
) -> Iterator[None]:
    """
    Roll back `session` on any failure. Domain errors propagate as-is; database
    failures (pool timeout included) are logged and surfaced as a generic
    InfrastructureError, except the `passthrough` types the caller retries.
    """
    try:
        yield
    except FestivalError:
        session.rollback()
        raise
    except SQLAlchemyError as e:
        session.rollback()
        if isinstance(e, passthrough):
            raise
        logger.error(f"{operation} failed: {e}", exc_info=True)
        raise InfrastructureError(f"{operation} failed, please try again") from e
