"""Database engine and session factory."""
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
import logging

from grantkeeper.adapters.sql.models import Base

logger = logging.getLogger(__name__)


def build_engine(database_url: str):
    connect_args = {}
    engine_kwargs = {"pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        # Sessions are opened from the threadpool
        connect_args["check_same_thread"] = False
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every thread sees an empty database
            engine_kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, connect_args=connect_args, **engine_kwargs)
    if database_url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
    logger.info("Initialized Database Engine")
    return engine


def build_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


def init_db(engine) -> None:
    """Create tables directly from metadata (dev mode and `init-db`)."""
    Base.metadata.create_all(bind=engine)
    logger.info("Database schema ensured")
