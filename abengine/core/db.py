from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from abengine.models.orm.base import Base


def build_engine(database_url: str) -> Engine:
    """
    Creates the SQLAlchemy engine used by the SQL counter and assignment stores.

    SQLite needs ``check_same_thread`` off for concurrent requests, and an
    in-memory SQLite database must share one connection or each session would
    see an empty database.
    """
    kwargs = {}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url or database_url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


def build_session_factory(engine: Engine, create_tables: bool = True) -> sessionmaker:
    # Each store operation opens its own session (a unit of work).
    if create_tables:
        Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
