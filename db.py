from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from config import DB_URL

Base = declarative_base()


def make_engine(url: str):
    """
    SQLite needs check_same_thread off because lanes run on worker threads;
    in-memory databases additionally share one connection.
    """
    if not url.startswith("sqlite"):
        return create_engine(url)
    if url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return create_engine(url, connect_args={"check_same_thread": False})


def make_session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def init_schema(engine):
    import models  # noqa: F401  (registers tables on Base.metadata)
    Base.metadata.create_all(engine)


# Default store ---------------------------------------------------------------
engine = make_engine(DB_URL)
SessionLocal = make_session_factory(engine)
