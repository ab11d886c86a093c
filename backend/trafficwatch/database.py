from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from trafficwatch.config import Settings, get_settings


class Base(DeclarativeBase):
    pass


def build_engine(settings: Settings) -> Engine:
    """Create the bounded connection pool for the configured database."""
    url = settings.database_url
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    return create_engine(
        url,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=0,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def create_schema(engine: Engine):
    # Import models so every table is registered on Base.metadata
    import trafficwatch.models  # noqa: F401

    Base.metadata.create_all(bind=engine)


@lru_cache()
def get_engine() -> Engine:
    return build_engine(get_settings())


@lru_cache()
def get_session_factory() -> sessionmaker:
    return build_session_factory(get_engine())


def get_db():
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()
