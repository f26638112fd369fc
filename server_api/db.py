from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .core.config import DATABASE_URL, DB_MAX_OVERFLOW, DB_POOL_RECYCLE, DB_POOL_SIZE

Base = declarative_base()


def make_engine(database_url: str = DATABASE_URL):
    is_sqlite = database_url.startswith("sqlite")
    engine_kwargs = {
        "connect_args": {"check_same_thread": False} if is_sqlite else {},
        "pool_pre_ping": True,
        "pool_recycle": DB_POOL_RECYCLE,
    }
    if not is_sqlite:
        engine_kwargs.update(
            {
                "pool_size": DB_POOL_SIZE,
                "max_overflow": DB_MAX_OVERFLOW,
            }
        )
    return create_engine(database_url, **engine_kwargs)


def make_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


engine = make_engine()
SessionLocal = make_session_factory(engine)
