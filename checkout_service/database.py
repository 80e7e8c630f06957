from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from . import config


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # Single shared connection so an in-memory database survives across sessions
        return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    return {"pool_pre_ping": True}


engine = create_engine(config.DATABASE_URL, **_engine_kwargs(config.DATABASE_URL))    # Connecting to the database
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)   # A temporary connection to work with the database.


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
