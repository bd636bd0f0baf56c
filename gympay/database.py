from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from gympay import config

engine = create_engine(
    config.DATABASE_URL,
    connect_args={"check_same_thread": False} if config.DATABASE_URL.startswith("sqlite") else {}
)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()


def get_db():
    """FastAPI dependency: yields a session and closes it when the request ends."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    from gympay import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
