from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from settlement.config import DATABASE_URL


def make_engine(url: str):
    # SQLite connections are shared across FastAPI's threadpool workers
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args, pool_pre_ping=not url.startswith("sqlite"))


engine = make_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()


def get_db():
    """One session per request, closed whatever the outcome."""
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()
