from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from payflow.config import DATABASE_URL, QUEUE_DATABASE_URL


def make_engine(url):
    return create_engine(
        url,
        connect_args={"check_same_thread": False} if url.startswith("sqlite") else {}
    )


def make_session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def utcnow():
    """Naive UTC timestamp; SQLite drops tzinfo anyway."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Payment store: checkouts, items, payments (+ collaborator tables)
engine = make_engine(DATABASE_URL)
SessionLocal = make_session_factory(engine)
Base = declarative_base()

# Queue store: jobs live apart from the payment tables
queue_engine = make_engine(QUEUE_DATABASE_URL)
QueueSessionLocal = make_session_factory(queue_engine)
QueueBase = declarative_base()
