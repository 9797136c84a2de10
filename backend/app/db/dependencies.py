"""FastAPI database dependencies."""

from collections.abc import Iterator

from sqlalchemy.orm import Session, sessionmaker

from app.db.session import SessionLocal


def get_db() -> Iterator[Session]:
    """Yield a request-scoped session."""

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    """Return the session factory for long-lived connections such as websockets."""

    return SessionLocal
