from sqlalchemy.orm import Session

from tiresync.db import SessionLocal


def session_factory() -> Session:
    return SessionLocal()
