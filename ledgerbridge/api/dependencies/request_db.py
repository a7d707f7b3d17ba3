"""Request-scoped database session and connection service."""

from typing import Iterator

from fastapi import Depends
from sqlalchemy.orm import Session

from ledgerbridge.database.session import get_session_factory
from ledgerbridge.services.connection_service import ConnectionService


def get_db_session() -> Iterator[Session]:
    session = get_session_factory()()
    try:
        yield session
    finally:
        session.close()


def get_connection_service(db_session: Session = Depends(get_db_session)) -> ConnectionService:
    return ConnectionService(db_session)
