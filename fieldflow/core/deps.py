from collections.abc import Generator

from fastapi import Request
from sqlalchemy.orm import Session

from fieldflow.db.session import SessionLocal


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_event_bus(request: Request):
    return request.app.state.automation_bus


def get_action_services(request: Request):
    return request.app.state.automation_services
