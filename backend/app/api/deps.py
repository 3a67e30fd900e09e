from __future__ import annotations

from typing import Generator

from fastapi import Header, HTTPException

from backend.app.db.session import SessionLocal
from backend.services.notifications import Notifier, get_notifier


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_operator(x_operator: str | None = Header(default=None)) -> str:
    """Identité fournie par le proxy d'authentification (aucune autorisation ici)."""
    if not x_operator or not x_operator.strip():
        raise HTTPException(status_code=401, detail="X-Operator header is required")
    return x_operator.strip()


def get_notifier_dep() -> Notifier:
    return get_notifier()
