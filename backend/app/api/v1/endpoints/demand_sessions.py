from __future__ import annotations

from datetime import date

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backend.app.api.deps import get_db, get_notifier_dep, get_operator
from backend.app.api.v1.endpoints.demands import DemandLineIn, background_dispatch
from backend.app.db.models.core_types import Resolution
from backend.services import conflicts
from backend.services.demand import CandidateLine
from backend.services.notifications import Notifier

router = APIRouter(prefix="/demand-sessions")


class SessionOpen(BaseModel):
    country: str = Field(min_length=1, max_length=64)
    marketplace: str = Field(min_length=1, max_length=64)
    shipping_method: str = Field(min_length=1, max_length=64)
    deadline: date | None = None
    lines: list[DemandLineIn] = Field(min_length=1)


class ResolutionChoice(BaseModel):
    resolution: Resolution


@router.post("")
def open_session(payload: SessionOpen, db: Session = Depends(get_db), operator: str = Depends(get_operator)):
    session = conflicts.open_resolution_session(
        db,
        [CandidateLine(sku=ln.sku, quantity=ln.quantity) for ln in payload.lines],
        country=payload.country,
        marketplace=payload.marketplace,
        shipping_method=payload.shipping_method,
        created_by=operator,
        deadline=payload.deadline,
    )
    return conflicts.get_session_state(db, session.token)


@router.get("/{token}")
def get_session(token: str, db: Session = Depends(get_db)):
    return conflicts.get_session_state(db, token)


@router.post("/{token}/items/{item_token}")
def resolve(
    token: str,
    item_token: str,
    payload: ResolutionChoice,
    db: Session = Depends(get_db),
    operator: str = Depends(get_operator),
):
    item = conflicts.resolve_conflict(db, token, item_token, payload.resolution)
    return conflicts.item_as_dict(item)


@router.post("/{token}/finalize")
def finalize(
    token: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    operator: str = Depends(get_operator),
    notifier: Notifier = Depends(get_notifier_dep),
):
    need_num = conflicts.finalize_session(db, token, dispatch=background_dispatch(background_tasks, notifier))
    return {"session_token": token, "need_num": need_num}
