from __future__ import annotations

from datetime import date

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backend.app.api.deps import get_db, get_notifier_dep, get_operator
from backend.app.db.models.core_types import FulfillmentStatus, Resolution
from backend.services import demand as demand_service
from backend.services.conflicts import submit_demand
from backend.services.demand import CandidateLine
from backend.services.notifications import Dispatch, Notifier, deliver

router = APIRouter(prefix="/demands")


class DemandLineIn(BaseModel):
    sku: str = Field(min_length=1, max_length=64)
    quantity: int = Field(gt=0)


class DemandSubmit(BaseModel):
    country: str = Field(min_length=1, max_length=64)
    marketplace: str = Field(min_length=1, max_length=64)
    shipping_method: str = Field(min_length=1, max_length=64)
    deadline: date | None = None
    lines: list[DemandLineIn] = Field(min_length=1)
    # sku -> add / replace / new (uniquement pour les SKUs en conflit)
    resolutions: dict[str, Resolution] | None = None


class QuantityUpdate(BaseModel):
    quantity: int = Field(gt=0)


def background_dispatch(background_tasks: BackgroundTasks, notifier: Notifier) -> Dispatch:
    # exécuté après l'envoi de la réponse, donc après le commit
    def _dispatch(summary) -> None:
        background_tasks.add_task(deliver, notifier, summary)

    return _dispatch


@router.post("")
def submit(
    payload: DemandSubmit,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    operator: str = Depends(get_operator),
    notifier: Notifier = Depends(get_notifier_dep),
):
    """
    Soumission d'un lot :
    - sans conflit -> lot créé
    - conflits sans résolution -> 409 CONFLICT_UNRESOLVED (+ session_token)
    - échec en cours de résolution -> 200 avec "partial": true
    """
    result = submit_demand(
        db,
        [CandidateLine(sku=ln.sku, quantity=ln.quantity) for ln in payload.lines],
        country=payload.country,
        marketplace=payload.marketplace,
        shipping_method=payload.shipping_method,
        created_by=operator,
        deadline=payload.deadline,
        resolutions=payload.resolutions,
        dispatch=background_dispatch(background_tasks, notifier),
    )
    return result.as_dict()


@router.get("")
def list_batches(
    page: int = 1,
    limit: int | None = None,
    status: FulfillmentStatus | None = None,
    db: Session = Depends(get_db),
):
    return demand_service.list_demand_batches(db, page=page, limit=limit, status=status).as_dict()


@router.get("/lines/{record_num}")
def get_line(record_num: int, db: Session = Depends(get_db)):
    return demand_service.get_line_view(db, record_num).as_dict()


@router.patch("/lines/{record_num}")
def set_quantity(
    record_num: int,
    payload: QuantityUpdate,
    db: Session = Depends(get_db),
    operator: str = Depends(get_operator),
):
    return demand_service.set_demand_quantity(db, record_num, payload.quantity).as_dict()


@router.delete("/lines/{record_num}")
def delete_line(record_num: int, db: Session = Depends(get_db), operator: str = Depends(get_operator)):
    outcome = demand_service.delete_demand_line(db, record_num)
    return {"record_num": record_num, "outcome": outcome}


@router.post("/lines/{record_num}/cancel")
def cancel_line(record_num: int, db: Session = Depends(get_db), operator: str = Depends(get_operator)):
    return demand_service.cancel_demand_line(db, record_num, operator=operator).as_dict()


@router.get("/{need_num}")
def get_batch(need_num: str, db: Session = Depends(get_db)):
    return demand_service.get_demand_batch(db, need_num)


@router.delete("/{need_num}")
def delete_batch(need_num: str, db: Session = Depends(get_db), operator: str = Depends(get_operator)):
    deleted = demand_service.delete_demand_batch(db, need_num)
    return {"need_num": need_num, "deleted_lines": deleted}
