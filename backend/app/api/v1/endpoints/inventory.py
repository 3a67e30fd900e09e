from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backend.app.api.deps import get_db, get_operator
from backend.app.db.models.core_types import BoxType
from backend.app.schemas.inventory import AvailabilityRead, InventoryUnitRead
from backend.services import inventory as inventory_service
from backend.services.consistency import check_and_fix_status_consistency

router = APIRouter(prefix="/inventory")


class UnitCreate(BaseModel):
    sku: str = Field(min_length=1, max_length=64)
    country: str = Field(min_length=1, max_length=64)
    quantity: int = Field(gt=0)
    boxes: int = Field(gt=0)
    marketplace: str | None = Field(default=None, max_length=64)
    packer: str | None = Field(default=None, max_length=64)
    remark: str | None = None


class MixedBoxItem(BaseModel):
    sku: str = Field(min_length=1, max_length=64)
    country: str = Field(min_length=1, max_length=64)
    quantity: int = Field(gt=0)


class MixedBoxCreate(BaseModel):
    mix_box_num: str = Field(min_length=1, max_length=64)
    items: list[MixedBoxItem] = Field(min_length=1)
    marketplace: str | None = Field(default=None, max_length=64)
    packer: str | None = Field(default=None, max_length=64)
    remark: str | None = None


class UnitCancel(BaseModel):
    reason: str | None = None


@router.post("/units", response_model=InventoryUnitRead)
def create_unit(payload: UnitCreate, db: Session = Depends(get_db), operator: str = Depends(get_operator)):
    return inventory_service.create_inventory_unit(
        db,
        sku=payload.sku,
        country=payload.country,
        quantity=payload.quantity,
        boxes=payload.boxes,
        operator=operator,
        packer=payload.packer,
        marketplace=payload.marketplace,
        remark=payload.remark,
    )


@router.post("/units/mixed-box", response_model=list[InventoryUnitRead])
def create_mixed_box(payload: MixedBoxCreate, db: Session = Depends(get_db), operator: str = Depends(get_operator)):
    return inventory_service.create_mixed_box(
        db,
        mix_box_num=payload.mix_box_num,
        contents=[(it.sku, it.country, it.quantity) for it in payload.items],
        operator=operator,
        packer=payload.packer,
        marketplace=payload.marketplace,
        remark=payload.remark,
    )


@router.post("/units/{unit_id}/cancel", response_model=InventoryUnitRead)
def cancel_unit(
    unit_id: int,
    payload: UnitCancel | None = None,
    db: Session = Depends(get_db),
    operator: str = Depends(get_operator),
):
    return inventory_service.cancel_inventory_unit(
        db, unit_id, operator=operator, reason=payload.reason if payload else None
    )


@router.get("/availability", response_model=AvailabilityRead)
def availability(sku: str, country: str, db: Session = Depends(get_db)):
    """
    Disponibilité (READ ONLY), recalculée à chaque appel.
    """
    return inventory_service.compute_availability(db, sku, country).as_dict()


@router.get("/summary")
def summary(
    sku: str | None = None,
    country: str | None = None,
    box_type: BoxType | None = None,
    db: Session = Depends(get_db),
):
    return inventory_service.pending_inventory_summary(db, sku=sku, country=country, box_type=box_type)


@router.post("/consistency-repair")
def consistency_repair(dry_run: bool = False, db: Session = Depends(get_db), operator: str = Depends(get_operator)):
    return check_and_fix_status_consistency(db, dry_run=dry_run).as_dict()
