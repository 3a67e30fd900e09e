from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backend.app.api.deps import get_db, get_operator
from backend.app.db.models.core_types import ShipmentStatus
from backend.services import shipments as shipment_service
from backend.services.shipments import BoxBreakdown, ShipmentLineInput, target_from_order_item_id

router = APIRouter(prefix="/shipments")


class BoxBreakdownIn(BaseModel):
    whole_boxes: int = Field(default=0, ge=0)
    mixed_box_quantity: int = Field(default=0, ge=0)


class ShipmentLineIn(BaseModel):
    # > 0 : ligne de besoin ; absent / 0 / < 0 : expédition manuelle
    order_item_id: int | None = None
    need_num: str | None = Field(default=None, max_length=64)
    sku: str = Field(min_length=1, max_length=64)
    amz_sku: str | None = Field(default=None, max_length=64)
    country: str | None = Field(default=None, max_length=64)
    marketplace: str | None = Field(default=None, max_length=64)
    quantity: int = Field(gt=0)
    mix_box_num: str | None = Field(default=None, max_length=64)
    box_breakdown: BoxBreakdownIn | None = None


class ShipmentCreate(BaseModel):
    lines: list[ShipmentLineIn] = Field(min_length=1)
    shipping_method: str | None = Field(default=None, max_length=64)
    logistics_provider: str | None = Field(default=None, max_length=128)
    remark: str | None = None


class StatusUpdate(BaseModel):
    status: ShipmentStatus


@router.get("")
def list_shipments(
    page: int = 1,
    limit: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    operator: str | None = None,
    status: ShipmentStatus | None = None,
    db: Session = Depends(get_db),
):
    return shipment_service.list_shipments(
        db,
        page=page,
        limit=limit,
        date_from=date_from,
        date_to=date_to,
        operator=operator,
        status=status,
    ).as_dict()


@router.post("")
def create_shipment(payload: ShipmentCreate, db: Session = Depends(get_db), operator: str = Depends(get_operator)):
    lines = [
        ShipmentLineInput(
            target=target_from_order_item_id(ln.order_item_id, ln.need_num),
            sku=ln.sku,
            quantity=ln.quantity,
            country=ln.country,
            amz_sku=ln.amz_sku,
            marketplace=ln.marketplace,
            mix_box_num=ln.mix_box_num,
            box_breakdown=BoxBreakdown(**ln.box_breakdown.model_dump()) if ln.box_breakdown else None,
        )
        for ln in payload.lines
    ]
    record = shipment_service.create_shipment(
        db,
        operator=operator,
        lines=lines,
        shipping_method=payload.shipping_method,
        logistics_provider=payload.logistics_provider,
        remark=payload.remark,
    )
    return shipment_service.get_shipment(db, record.shipment_id)


@router.get("/{shipment_id}")
def get_shipment(shipment_id: int, db: Session = Depends(get_db)):
    return shipment_service.get_shipment(db, shipment_id)


@router.delete("/{shipment_id}")
def delete_shipment(shipment_id: int, db: Session = Depends(get_db), operator: str = Depends(get_operator)):
    return shipment_service.delete_shipment(db, shipment_id, operator=operator)


@router.patch("/{shipment_id}/status")
def update_status(
    shipment_id: int,
    payload: StatusUpdate,
    db: Session = Depends(get_db),
    operator: str = Depends(get_operator),
):
    record = shipment_service.update_shipment_status(db, shipment_id, payload.status, operator=operator)
    return shipment_service.shipment_summary(record)
