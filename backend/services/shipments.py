"""
Registre des expéditions.

create_shipment (une transaction) :
    ShipmentRecord + ShipmentLines + ShipmentAllocations
    + OrderShipmentRelations + incréments de stock

delete_shipment (une transaction) : inverse exact, à partir des allocations enregistrées.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Union

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from backend.app.core.config import get_settings
from backend.app.db.base import utcnow
from backend.app.db.models.core_types import BoxType, CompletionStatus, DemandStatus, ShipmentStatus
from backend.app.db.models.models_v1 import (
    OrderShipmentRelation,
    ShipmentAllocation,
    ShipmentLine,
    ShipmentRecord,
)
from backend.services.demand import get_line, shipped_by_record
from backend.services.errors import InvalidQuantity, NotFound, ValidationError
from backend.services.inventory import (
    allocatable_units,
    apply_allocation,
    boxes_for,
    plan_allocation,
    release_allocation,
)
from backend.services.numbering import next_shipment_number
from backend.services.paging import Page, clamp_page
from backend.services.tx import atomic

logger = logging.getLogger(__name__)


# ---------- CIBLE D'UNE LIGNE ----------
@dataclass(frozen=True)
class Linked:
    """Ligne adossée à une ligne de besoin existante."""

    record_num: int


@dataclass(frozen=True)
class Manual:
    """Expédition sans besoin formel : need_num fourni ou synthétisé (MANUAL-...)."""

    need_num: str | None = None
    sentinel: int | None = None


ShipmentTarget = Union[Linked, Manual]


def target_from_order_item_id(order_item_id: int | None, manual_need_num: str | None = None) -> ShipmentTarget:
    """Seul endroit où le signe de order_item_id est interprété."""
    if order_item_id is not None and order_item_id > 0:
        return Linked(record_num=int(order_item_id))
    need_num = manual_need_num.strip() if manual_need_num and manual_need_num.strip() else None
    return Manual(need_num=need_num, sentinel=order_item_id)


@dataclass(frozen=True)
class BoxBreakdown:
    whole_boxes: int = 0
    mixed_box_quantity: int = 0


@dataclass(frozen=True)
class ShipmentLineInput:
    target: ShipmentTarget
    sku: str
    quantity: int
    country: str | None = None
    amz_sku: str | None = None
    marketplace: str | None = None
    mix_box_num: str | None = None
    box_breakdown: BoxBreakdown | None = None


# ---------- VALIDATION ----------
def _validate_lines(lines: list[ShipmentLineInput]) -> None:
    if not lines:
        raise ValidationError("A shipment needs at least one line")

    seen_records: set[int] = set()
    for index, ln in enumerate(lines):
        if not ln.sku or not ln.sku.strip():
            raise ValidationError("sku is required", details={"line": index})
        if ln.quantity is None or ln.quantity <= 0:
            raise ValidationError(
                f"quantity must be > 0 for sku {ln.sku}",
                details={"line": index, "sku": ln.sku, "quantity": ln.quantity},
            )
        if isinstance(ln.target, Manual) and not (ln.country and ln.country.strip()):
            raise ValidationError(
                f"country is required for manual line {ln.sku}",
                details={"line": index, "sku": ln.sku},
            )
        if isinstance(ln.target, Linked):
            if ln.target.record_num in seen_records:
                raise ValidationError(
                    f"Demand line {ln.target.record_num} appears twice in the same shipment",
                    details={"line": index, "record_num": ln.target.record_num},
                )
            seen_records.add(ln.target.record_num)
        bd = ln.box_breakdown
        if bd is not None and (bd.whole_boxes < 0 or bd.mixed_box_quantity < 0):
            raise ValidationError("box breakdown values must be >= 0", details={"line": index})


def _manual_need_nums(
    lines: list[ShipmentLineInput], now: datetime, shipment_number: str
) -> dict[int | None, str]:
    """
    Un need_num synthétique par sentinelle distincte (suffixe -2, -3... au-delà
    de la première). Le numéro d'expédition le rend unique même à la milliseconde près.
    """
    prefix = get_settings().MANUAL_NEED_PREFIX
    stamp = f"{int(now.timestamp() * 1000)}-{shipment_number}"
    out: dict[int | None, str] = {}
    for ln in lines:
        t = ln.target
        if isinstance(t, Manual) and t.need_num is None and t.sentinel not in out:
            n = len(out) + 1
            out[t.sentinel] = f"{prefix}{stamp}" if n == 1 else f"{prefix}{stamp}-{n}"
    return out


# ---------- CRÉATION ----------
@dataclass
class _RelationTotals:
    requested: int = 0
    shipped: int = 0
    sentinel: int | None = None


def create_shipment(
    db: Session,
    *,
    operator: str,
    lines: Iterable[ShipmentLineInput],
    shipping_method: str | None = None,
    logistics_provider: str | None = None,
    remark: str | None = None,
) -> ShipmentRecord:
    if not operator or not operator.strip():
        raise ValidationError("operator is required", details={"field": "operator"})
    lines = list(lines)
    _validate_lines(lines)

    now = utcnow()

    with atomic(db, operation="create_shipment"):
        record = ShipmentRecord(
            shipment_number=next_shipment_number(db, now),
            operator=operator,
            status=ShipmentStatus.preparing,
            shipping_method=shipping_method,
            logistics_provider=logistics_provider,
            remark=remark,
        )
        db.add(record)
        db.flush()
        manual_need_nums = _manual_need_nums(lines, now, record.shipment_number)

        relations: dict[str, _RelationTotals] = {}
        mixed_boxes: set[str] = set()
        total_whole_boxes = 0
        total_items = 0

        for ln in lines:
            sku = ln.sku.strip()
            target = ln.target

            if isinstance(target, Linked):
                demand = get_line(db, target.record_num, lock=True)
                if demand.status == DemandStatus.cancelled:
                    raise ValidationError(
                        f"Demand line {demand.record_num} is cancelled",
                        details={"record_num": demand.record_num},
                    )
                if demand.sku != sku:
                    raise ValidationError(
                        f"sku {sku} does not match demand line {demand.record_num} ({demand.sku})",
                        details={"record_num": demand.record_num, "sku": sku, "expected_sku": demand.sku},
                    )
                if ln.country and ln.country.strip() != demand.country:
                    raise ValidationError(
                        f"country {ln.country} does not match demand line {demand.record_num}",
                        details={"record_num": demand.record_num, "expected_country": demand.country},
                    )
                remaining = demand.quantity - shipped_by_record(db, [demand.record_num]).get(demand.record_num, 0)
                if ln.quantity > remaining:
                    raise InvalidQuantity(
                        f"quantity ({ln.quantity}) exceeds remaining demand ({remaining}) for line {demand.record_num}",
                        details={"record_num": demand.record_num, "quantity": ln.quantity, "remaining": remaining},
                    )
                need_num = demand.need_num
                country = demand.country
                marketplace = demand.marketplace
                requested = remaining
                order_item_id = demand.record_num
                sentinel = None
            else:
                need_num = target.need_num or manual_need_nums[target.sentinel]
                country = ln.country.strip()
                marketplace = ln.marketplace
                requested = ln.quantity
                order_item_id = None
                sentinel = target.sentinel

            units = allocatable_units(db, sku, country, lock=True)
            plan = plan_allocation(units, ln.quantity, prefer_mix_box=ln.mix_box_num)

            line = ShipmentLine(
                order_item_id=order_item_id,
                manual_sentinel=sentinel,
                need_num=need_num,
                local_sku=sku,
                amz_sku=(ln.amz_sku or sku).strip(),
                country=country,
                marketplace=marketplace,
                requested_quantity=requested,
                shipped_quantity=ln.quantity,
            )
            record.lines.append(line)
            db.flush()

            whole_boxes = mixed_qty = 0
            for unit, take in plan:
                if unit.box_type == BoxType.whole_box:
                    whole_boxes += boxes_for(unit, take)
                else:
                    mixed_qty += take
                    mixed_boxes.add(unit.mix_box_num or f"unit-{unit.id}")
                apply_allocation(db, unit.id, take, note=f"-{take} shipment {record.shipment_number}")
                line.allocations.append(ShipmentAllocation(unit_id=unit.id, quantity=take))

            if ln.box_breakdown is not None:
                whole_boxes = ln.box_breakdown.whole_boxes
                mixed_qty = ln.box_breakdown.mixed_box_quantity
            line.whole_boxes = whole_boxes
            line.mixed_box_quantity = mixed_qty

            total_whole_boxes += whole_boxes
            total_items += ln.quantity

            rel = relations.setdefault(need_num, _RelationTotals(sentinel=sentinel))
            rel.requested += requested
            rel.shipped += ln.quantity

        for need_num, rel in relations.items():
            record.relations.append(
                OrderShipmentRelation(
                    need_num=need_num,
                    total_requested=rel.requested,
                    total_shipped=rel.shipped,
                    completion_status=(
                        CompletionStatus.complete if rel.shipped >= rel.requested else CompletionStatus.partial
                    ),
                    manual_sentinel=rel.sentinel,
                )
            )

        record.total_boxes = total_whole_boxes + len(mixed_boxes)
        record.total_items = total_items
        db.flush()

    logger.info(
        "shipment %s created by %s: %d lines, %d items, need_nums=%s",
        record.shipment_number,
        operator,
        len(lines),
        total_items,
        sorted(relations),
    )
    return record


# ---------- ANNULATION / STATUT ----------
def _locked_record(db: Session, shipment_id: int) -> ShipmentRecord:
    record = (
        db.execute(select(ShipmentRecord).where(ShipmentRecord.shipment_id == shipment_id).with_for_update())
        .scalar_one_or_none()
    )
    if not record:
        raise NotFound(f"Shipment {shipment_id} not found", details={"shipment_id": shipment_id})
    return record


def delete_shipment(db: Session, shipment_id: int, *, operator: str | None = None) -> dict:
    """
    Rend au stock exactement ce que l'expédition avait pris, puis supprime
    record + lignes + allocations + relations. Un second appel lève NotFound.
    """
    with atomic(db, operation="delete_shipment"):
        record = _locked_record(db, shipment_id)
        number = record.shipment_number
        restored: dict[int, int] = {}
        for line in record.lines:
            for alloc in line.allocations:
                release_allocation(
                    db,
                    alloc.unit_id,
                    alloc.quantity,
                    note=f"+{alloc.quantity} shipment {number} deleted" + (f" by {operator}" if operator else ""),
                )
                restored[alloc.unit_id] = restored.get(alloc.unit_id, 0) + alloc.quantity
        need_nums = sorted(rel.need_num for rel in record.relations)
        db.delete(record)

    logger.info("shipment %s deleted, restored units=%s", number, restored)
    return {
        "shipment_id": shipment_id,
        "shipment_number": number,
        "restored_units": [{"unit_id": uid, "quantity": q} for uid, q in sorted(restored.items())],
        "need_nums": need_nums,
    }


def update_shipment_status(
    db: Session, shipment_id: int, status: ShipmentStatus | str, *, operator: str | None = None
) -> ShipmentRecord:
    try:
        status = ShipmentStatus(status)
    except ValueError:
        raise ValidationError(f"Unknown shipment status {status!r}") from None

    if status == ShipmentStatus.cancelled:
        raise ValidationError("Delete the shipment to cancel it", details={"shipment_id": shipment_id})

    with atomic(db, operation="update_shipment_status"):
        record = _locked_record(db, shipment_id)
        if record.status == status:
            return record
        if not (record.status == ShipmentStatus.preparing and status == ShipmentStatus.shipped):
            raise ValidationError(
                f"Cannot move shipment from {record.status.value} to {status.value}",
                details={"shipment_id": shipment_id, "from": record.status.value, "to": status.value},
            )
        record.status = status

    logger.info("shipment %s -> %s (%s)", shipment_id, status.value, operator or "-")
    return record


# ---------- REQUÊTES ----------
def shipment_summary(record: ShipmentRecord) -> dict:
    return {
        "shipment_id": record.shipment_id,
        "shipment_number": record.shipment_number,
        "operator": record.operator,
        "total_boxes": record.total_boxes,
        "total_items": record.total_items,
        "status": record.status.value,
        "shipping_method": record.shipping_method,
        "logistics_provider": record.logistics_provider,
        "remark": record.remark,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


def _day_start(d: date) -> datetime:
    return datetime.combine(d, time.min, tzinfo=timezone.utc)


def list_shipments(
    db: Session,
    *,
    page: int | None = None,
    limit: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    operator: str | None = None,
    status: ShipmentStatus | None = None,
) -> Page:
    page, limit = clamp_page(page, limit)

    stmt = select(ShipmentRecord)
    if date_from:
        stmt = stmt.where(ShipmentRecord.created_at >= _day_start(date_from))
    if date_to:
        stmt = stmt.where(ShipmentRecord.created_at < _day_start(date_to + timedelta(days=1)))
    if operator:
        stmt = stmt.where(ShipmentRecord.operator.like(f"%{operator}%"))
    if status:
        stmt = stmt.where(ShipmentRecord.status == status)

    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    records = (
        db.execute(
            stmt.order_by(ShipmentRecord.created_at.desc(), ShipmentRecord.shipment_id.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        )
        .scalars()
        .all()
    )
    items = [
        {**shipment_summary(r), "need_nums": sorted(rel.need_num for rel in r.relations)}
        for r in records
    ]
    return Page(items=items, total=int(total), page=page, limit=limit)


def get_shipment(db: Session, shipment_id: int) -> dict:
    record = db.get(ShipmentRecord, shipment_id)
    if not record:
        raise NotFound(f"Shipment {shipment_id} not found", details={"shipment_id": shipment_id})

    return {
        **shipment_summary(record),
        "lines": [
            {
                "id": ln.id,
                "order_item_id": ln.order_item_id,
                "manual_sentinel": ln.manual_sentinel,
                "need_num": ln.need_num,
                "local_sku": ln.local_sku,
                "amz_sku": ln.amz_sku,
                "country": ln.country,
                "marketplace": ln.marketplace,
                "requested_quantity": ln.requested_quantity,
                "shipped_quantity": ln.shipped_quantity,
                "whole_boxes": ln.whole_boxes,
                "mixed_box_quantity": ln.mixed_box_quantity,
                "allocations": [
                    {
                        "unit_id": a.unit_id,
                        "quantity": a.quantity,
                        "box_type": a.unit.box_type.value,
                        "mix_box_num": a.unit.mix_box_num,
                    }
                    for a in ln.allocations
                ],
            }
            for ln in record.lines
        ],
        "relations": [
            {
                "need_num": rel.need_num,
                "total_requested": rel.total_requested,
                "total_shipped": rel.total_shipped,
                "completion_status": rel.completion_status.value,
                "manual_sentinel": rel.manual_sentinel,
            }
            for rel in record.relations
        ],
    }
