"""
Registre des besoins (demand lines groupées par need_num).

Règle de vérité :
    shipped_quantity   = SUM(shipment_lines.shipped_quantity) de la ligne
    remaining_quantity = quantity - shipped_quantity
    effective_status   = dérivé de ces deux valeurs, JAMAIS du champ `status` stocké
                         (le champ stocké n'est qu'un marqueur d'audit : pending / cancelled)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from backend.app.db.models.core_types import DemandStatus, FulfillmentStatus
from backend.app.db.models.models_v1 import (
    DemandLine,
    OrderShipmentRelation,
    ShipmentLine,
    ShipmentRecord,
)
from backend.services.errors import HasShipments, InvalidQuantity, NotFound, ValidationError
from backend.services.inventory import compute_availability, compute_shortage
from backend.services.notifications import BatchSummary, Dispatch
from backend.services.numbering import next_need_num
from backend.services.paging import Page, clamp_page
from backend.services.tx import atomic

logger = logging.getLogger(__name__)


def effective_status(quantity: int, shipped_quantity: int) -> FulfillmentStatus:
    if shipped_quantity <= 0:
        return FulfillmentStatus.pending
    if shipped_quantity < quantity:
        return FulfillmentStatus.partially_fulfilled
    return FulfillmentStatus.fully_fulfilled


@dataclass(frozen=True)
class DemandLineView:
    record_num: int
    need_num: str
    sku: str
    quantity: int
    country: str
    marketplace: str
    shipping_method: str
    deadline: date | None
    status: DemandStatus
    created_by: str
    created_at: datetime
    shipped_quantity: int

    @property
    def remaining_quantity(self) -> int:
        return self.quantity - self.shipped_quantity

    @property
    def effective_status(self) -> FulfillmentStatus:
        return effective_status(self.quantity, self.shipped_quantity)

    @classmethod
    def build(cls, line: DemandLine, shipped_quantity: int) -> "DemandLineView":
        return cls(
            record_num=line.record_num,
            need_num=line.need_num,
            sku=line.sku,
            quantity=line.quantity,
            country=line.country,
            marketplace=line.marketplace,
            shipping_method=line.shipping_method,
            deadline=line.deadline,
            status=line.status,
            created_by=line.created_by,
            created_at=line.created_at,
            shipped_quantity=shipped_quantity,
        )

    def as_dict(self) -> dict:
        return {
            "record_num": self.record_num,
            "need_num": self.need_num,
            "sku": self.sku,
            "quantity": self.quantity,
            "country": self.country,
            "marketplace": self.marketplace,
            "shipping_method": self.shipping_method,
            "deadline": self.deadline,
            "status": self.status.value,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "shipped_quantity": self.shipped_quantity,
            "remaining_quantity": self.remaining_quantity,
            "effective_status": self.effective_status.value,
        }


@dataclass(frozen=True)
class CandidateLine:
    sku: str
    quantity: int


# ---------- LECTURES ----------
def shipped_by_record(db: Session, record_nums: Iterable[int]) -> dict[int, int]:
    record_nums = sorted({int(r) for r in record_nums if r is not None})
    if not record_nums:
        return {}
    rows = db.execute(
        select(
            ShipmentLine.order_item_id,
            func.coalesce(func.sum(ShipmentLine.shipped_quantity), 0),
        )
        .where(ShipmentLine.order_item_id.in_(record_nums))
        .group_by(ShipmentLine.order_item_id)
    ).all()
    return {int(rid): int(qty) for rid, qty in rows}


def get_line(db: Session, record_num: int, *, lock: bool = False) -> DemandLine:
    stmt = select(DemandLine).where(DemandLine.record_num == record_num)
    if lock:
        stmt = stmt.with_for_update()
    line = db.execute(stmt).scalar_one_or_none()
    if not line:
        raise NotFound(f"Demand line {record_num} not found", details={"record_num": record_num})
    return line


def get_line_view(db: Session, record_num: int) -> DemandLineView:
    line = get_line(db, record_num)
    return DemandLineView.build(line, shipped_by_record(db, [record_num]).get(record_num, 0))


# ---------- CRÉATION ----------
def validate_batch_fields(country: str | None, marketplace: str | None, shipping_method: str | None) -> None:
    missing = [
        name
        for name, value in (("country", country), ("marketplace", marketplace), ("shipping_method", shipping_method))
        if not value or not str(value).strip()
    ]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", details={"missing": missing})


def validate_candidates(lines: Iterable[CandidateLine]) -> list[CandidateLine]:
    """Contrôle et normalise les lignes candidates (sku sans espaces)."""
    lines = list(lines)
    if not lines:
        raise ValidationError("At least one demand line is required")

    out: list[CandidateLine] = []
    seen: set[str] = set()
    for ln in lines:
        sku = (ln.sku or "").strip()
        if not sku:
            raise ValidationError("sku is required", details={"field": "sku"})
        if ln.quantity is None or ln.quantity <= 0:
            raise ValidationError(
                f"quantity must be > 0 for sku {sku}",
                details={"sku": sku, "quantity": ln.quantity},
            )
        if sku in seen:
            raise ValidationError(f"sku {sku} appears twice in the same submission", details={"sku": sku})
        seen.add(sku)
        out.append(CandidateLine(sku=sku, quantity=ln.quantity))
    return out


def insert_batch(
    db: Session,
    lines: list[CandidateLine],
    *,
    country: str,
    marketplace: str,
    shipping_method: str,
    deadline: date | None,
    created_by: str,
) -> tuple[str, list[DemandLine]]:
    """Écrit un lot dans la transaction courante (pas de commit ici)."""
    need_num = next_need_num(db)
    rows = [
        DemandLine(
            need_num=need_num,
            sku=ln.sku.strip(),
            quantity=ln.quantity,
            country=country,
            marketplace=marketplace,
            shipping_method=shipping_method,
            deadline=deadline,
            status=DemandStatus.pending,
            created_by=created_by,
        )
        for ln in lines
    ]
    db.add_all(rows)
    db.flush()
    return need_num, rows


def summarize(need_num: str, rows: list[DemandLine]) -> BatchSummary:
    first = rows[0]
    return BatchSummary(
        need_num=need_num,
        country=first.country,
        marketplace=first.marketplace,
        shipping_method=first.shipping_method,
        created_by=first.created_by,
        deadline=first.deadline,
        lines=tuple((r.sku, r.quantity) for r in rows),
    )


def dispatch_after_commit(dispatch: Dispatch | None, summary: BatchSummary) -> None:
    if dispatch is None:
        return
    try:
        dispatch(summary)
    except Exception as exc:
        logger.warning("could not schedule notification for need_num=%s: %s", summary.need_num, exc)


def create_demand_batch(
    db: Session,
    lines: Iterable[CandidateLine],
    *,
    country: str,
    marketplace: str,
    shipping_method: str,
    created_by: str,
    deadline: date | None = None,
    dispatch: Dispatch | None = None,
) -> str:
    """
    Crée un lot de besoins (une ligne par SKU, même need_num).

    La notification est planifiée APRÈS le commit ; son échec n'annule rien.
    """
    validate_batch_fields(country, marketplace, shipping_method)
    lines = validate_candidates(lines)

    with atomic(db, operation="create_demand_batch"):
        need_num, rows = insert_batch(
            db,
            lines,
            country=country.strip(),
            marketplace=marketplace.strip(),
            shipping_method=shipping_method.strip(),
            deadline=deadline,
            created_by=created_by,
        )

    logger.info("demand batch %s created with %d lines by %s", need_num, len(rows), created_by)
    dispatch_after_commit(dispatch, summarize(need_num, rows))
    return need_num


# ---------- MODIFICATIONS ----------
def set_demand_quantity(db: Session, record_num: int, new_quantity: int) -> DemandLineView:
    if new_quantity is None or new_quantity <= 0:
        raise ValidationError("quantity must be > 0", details={"quantity": new_quantity})

    with atomic(db, operation="set_demand_quantity"):
        line = get_line(db, record_num, lock=True)
        shipped = shipped_by_record(db, [record_num]).get(record_num, 0)
        if new_quantity < shipped:
            raise InvalidQuantity(
                f"quantity ({new_quantity}) cannot be lower than shipped quantity ({shipped})",
                details={"record_num": record_num, "quantity": new_quantity, "shipped_quantity": shipped},
            )
        old = line.quantity
        line.quantity = new_quantity
        db.flush()
        view = DemandLineView.build(line, shipped)

    logger.info("demand line %s quantity %s -> %s", record_num, old, new_quantity)
    return view


def delete_demand_batch(db: Session, need_num: str) -> int:
    with atomic(db, operation="delete_demand_batch"):
        lines = (
            db.execute(select(DemandLine).where(DemandLine.need_num == need_num).with_for_update())
            .scalars()
            .all()
        )
        if not lines:
            raise NotFound(f"Demand batch {need_num} not found", details={"need_num": need_num})

        shipped = shipped_by_record(db, [ln.record_num for ln in lines])
        blocked = [rid for rid, qty in shipped.items() if qty > 0]
        if blocked:
            raise HasShipments(
                f"Demand batch {need_num} already has shipments, soft-close its lines instead",
                details={"need_num": need_num, "record_nums": blocked},
            )
        db.execute(delete(DemandLine).where(DemandLine.need_num == need_num))

    logger.info("demand batch %s deleted (%d lines)", need_num, len(lines))
    return len(lines)


def delete_demand_line(db: Session, record_num: int) -> str:
    """
    Supprime une ligne sans expédition ; sinon la ferme (quantity := shipped_quantity).
    Retourne "deleted" ou "soft_closed".
    """
    with atomic(db, operation="delete_demand_line"):
        line = get_line(db, record_num, lock=True)
        shipped = shipped_by_record(db, [record_num]).get(record_num, 0)
        if shipped == 0:
            db.delete(line)
            outcome = "deleted"
        else:
            line.quantity = shipped
            outcome = "soft_closed"

    logger.info("demand line %s %s", record_num, outcome)
    return outcome


def cancel_demand_line(db: Session, record_num: int, *, operator: str) -> DemandLineView:
    with atomic(db, operation="cancel_demand_line"):
        line = get_line(db, record_num, lock=True)
        line.status = DemandStatus.cancelled
        db.flush()
        view = DemandLineView.build(line, shipped_by_record(db, [record_num]).get(record_num, 0))

    logger.info("demand line %s cancelled by %s", record_num, operator)
    return view


# ---------- REQUÊTES (lecture seule) ----------
def _shipped_subquery():
    return (
        select(
            ShipmentLine.order_item_id.label("record_num"),
            func.sum(ShipmentLine.shipped_quantity).label("shipped"),
        )
        .where(ShipmentLine.order_item_id.is_not(None))
        .group_by(ShipmentLine.order_item_id)
        .subquery()
    )


def list_demand_batches(
    db: Session,
    *,
    page: int | None = None,
    limit: int | None = None,
    status: FulfillmentStatus | None = None,
) -> Page:
    page, limit = clamp_page(page, limit)
    shipped_sq = _shipped_subquery()

    total_quantity = func.sum(DemandLine.quantity)
    total_shipped = func.coalesce(func.sum(func.coalesce(shipped_sq.c.shipped, 0)), 0)

    batches = (
        select(
            DemandLine.need_num,
            func.count(DemandLine.record_num).label("total_items"),
            total_quantity.label("total_quantity"),
            total_shipped.label("total_shipped"),
            func.min(DemandLine.created_at).label("created_at"),
            func.max(DemandLine.updated_at).label("updated_at"),
            func.max(DemandLine.country).label("country"),
            func.max(DemandLine.marketplace).label("marketplace"),
            func.max(DemandLine.shipping_method).label("shipping_method"),
        )
        .outerjoin(shipped_sq, shipped_sq.c.record_num == DemandLine.record_num)
        .group_by(DemandLine.need_num)
    )

    if status == FulfillmentStatus.pending:
        batches = batches.having(total_shipped == 0)
    elif status == FulfillmentStatus.partially_fulfilled:
        batches = batches.having(total_shipped > 0).having(total_shipped < total_quantity)
    elif status == FulfillmentStatus.fully_fulfilled:
        batches = batches.having(total_shipped >= total_quantity)

    total = db.execute(select(func.count()).select_from(batches.subquery())).scalar_one()
    rows = db.execute(
        batches.order_by(func.min(DemandLine.created_at).desc(), DemandLine.need_num.desc())
        .limit(limit)
        .offset((page - 1) * limit)
    ).all()

    history = _shipment_history(db, [r.need_num for r in rows])

    items = []
    for r in rows:
        qty = int(r.total_quantity or 0)
        shipped = int(r.total_shipped or 0)
        hist = history.get(r.need_num, [])
        items.append(
            {
                "need_num": r.need_num,
                "total_items": int(r.total_items),
                "total_quantity": qty,
                "total_shipped": shipped,
                "remaining_quantity": qty - shipped,
                "completion_rate": round(shipped * 100 / qty) if qty > 0 else 0,
                "effective_status": effective_status(qty, shipped).value,
                "created_at": r.created_at,
                "updated_at": r.updated_at,
                "country": r.country,
                "marketplace": r.marketplace,
                "shipping_method": r.shipping_method,
                "shipment_count": len(hist),
                "latest_shipment": hist[0] if hist else None,
            }
        )
    return Page(items=items, total=int(total), page=page, limit=limit)


def _shipment_history(db: Session, need_nums: list[str]) -> dict[str, list[dict]]:
    if not need_nums:
        return {}
    rows = db.execute(
        select(OrderShipmentRelation, ShipmentRecord)
        .join(ShipmentRecord, ShipmentRecord.shipment_id == OrderShipmentRelation.shipment_id)
        .where(OrderShipmentRelation.need_num.in_(need_nums))
        .order_by(ShipmentRecord.created_at.desc(), ShipmentRecord.shipment_id.desc())
    ).all()

    out: dict[str, list[dict]] = {}
    for rel, rec in rows:
        out.setdefault(rel.need_num, []).append(
            {
                "shipment_id": rec.shipment_id,
                "shipment_number": rec.shipment_number,
                "operator": rec.operator,
                "status": rec.status.value,
                "created_at": rec.created_at,
                "total_boxes": rec.total_boxes,
                "total_requested": rel.total_requested,
                "total_shipped": rel.total_shipped,
                "completion_status": rel.completion_status.value,
            }
        )
    return out


def get_demand_batch(db: Session, need_num: str) -> dict:
    """Détail d'un lot : résumé + lignes avec disponibilité/manque + historique."""
    lines = (
        db.execute(select(DemandLine).where(DemandLine.need_num == need_num).order_by(DemandLine.record_num))
        .scalars()
        .all()
    )
    if not lines:
        raise NotFound(f"Demand batch {need_num} not found", details={"need_num": need_num})

    shipped = shipped_by_record(db, [ln.record_num for ln in lines])
    availability = {}
    items = []
    for ln in lines:
        view = DemandLineView.build(ln, shipped.get(ln.record_num, 0))
        key = (ln.sku, ln.country)
        if key not in availability:
            availability[key] = compute_availability(db, ln.sku, ln.country)
        avail = availability[key]
        items.append(
            {
                **view.as_dict(),
                **{k: v for k, v in avail.as_dict().items() if k not in ("sku", "country")},
                "shortage": compute_shortage(view.remaining_quantity, avail),
            }
        )

    total_quantity = sum(ln.quantity for ln in lines)
    total_shipped = sum(shipped.values())
    first = lines[0]
    return {
        "summary": {
            "need_num": need_num,
            "total_items": len(lines),
            "total_quantity": total_quantity,
            "total_shipped": total_shipped,
            "remaining_quantity": total_quantity - total_shipped,
            "completion_rate": round(total_shipped * 100 / total_quantity) if total_quantity else 0,
            "effective_status": effective_status(total_quantity, total_shipped).value,
            "created_at": first.created_at,
            "country": first.country,
            "marketplace": first.marketplace,
            "shipping_method": first.shipping_method,
        },
        "lines": items,
        "shipment_history": _shipment_history(db, [need_num]).get(need_num, []),
    }
