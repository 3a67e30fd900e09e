from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Iterable

from sqlalchemy import case, distinct, func, select, update
from sqlalchemy.orm import Session

from backend.app.db.base import utcnow
from backend.app.db.models.core_types import BoxType, InventoryStatus
from backend.app.db.models.models_v1 import InventoryUnit
from backend.services.errors import (
    InsufficientAtomicity,
    InsufficientStock,
    NotFound,
    ValidationError,
)
from backend.services.tx import atomic

logger = logging.getLogger(__name__)

# Seules ces unités comptent dans le stock disponible
ALLOCATABLE_STATUSES = (InventoryStatus.pending_outbound, InventoryStatus.partially_outbound)


def derive_inventory_status(shipped_quantity: int, total_quantity: int, cancelled: bool = False) -> InventoryStatus:
    """
    Fonction pure : le statut d'une unité découle de ses quantités.
    cancelled est terminal et l'emporte sur tout le reste.
    """
    if cancelled:
        return InventoryStatus.cancelled
    if shipped_quantity <= 0:
        return InventoryStatus.pending_outbound
    if shipped_quantity < total_quantity:
        return InventoryStatus.partially_outbound
    return InventoryStatus.fully_outbound


def refresh_unit_status(unit: InventoryUnit, now: datetime | None = None) -> bool:
    """Réaligne status/shipped_at sur les quantités. Retourne True si modifié."""
    cancelled = unit.status == InventoryStatus.cancelled
    expected = derive_inventory_status(unit.shipped_quantity, unit.total_quantity, cancelled)
    if expected == unit.status:
        return False

    now = now or utcnow()
    if expected == InventoryStatus.fully_outbound:
        unit.shipped_at = now
    elif unit.status == InventoryStatus.fully_outbound:
        unit.shipped_at = None
    unit.status = expected
    unit.last_updated_at = now
    return True


def _append_remark(unit: InventoryUnit, note: str, now: datetime | None = None) -> None:
    now = now or utcnow()
    line = f"{now.isoformat(timespec='seconds')} {note}"
    unit.remark = f"{unit.remark};\n{line}" if unit.remark else line


# ---------- CALCUL DE DISPONIBILITÉ ----------
@dataclass(frozen=True)
class Availability:
    sku: str
    country: str
    whole_box_quantity: int = 0
    whole_box_count: int = 0
    mixed_box_quantity: int = 0

    @property
    def total_available(self) -> int:
        return self.whole_box_quantity + self.mixed_box_quantity

    def as_dict(self) -> dict:
        return {**asdict(self), "total_available": self.total_available}


def compute_availability(db: Session, sku: str, country: str) -> Availability:
    """
    Stock disponible pour (sku, country), recalculé à chaque appel.

    Règle :
        available = total_quantity - shipped_quantity
        sur les unités pending_outbound / partially_outbound, available > 0,
        cumul séparé entier / mixte.
    """
    units = (
        db.execute(
            select(InventoryUnit)
            .where(InventoryUnit.sku == sku)
            .where(InventoryUnit.country == country)
            .where(InventoryUnit.status.in_(ALLOCATABLE_STATUSES))
        )
        .scalars()
        .all()
    )

    whole_qty = whole_boxes = mixed_qty = 0
    for u in units:
        available = u.total_quantity - u.shipped_quantity
        if available <= 0:
            continue
        if u.box_type == BoxType.whole_box:
            whole_qty += available
            whole_boxes += u.total_boxes
        else:
            mixed_qty += available

    return Availability(
        sku=sku,
        country=country,
        whole_box_quantity=whole_qty,
        whole_box_count=whole_boxes,
        mixed_box_quantity=mixed_qty,
    )


def compute_shortage(remaining_quantity: int, availability: Availability) -> int:
    return max(0, remaining_quantity - availability.total_available)


# ---------- ALLOCATION ----------
def allocatable_units(db: Session, sku: str, country: str, *, lock: bool = False) -> list[InventoryUnit]:
    stmt = (
        select(InventoryUnit)
        .where(InventoryUnit.sku == sku)
        .where(InventoryUnit.country == country)
        .where(InventoryUnit.status.in_(ALLOCATABLE_STATUSES))
        .where(InventoryUnit.shipped_quantity < InventoryUnit.total_quantity)
        .order_by(InventoryUnit.packed_at.asc(), InventoryUnit.id.asc())
    )
    if lock:
        stmt = stmt.with_for_update()
    return list(db.execute(stmt).scalars().all())


def plan_allocation(
    units: Iterable[InventoryUnit],
    quantity: int,
    *,
    prefer_mix_box: str | None = None,
) -> list[tuple[InventoryUnit, int]]:
    """
    Répartit `quantity` sur les unités disponibles.

    Ordre : caisse mixte demandée (prefer_mix_box) > caisses entières > caisses mixtes,
    FIFO (packed_at) à l'intérieur de chaque groupe.
    Lève InsufficientStock si le total disponible ne suffit pas.
    """

    def rank(u: InventoryUnit) -> int:
        if prefer_mix_box and u.mix_box_num == prefer_mix_box:
            return 0
        return 1 if u.box_type == BoxType.whole_box else 2

    # sorted() est stable : l'ordre FIFO de la requête est conservé dans chaque groupe
    ordered = sorted(units, key=rank)

    plan: list[tuple[InventoryUnit, int]] = []
    remaining = quantity
    for u in ordered:
        if remaining <= 0:
            break
        available = u.total_quantity - u.shipped_quantity
        if available <= 0:
            continue
        take = min(available, remaining)
        plan.append((u, take))
        remaining -= take

    if remaining > 0:
        details = {"missing": remaining, "requested": quantity, "available": quantity - remaining}
        raise InsufficientStock(
            f"Insufficient available stock (missing={remaining})",
            details=details,
        )
    return plan


def boxes_for(unit: InventoryUnit, quantity: int) -> int:
    """Nombre de caisses entières représentées par `quantity` pièces de cette unité."""
    if unit.box_type != BoxType.whole_box or unit.total_boxes <= 0:
        return 0
    return math.ceil(quantity * unit.total_boxes / unit.total_quantity)


def apply_allocation(db: Session, unit_id: int, quantity: int, *, note: str) -> InventoryUnit:
    """
    Incrémente shipped_quantity par UPDATE conditionnel :
    la garde `shipped + q <= total` est réévaluée par la base au moment de l'écriture.
    """
    db.flush()
    result = db.execute(
        update(InventoryUnit)
        .where(InventoryUnit.id == unit_id)
        .where(InventoryUnit.status.in_(ALLOCATABLE_STATUSES))
        .where(InventoryUnit.shipped_quantity + quantity <= InventoryUnit.total_quantity)
        .values(shipped_quantity=InventoryUnit.shipped_quantity + quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InsufficientAtomicity(
            f"Inventory unit {unit_id} changed concurrently, retry the shipment",
            details={"unit_id": unit_id, "quantity": quantity},
        )

    unit = db.get(InventoryUnit, unit_id)
    db.refresh(unit)
    refresh_unit_status(unit)
    _append_remark(unit, note)
    return unit


def release_allocation(db: Session, unit_id: int, quantity: int, *, note: str) -> InventoryUnit:
    """Inverse exact de apply_allocation (annulation d'expédition)."""
    db.flush()
    result = db.execute(
        update(InventoryUnit)
        .where(InventoryUnit.id == unit_id)
        .where(InventoryUnit.shipped_quantity >= quantity)
        .values(shipped_quantity=InventoryUnit.shipped_quantity - quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InsufficientAtomicity(
            f"Inventory unit {unit_id} cannot be restored by {quantity}",
            details={"unit_id": unit_id, "quantity": quantity},
        )

    unit = db.get(InventoryUnit, unit_id)
    db.refresh(unit)
    refresh_unit_status(unit)
    _append_remark(unit, note)
    return unit


# ---------- ENTRÉES EN STOCK ----------
def _require_text(value: str | None, field: str) -> str:
    if not value or not value.strip():
        raise ValidationError(f"{field} is required", details={"field": field})
    return value.strip()


def create_inventory_unit(
    db: Session,
    *,
    sku: str,
    country: str,
    quantity: int,
    boxes: int,
    operator: str,
    packer: str | None = None,
    marketplace: str | None = None,
    remark: str | None = None,
) -> InventoryUnit:
    """Entrée d'une palette de caisses entières (un seul SKU par caisse)."""
    sku = _require_text(sku, "sku")
    country = _require_text(country, "country")
    if quantity <= 0:
        raise ValidationError("quantity must be > 0", details={"quantity": quantity})
    if boxes <= 0:
        raise ValidationError("boxes must be > 0", details={"boxes": boxes})

    with atomic(db, operation="create_inventory_unit"):
        unit = InventoryUnit(
            sku=sku,
            country=country,
            marketplace=marketplace,
            box_type=BoxType.whole_box,
            total_quantity=quantity,
            total_boxes=boxes,
            shipped_quantity=0,
            status=InventoryStatus.pending_outbound,
            operator=operator,
            packer=packer,
        )
        _append_remark(unit, remark or f"packed by {operator}")
        db.add(unit)
        db.flush()

    logger.info("inventory unit %s created sku=%s country=%s qty=%s", unit.id, sku, country, quantity)
    return unit


def create_mixed_box(
    db: Session,
    *,
    mix_box_num: str,
    contents: Iterable[tuple[str, str, int]],
    operator: str,
    packer: str | None = None,
    marketplace: str | None = None,
    remark: str | None = None,
) -> list[InventoryUnit]:
    """Une caisse mixte = une unité par SKU, toutes partageant `mix_box_num`."""
    mix_box_num = _require_text(mix_box_num, "mix_box_num")
    contents = list(contents)
    if not contents:
        raise ValidationError("a mixed box needs at least one SKU")

    for sku, country, qty in contents:
        _require_text(sku, "sku")
        _require_text(country, "country")
        if qty <= 0:
            raise ValidationError("quantity must be > 0", details={"sku": sku, "quantity": qty})

    with atomic(db, operation="create_mixed_box"):
        units = []
        for sku, country, qty in contents:
            unit = InventoryUnit(
                sku=sku.strip(),
                country=country.strip(),
                marketplace=marketplace,
                box_type=BoxType.mixed_box,
                mix_box_num=mix_box_num,
                total_quantity=qty,
                total_boxes=1,
                shipped_quantity=0,
                status=InventoryStatus.pending_outbound,
                operator=operator,
                packer=packer,
            )
            _append_remark(unit, remark or f"packed in mixed box {mix_box_num} by {operator}")
            db.add(unit)
            units.append(unit)
        db.flush()

    logger.info("mixed box %s created with %d skus", mix_box_num, len(units))
    return units


def cancel_inventory_unit(db: Session, unit_id: int, *, operator: str, reason: str | None = None) -> InventoryUnit:
    with atomic(db, operation="cancel_inventory_unit"):
        unit = (
            db.execute(select(InventoryUnit).where(InventoryUnit.id == unit_id).with_for_update())
            .scalar_one_or_none()
        )
        if not unit:
            raise NotFound(f"Inventory unit {unit_id} not found", details={"unit_id": unit_id})
        if unit.status == InventoryStatus.cancelled:
            return unit
        if unit.shipped_quantity > 0:
            raise ValidationError(
                "Only units with nothing shipped can be cancelled",
                details={"unit_id": unit_id, "shipped_quantity": unit.shipped_quantity},
            )
        unit.status = InventoryStatus.cancelled
        unit.last_updated_at = utcnow()
        _append_remark(unit, f"cancelled by {operator}" + (f": {reason}" if reason else ""))

    logger.info("inventory unit %s cancelled by %s", unit_id, operator)
    return unit


def pending_inventory_summary(
    db: Session,
    *,
    sku: str | None = None,
    country: str | None = None,
    box_type: BoxType | None = None,
) -> list[dict]:
    """Stock encore disponible, agrégé par (sku, country)."""
    available = InventoryUnit.total_quantity - InventoryUnit.shipped_quantity
    is_whole = InventoryUnit.box_type == BoxType.whole_box

    stmt = (
        select(
            InventoryUnit.sku,
            InventoryUnit.country,
            func.coalesce(func.sum(case((is_whole, available), else_=0)), 0).label("whole_box_quantity"),
            func.coalesce(func.sum(case((is_whole, InventoryUnit.total_boxes), else_=0)), 0).label("whole_box_count"),
            func.coalesce(func.sum(case((is_whole, 0), else_=available)), 0).label("mixed_box_quantity"),
            func.count(distinct(case((is_whole, None), else_=InventoryUnit.mix_box_num))).label("mixed_box_count"),
            func.min(InventoryUnit.packed_at).label("earliest_packed_at"),
        )
        .where(InventoryUnit.status.in_(ALLOCATABLE_STATUSES))
        .where(available > 0)
        .group_by(InventoryUnit.sku, InventoryUnit.country)
        .order_by(InventoryUnit.sku, InventoryUnit.country)
    )
    if sku:
        stmt = stmt.where(InventoryUnit.sku.like(f"%{sku}%"))
    if country:
        stmt = stmt.where(InventoryUnit.country == country)
    if box_type:
        stmt = stmt.where(InventoryUnit.box_type == box_type)

    rows = db.execute(stmt).all()
    return [
        {
            "sku": r.sku,
            "country": r.country,
            "whole_box_quantity": int(r.whole_box_quantity),
            "whole_box_count": int(r.whole_box_count),
            "mixed_box_quantity": int(r.mixed_box_quantity),
            "mixed_box_count": int(r.mixed_box_count),
            "total_available": int(r.whole_box_quantity) + int(r.mixed_box_quantity),
            "earliest_packed_at": r.earliest_packed_at,
        }
        for r in rows
    ]
