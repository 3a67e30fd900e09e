"""
Passe de réparation : réaligne inventory_units.status sur les quantités.

Trois "statuts attendus" :
    shipped_quantity = 0               -> pending_outbound
    0 < shipped_quantity < total       -> partially_outbound
    shipped_quantity = total           -> fully_outbound (+ shipped_at)

Les unités cancelled sont ignorées. shipped > total est signalé, jamais corrigé.
Idempotente : un second passage sans expédition intermédiaire ne modifie rien.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.db.base import utcnow
from backend.app.db.models.core_types import InventoryStatus
from backend.app.db.models.models_v1 import InventoryUnit
from backend.services.inventory import _append_remark, derive_inventory_status, refresh_unit_status
from backend.services.tx import atomic

logger = logging.getLogger(__name__)


@dataclass
class RepairReport:
    dry_run: bool = False
    scanned: int = 0
    buckets: dict[str, int] = field(
        default_factory=lambda: {
            InventoryStatus.pending_outbound.value: 0,
            InventoryStatus.partially_outbound.value: 0,
            InventoryStatus.fully_outbound.value: 0,
        }
    )
    fixes: list[dict] = field(default_factory=list)
    violations: list[dict] = field(default_factory=list)

    @property
    def fixed(self) -> int:
        return 0 if self.dry_run else len(self.fixes)

    def as_dict(self) -> dict:
        return {
            "dry_run": self.dry_run,
            "scanned": self.scanned,
            "buckets": dict(self.buckets),
            "mismatches": len(self.fixes),
            "fixed": self.fixed,
            "fixes": self.fixes,
            "violations": self.violations,
        }


class _DryRunRollback(Exception):
    pass


def _scan(db: Session, report: RepairReport) -> None:
    units = (
        db.execute(
            select(InventoryUnit)
            .where(InventoryUnit.status != InventoryStatus.cancelled)
            .order_by(InventoryUnit.id)
            .with_for_update()
        )
        .scalars()
        .all()
    )
    now = utcnow()
    for unit in units:
        report.scanned += 1
        if unit.shipped_quantity > unit.total_quantity:
            report.violations.append(
                {
                    "unit_id": unit.id,
                    "sku": unit.sku,
                    "country": unit.country,
                    "shipped_quantity": unit.shipped_quantity,
                    "total_quantity": unit.total_quantity,
                }
            )
            continue

        expected = derive_inventory_status(unit.shipped_quantity, unit.total_quantity)
        report.buckets[expected.value] += 1
        if expected == unit.status:
            continue

        before = unit.status
        refresh_unit_status(unit, now)
        _append_remark(unit, f"status repaired {before.value} -> {expected.value}", now)
        report.fixes.append(
            {
                "unit_id": unit.id,
                "sku": unit.sku,
                "country": unit.country,
                "from": before.value,
                "to": expected.value,
                "shipped_quantity": unit.shipped_quantity,
                "total_quantity": unit.total_quantity,
            }
        )


def check_and_fix_status_consistency(db: Session, dry_run: bool = False) -> RepairReport:
    report = RepairReport(dry_run=dry_run)
    try:
        with atomic(db, operation="consistency_repair"):
            _scan(db, report)
            if dry_run:
                # même chemin de code, puis ROLLBACK
                raise _DryRunRollback
    except _DryRunRollback:
        pass

    if report.violations:
        logger.warning("consistency repair: %d units with shipped > total", len(report.violations))
    logger.info(
        "consistency repair%s: scanned=%d mismatches=%d fixed=%d",
        " (dry run)" if dry_run else "",
        report.scanned,
        len(report.fixes),
        report.fixed,
    )
    return report
