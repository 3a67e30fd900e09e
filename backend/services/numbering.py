from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.db.base import utcnow
from backend.app.db.models.models_v1 import NumberSequence

NEED_SCOPE = "need"
SHIPMENT_SCOPE = "shipment"


def next_sequence(db: Session, scope: str, day: str) -> int:
    """
    Incrémente le compteur (scope, jour) sous verrou de ligne (FOR UPDATE).
    Appelé dans la transaction de l'opération qui consomme le numéro.
    """
    seq = (
        db.execute(
            select(NumberSequence)
            .where(NumberSequence.scope == scope)
            .where(NumberSequence.day == day)
            .with_for_update()
        )
        .scalar_one_or_none()
    )
    if not seq:
        seq = NumberSequence(scope=scope, day=day, last_value=0)
        db.add(seq)
        db.flush()

    seq.last_value += 1
    db.flush()
    return seq.last_value


def next_need_num(db: Session, now: datetime | None = None) -> str:
    # 20261019 + 001
    now = now or utcnow()
    day = now.strftime("%Y%m%d")
    return f"{day}{next_sequence(db, NEED_SCOPE, day):03d}"


def next_shipment_number(db: Session, now: datetime | None = None) -> str:
    # SH261019 + 0001
    now = now or utcnow()
    day = now.strftime("%Y%m%d")
    return f"SH{now.strftime('%y%m%d')}{next_sequence(db, SHIPMENT_SCOPE, day):04d}"
