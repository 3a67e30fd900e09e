"""
Résolution des conflits de besoins.

Un conflit = un SKU soumis alors qu'une ligne non annulée du même
(sku, country, marketplace) a encore un reste > 0.

Déroulé :
    1) open_resolution_session  -> session persistée (candidats + conflits), token
    2) resolve_conflict         -> UNE résolution (add / replace / new), UNE transaction,
                                   dans l'ordre de saisie, idempotente par item token
    3) finalize_session         -> nouveau lot (non conflictuels + "new"), ou aucun

submit_demand enchaîne les trois étapes pour un appel "tout en un".
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.core.config import get_settings
from backend.app.db.base import utcnow
from backend.app.db.models.core_types import DemandStatus, Resolution, SessionState
from backend.app.db.models.models_v1 import DemandLine, ResolutionItem, ResolutionSession
from backend.services.demand import (
    CandidateLine,
    create_demand_batch,
    dispatch_after_commit,
    get_line,
    insert_batch,
    shipped_by_record,
    summarize,
    validate_batch_fields,
    validate_candidates,
)
from backend.services.errors import (
    ConflictUnresolved,
    EngineError,
    InsufficientAtomicity,
    InvalidQuantity,
    NotFound,
    ValidationError,
)
from backend.services.notifications import Dispatch
from backend.services.tx import atomic

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Conflict:
    sku: str
    candidate_quantity: int
    existing_record_num: int
    existing_remaining_quantity: int
    matched_record_nums: tuple[int, ...] = ()

    def as_dict(self) -> dict:
        d = asdict(self)
        d["matched_record_nums"] = list(self.matched_record_nums)
        return d


@dataclass
class SubmissionResult:
    need_num: str | None = None
    session_token: str | None = None
    applied: list[dict] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.failed or self.pending)

    def as_dict(self) -> dict:
        return {
            "need_num": self.need_num,
            "session_token": self.session_token,
            "applied": self.applied,
            "failed": self.failed,
            "pending": self.pending,
            "partial": self.partial,
        }


# ---------- DÉTECTION ----------
def detect_conflicts(
    db: Session,
    candidates: Iterable[CandidateLine],
    *,
    country: str,
    marketplace: str,
) -> list[Conflict]:
    """
    Lecture seule. Un conflit par candidat au plus : la cible est la ligne
    la plus ancienne (record_num le plus petit), les autres sont listées.
    """
    candidates = [CandidateLine(sku=c.sku.strip(), quantity=c.quantity) for c in candidates]
    if not candidates:
        return []

    existing = (
        db.execute(
            select(DemandLine)
            .where(DemandLine.sku.in_([c.sku for c in candidates]))
            .where(DemandLine.country == country)
            .where(DemandLine.marketplace == marketplace)
            .where(DemandLine.status != DemandStatus.cancelled)
            .order_by(DemandLine.record_num.asc())
        )
        .scalars()
        .all()
    )
    shipped = shipped_by_record(db, [ln.record_num for ln in existing])

    open_by_sku: dict[str, list[tuple[int, int]]] = {}
    for ln in existing:
        remaining = ln.quantity - shipped.get(ln.record_num, 0)
        if remaining > 0:
            open_by_sku.setdefault(ln.sku, []).append((ln.record_num, remaining))

    conflicts = []
    for c in candidates:
        matches = open_by_sku.get(c.sku)
        if not matches:
            continue
        record_num, remaining = matches[0]
        conflicts.append(
            Conflict(
                sku=c.sku,
                candidate_quantity=c.quantity,
                existing_record_num=record_num,
                existing_remaining_quantity=remaining,
                matched_record_nums=tuple(r for r, _ in matches),
            )
        )
    return conflicts


# ---------- SESSION ----------
def _new_token() -> str:
    return str(uuid.uuid4())


def open_resolution_session(
    db: Session,
    lines: Iterable[CandidateLine],
    *,
    country: str,
    marketplace: str,
    shipping_method: str,
    created_by: str,
    deadline: date | None = None,
) -> ResolutionSession:
    validate_batch_fields(country, marketplace, shipping_method)
    lines = validate_candidates(lines)
    country, marketplace, shipping_method = country.strip(), marketplace.strip(), shipping_method.strip()

    with atomic(db, operation="open_resolution_session"):
        conflicts = {c.sku: c for c in detect_conflicts(db, lines, country=country, marketplace=marketplace)}
        session = ResolutionSession(
            token=_new_token(),
            country=country,
            marketplace=marketplace,
            shipping_method=shipping_method,
            deadline=deadline,
            created_by=created_by,
            state=SessionState.open,
        )
        for position, ln in enumerate(lines):
            conflict = conflicts.get(ln.sku)
            session.items.append(
                ResolutionItem(
                    position=position,
                    token=_new_token(),
                    sku=ln.sku,
                    candidate_quantity=ln.quantity,
                    conflicted=conflict is not None,
                    existing_record_num=conflict.existing_record_num if conflict else None,
                    existing_remaining_quantity=conflict.existing_remaining_quantity if conflict else None,
                    matched_record_nums=list(conflict.matched_record_nums) if conflict else [],
                )
            )
        db.add(session)
        db.flush()

    logger.info(
        "resolution session %s opened with %d candidates (%d conflicts)",
        session.token,
        len(lines),
        len(conflicts),
    )
    return session


def get_session(db: Session, token: str, *, lock: bool = False) -> ResolutionSession:
    stmt = select(ResolutionSession).where(ResolutionSession.token == token)
    if lock:
        stmt = stmt.with_for_update()
    session = db.execute(stmt).scalar_one_or_none()
    if not session:
        raise NotFound(f"Resolution session {token} not found", details={"session_token": token})
    return session


def item_as_dict(item: ResolutionItem) -> dict:
    return {
        "item_token": item.token,
        "position": item.position,
        "sku": item.sku,
        "candidate_quantity": item.candidate_quantity,
        "conflicted": item.conflicted,
        "existing_record_num": item.existing_record_num,
        "existing_remaining_quantity": item.existing_remaining_quantity,
        "matched_record_nums": list(item.matched_record_nums or []),
        "resolution": item.resolution.value if item.resolution else None,
        "result_quantity": item.result_quantity,
        "applied_at": item.applied_at,
        "last_error": item.last_error,
    }


def conflict_items(session: ResolutionSession) -> list[ResolutionItem]:
    return [it for it in session.items if it.conflicted]


def pending_items(session: ResolutionSession) -> list[ResolutionItem]:
    return [it for it in conflict_items(session) if it.resolution is None]


def get_session_state(db: Session, token: str) -> dict:
    session = get_session(db, token)
    pending = pending_items(session)
    return {
        "session_token": session.token,
        "state": session.state.value,
        "country": session.country,
        "marketplace": session.marketplace,
        "shipping_method": session.shipping_method,
        "deadline": session.deadline,
        "created_by": session.created_by,
        "need_num": session.need_num,
        "items": [item_as_dict(it) for it in session.items],
        "next_item_token": pending[0].token if pending else None,
        "ready_to_finalize": session.state == SessionState.open and not pending,
    }


# ---------- RÉSOLUTION ----------
def _apply_resolution(db: Session, item: ResolutionItem, choice: Resolution) -> int | None:
    """Écrit la résolution sur la ligne existante. Retourne la nouvelle quantité."""
    if choice == Resolution.new:
        return None

    line = get_line(db, item.existing_record_num, lock=True)
    if line.status == DemandStatus.cancelled:
        raise ValidationError(
            f"Demand line {line.record_num} was cancelled, choose 'new' instead",
            details={"record_num": line.record_num, "sku": item.sku},
        )
    shipped = shipped_by_record(db, [line.record_num]).get(line.record_num, 0)

    if choice == Resolution.add:
        new_quantity = line.quantity + item.candidate_quantity
    else:
        new_quantity = item.candidate_quantity
        if new_quantity < shipped:
            raise InvalidQuantity(
                f"replace quantity ({new_quantity}) is lower than shipped quantity ({shipped})",
                details={
                    "record_num": line.record_num,
                    "sku": item.sku,
                    "quantity": new_quantity,
                    "shipped_quantity": shipped,
                },
            )
    line.quantity = new_quantity
    return new_quantity


def _record_failure(db: Session, item_id: int | None, message: str) -> None:
    if item_id is None:
        return
    with atomic(db, operation="record_resolution_failure"):
        item = db.get(ResolutionItem, item_id)
        if item is not None:
            item.last_error = message


def resolve_conflict(db: Session, token: str, item_token: str, choice: Resolution | str) -> ResolutionItem:
    """
    Applique UNE résolution dans sa propre transaction.

    - rejouer le même choix sur le même item renvoie le résultat déjà enregistré
    - les items se résolvent strictement dans l'ordre de saisie
    - échec transitoire (InsufficientAtomicity) : nouvelle tentative, au plus
      RESOLUTION_RETRY_ATTEMPTS fois
    """
    try:
        choice = Resolution(choice)
    except ValueError:
        raise ValidationError(
            f"Unknown resolution {choice!r}",
            details={"allowed": [r.value for r in Resolution]},
        ) from None

    retries = get_settings().RESOLUTION_RETRY_ATTEMPTS
    attempt = 0
    while True:
        applying = False
        try:
            with atomic(db, operation="resolve_conflict"):
                session = get_session(db, token, lock=True)
                item = next((it for it in session.items if it.token == item_token), None)
                if item is None:
                    raise NotFound(
                        f"Item {item_token} not found in session {token}",
                        details={"session_token": token, "item_token": item_token},
                    )
                if not item.conflicted:
                    raise ValidationError(
                        f"sku {item.sku} has no conflict to resolve",
                        details={"item_token": item_token, "sku": item.sku},
                    )

                if item.resolution is not None:
                    if item.resolution != choice:
                        raise ValidationError(
                            f"sku {item.sku} was already resolved with '{item.resolution.value}'",
                            details={"item_token": item_token, "resolution": item.resolution.value},
                        )
                    return item

                if session.state != SessionState.open:
                    raise ValidationError(
                        f"Resolution session {token} is already finalized",
                        details={"session_token": token},
                    )

                expected = pending_items(session)[0]
                if expected.token != item_token:
                    raise ValidationError(
                        f"Resolve sku {expected.sku} first (input order)",
                        details={"expected_item_token": expected.token, "sku": expected.sku},
                    )

                applying = True
                item.result_quantity = _apply_resolution(db, item, choice)
                item.resolution = choice
                item.applied_at = utcnow()
                item.last_error = None
                db.flush()
            break
        except InsufficientAtomicity as exc:
            if attempt >= retries:
                _record_failure(db, _item_id(db, item_token), exc.message)
                raise
            attempt += 1
            logger.warning("resolve_conflict %s retry %d/%d", item_token, attempt, retries)
        except (InvalidQuantity, ValidationError) as exc:
            # seules les erreurs d'écriture sont mémorisées sur l'item
            if applying:
                _record_failure(db, _item_id(db, item_token), exc.message)
            raise

    logger.info(
        "conflict %s resolved: sku=%s choice=%s record_num=%s quantity=%s",
        item_token,
        item.sku,
        choice.value,
        item.existing_record_num,
        item.result_quantity,
    )
    return item


def _item_id(db: Session, item_token: str) -> int | None:
    return db.execute(select(ResolutionItem.id).where(ResolutionItem.token == item_token)).scalar_one_or_none()


# ---------- FINALISATION ----------
def finalize_session(db: Session, token: str, *, dispatch: Dispatch | None = None) -> str | None:
    """
    Crée le lot final (non conflictuels + "new"). Retourne son need_num,
    ou None si cet ensemble est vide. Rejouable : une session finalisée
    renvoie le même résultat.
    """
    with atomic(db, operation="finalize_session"):
        session = get_session(db, token, lock=True)
        if session.state == SessionState.finalized:
            return session.need_num

        pending = pending_items(session)
        if pending:
            raise ConflictUnresolved(
                f"{len(pending)} conflict(s) still unresolved",
                conflicts=[item_as_dict(it) for it in pending],
                session_token=token,
            )

        candidates = [
            CandidateLine(sku=it.sku, quantity=it.candidate_quantity)
            for it in session.items
            if not it.conflicted or it.resolution == Resolution.new
        ]
        rows = []
        if candidates:
            session.need_num, rows = insert_batch(
                db,
                candidates,
                country=session.country,
                marketplace=session.marketplace,
                shipping_method=session.shipping_method,
                deadline=session.deadline,
                created_by=session.created_by,
            )
        session.state = SessionState.finalized
        session.finalized_at = utcnow()
        need_num = session.need_num
        summary = summarize(need_num, rows) if rows else None

    logger.info("resolution session %s finalized, need_num=%s", token, need_num)
    if summary is not None:
        dispatch_after_commit(dispatch, summary)
    return need_num


# ---------- TOUT EN UN ----------
def submit_demand(
    db: Session,
    lines: Iterable[CandidateLine],
    *,
    country: str,
    marketplace: str,
    shipping_method: str,
    created_by: str,
    deadline: date | None = None,
    resolutions: Mapping[str, Resolution | str] | None = None,
    dispatch: Dispatch | None = None,
) -> SubmissionResult:
    """
    Sans conflit : création directe du lot.
    Avec conflits et sans résolutions (ou résolutions incomplètes) :
        ConflictUnresolved avec la liste et le token de session.
    Avec résolutions (clé = sku) : application séquentielle, arrêt au premier
    échec -> rapport partiel (partial=True), la session reste ouverte.
    """
    validate_batch_fields(country, marketplace, shipping_method)
    lines = validate_candidates(lines)

    conflicts = detect_conflicts(db, lines, country=country.strip(), marketplace=marketplace.strip())
    if not conflicts:
        need_num = create_demand_batch(
            db,
            lines,
            country=country,
            marketplace=marketplace,
            shipping_method=shipping_method,
            created_by=created_by,
            deadline=deadline,
            dispatch=dispatch,
        )
        return SubmissionResult(need_num=need_num)

    session = open_resolution_session(
        db,
        lines,
        country=country,
        marketplace=marketplace,
        shipping_method=shipping_method,
        created_by=created_by,
        deadline=deadline,
    )
    token = session.token
    items = conflict_items(session)

    resolutions = {sku.strip(): choice for sku, choice in (resolutions or {}).items()}
    missing = [it for it in items if it.sku not in resolutions]
    if missing:
        raise ConflictUnresolved(
            f"{len(missing)} conflict(s) need a resolution",
            conflicts=[item_as_dict(it) for it in missing],
            session_token=token,
        )

    result = SubmissionResult(session_token=token)
    plan = [(it.token, it.sku, resolutions[it.sku]) for it in items]
    for index, (item_token, sku, choice) in enumerate(plan):
        try:
            item = resolve_conflict(db, token, item_token, choice)
        except EngineError as exc:
            logger.warning("submission %s stopped at sku=%s: %s", token, sku, exc.message)
            result.failed.append({"sku": sku, "item_token": item_token, "error": exc.to_dict()})
            result.pending = [s for _, s, _ in plan[index + 1 :]]
            return result
        result.applied.append(
            {
                "sku": sku,
                "item_token": item_token,
                "resolution": item.resolution.value,
                "record_num": item.existing_record_num,
                "quantity": item.result_quantity,
            }
        )

    result.need_num = finalize_session(db, token, dispatch=dispatch)
    return result
