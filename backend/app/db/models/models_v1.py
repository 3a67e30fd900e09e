from __future__ import annotations

from datetime import datetime, date

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.db.base import Base, BigIntPK, utcnow
from backend.app.db.models.core_types import (
    BoxType,
    CompletionStatus,
    DemandStatus,
    InventoryStatus,
    Resolution,
    SessionState,
    ShipmentStatus,
)


# ---------- DEMANDE ----------
class DemandLine(Base):
    """
    Une ligne de besoin (un SKU) dans un lot `need_num`.

    shipped_quantity / remaining_quantity / statut effectif ne sont PAS stockés :
    ils sont recalculés à partir des shipment_lines (voir backend.services.demand).
    """

    __tablename__ = "demand_lines"
    record_num: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    need_num: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    sku: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    country: Mapped[str] = mapped_column(String(64), nullable=False)
    marketplace: Mapped[str] = mapped_column(String(64), nullable=False)
    shipping_method: Mapped[str] = mapped_column(String(64), nullable=False)
    deadline: Mapped[date | None] = mapped_column(Date)
    status: Mapped[DemandStatus] = mapped_column(
        Enum(DemandStatus, name="demand_status"),
        default=DemandStatus.pending,
        nullable=False,
    )
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_demand_quantity_pos"),
        Index("ix_demand_sku_country_marketplace", "sku", "country", "marketplace"),
    )


# ---------- STOCK EMBALLÉ ----------
class InventoryUnit(Base):
    __tablename__ = "inventory_units"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    sku: Mapped[str] = mapped_column(String(64), nullable=False)
    country: Mapped[str] = mapped_column(String(64), nullable=False)
    marketplace: Mapped[str | None] = mapped_column(String(64))
    box_type: Mapped[BoxType] = mapped_column(
        Enum(BoxType, name="box_type"), default=BoxType.whole_box, nullable=False
    )
    mix_box_num: Mapped[str | None] = mapped_column(String(64), index=True)

    total_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    total_boxes: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    shipped_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[InventoryStatus] = mapped_column(
        Enum(InventoryStatus, name="inventory_status"),
        default=InventoryStatus.pending_outbound,
        nullable=False,
    )

    operator: Mapped[str | None] = mapped_column(String(64))
    packer: Mapped[str | None] = mapped_column(String(64))
    packed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    shipped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )
    remark: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        CheckConstraint("total_quantity > 0", name="ck_unit_total_pos"),
        CheckConstraint("total_boxes >= 0", name="ck_unit_boxes_nonneg"),
        CheckConstraint("shipped_quantity >= 0", name="ck_unit_shipped_nonneg"),
        CheckConstraint("shipped_quantity <= total_quantity", name="ck_unit_shipped_le_total"),
        Index("ix_unit_sku_country_status", "sku", "country", "status"),
    )

    @property
    def available_quantity(self) -> int:
        return self.total_quantity - self.shipped_quantity


# ---------- EXPÉDITIONS ----------
class ShipmentRecord(Base):
    __tablename__ = "shipment_records"
    shipment_id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    shipment_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    operator: Mapped[str] = mapped_column(String(64), nullable=False)
    total_boxes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[ShipmentStatus] = mapped_column(
        Enum(ShipmentStatus, name="shipment_status"),
        default=ShipmentStatus.preparing,
        nullable=False,
    )
    shipping_method: Mapped[str | None] = mapped_column(String(64))
    logistics_provider: Mapped[str | None] = mapped_column(String(128))
    remark: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    lines: Mapped[list["ShipmentLine"]] = relationship(
        back_populates="shipment", cascade="all, delete-orphan", order_by="ShipmentLine.id"
    )
    relations: Mapped[list["OrderShipmentRelation"]] = relationship(
        back_populates="shipment", cascade="all, delete-orphan", order_by="OrderShipmentRelation.id"
    )

    __table_args__ = (Index("ix_shipment_records_created", "created_at"),)


class ShipmentLine(Base):
    __tablename__ = "shipment_lines"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    shipment_id: Mapped[int] = mapped_column(
        ForeignKey("shipment_records.shipment_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # NULL = expédition manuelle (aucune ligne de besoin derrière)
    order_item_id: Mapped[int | None] = mapped_column(
        ForeignKey("demand_lines.record_num", ondelete="RESTRICT"),
        index=True,
    )
    # Valeur d'origine envoyée par le client (<= 0), gardée pour audit
    manual_sentinel: Mapped[int | None] = mapped_column(Integer)
    need_num: Mapped[str] = mapped_column(String(64), nullable=False)
    local_sku: Mapped[str] = mapped_column(String(64), nullable=False)
    amz_sku: Mapped[str] = mapped_column(String(64), nullable=False)
    country: Mapped[str] = mapped_column(String(64), nullable=False)
    marketplace: Mapped[str | None] = mapped_column(String(64))
    requested_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    shipped_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    whole_boxes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    mixed_box_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    shipment: Mapped[ShipmentRecord] = relationship(back_populates="lines")
    allocations: Mapped[list["ShipmentAllocation"]] = relationship(
        back_populates="line", cascade="all, delete-orphan", order_by="ShipmentAllocation.id"
    )

    __table_args__ = (
        CheckConstraint("shipped_quantity > 0", name="ck_shipment_line_qty_pos"),
        CheckConstraint("requested_quantity >= 0", name="ck_shipment_line_requested_nonneg"),
    )


class ShipmentAllocation(Base):
    """Quantité prélevée sur UNE unité de stock par UNE ligne d'expédition."""

    __tablename__ = "shipment_allocations"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    shipment_line_id: Mapped[int] = mapped_column(
        ForeignKey("shipment_lines.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    unit_id: Mapped[int] = mapped_column(
        ForeignKey("inventory_units.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    line: Mapped[ShipmentLine] = relationship(back_populates="allocations")
    unit: Mapped[InventoryUnit] = relationship()

    __table_args__ = (CheckConstraint("quantity > 0", name="ck_allocation_qty_pos"),)


class OrderShipmentRelation(Base):
    __tablename__ = "order_shipment_relations"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    need_num: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    shipment_id: Mapped[int] = mapped_column(
        ForeignKey("shipment_records.shipment_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    total_requested: Mapped[int] = mapped_column(Integer, nullable=False)
    total_shipped: Mapped[int] = mapped_column(Integer, nullable=False)
    completion_status: Mapped[CompletionStatus] = mapped_column(
        Enum(CompletionStatus, name="completion_status"), nullable=False
    )
    manual_sentinel: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    shipment: Mapped[ShipmentRecord] = relationship(back_populates="relations")

    __table_args__ = (UniqueConstraint("shipment_id", "need_num", name="uq_relation_shipment_need"),)


# ---------- RÉSOLUTION DE CONFLITS ----------
class ResolutionSession(Base):
    __tablename__ = "resolution_sessions"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    token: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    country: Mapped[str] = mapped_column(String(64), nullable=False)
    marketplace: Mapped[str] = mapped_column(String(64), nullable=False)
    shipping_method: Mapped[str] = mapped_column(String(64), nullable=False)
    deadline: Mapped[date | None] = mapped_column(Date)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    state: Mapped[SessionState] = mapped_column(
        Enum(SessionState, name="session_state"), default=SessionState.open, nullable=False
    )
    need_num: Mapped[str | None] = mapped_column(String(32))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    items: Mapped[list["ResolutionItem"]] = relationship(
        back_populates="session", cascade="all, delete-orphan", order_by="ResolutionItem.position"
    )


class ResolutionItem(Base):
    __tablename__ = "resolution_items"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    session_id: Mapped[int] = mapped_column(
        ForeignKey("resolution_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    token: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    sku: Mapped[str] = mapped_column(String(64), nullable=False)
    candidate_quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    conflicted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    existing_record_num: Mapped[int | None] = mapped_column(Integer)
    existing_remaining_quantity: Mapped[int | None] = mapped_column(Integer)
    matched_record_nums: Mapped[list[int]] = mapped_column(JSON, default=list, nullable=False)

    resolution: Mapped[Resolution | None] = mapped_column(Enum(Resolution, name="resolution"))
    result_quantity: Mapped[int | None] = mapped_column(Integer)
    applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[str | None] = mapped_column(Text)

    session: Mapped[ResolutionSession] = relationship(back_populates="items")

    __table_args__ = (
        UniqueConstraint("session_id", "position", name="uq_resolution_item_position"),
        CheckConstraint("candidate_quantity > 0", name="ck_resolution_candidate_pos"),
    )


# ---------- NUMÉROTATION ----------
class NumberSequence(Base):
    """Compteur journalier (need_num, shipment_number)."""

    __tablename__ = "number_sequences"
    scope: Mapped[str] = mapped_column(String(16), primary_key=True)
    day: Mapped[str] = mapped_column(String(8), primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
