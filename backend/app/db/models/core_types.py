import enum


class DemandStatus(str, enum.Enum):
    """Statut STOCKÉ d'une ligne de besoin : marqueur d'audit uniquement."""
    pending = "pending"
    shipped = "shipped"
    cancelled = "cancelled"


class FulfillmentStatus(str, enum.Enum):
    """Statut DÉRIVÉ (calculé à la lecture depuis les quantités expédiées)."""
    pending = "pending"
    partially_fulfilled = "partially_fulfilled"
    fully_fulfilled = "fully_fulfilled"


class BoxType(str, enum.Enum):
    whole_box = "whole_box"
    mixed_box = "mixed_box"


class InventoryStatus(str, enum.Enum):
    pending_outbound = "pending_outbound"
    partially_outbound = "partially_outbound"
    fully_outbound = "fully_outbound"
    cancelled = "cancelled"


class ShipmentStatus(str, enum.Enum):
    preparing = "preparing"
    shipped = "shipped"
    cancelled = "cancelled"


class CompletionStatus(str, enum.Enum):
    partial = "partial"
    complete = "complete"


class Resolution(str, enum.Enum):
    add = "add"
    replace = "replace"
    new = "new"


class SessionState(str, enum.Enum):
    open = "open"
    finalized = "finalized"
