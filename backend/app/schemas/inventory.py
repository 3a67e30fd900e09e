from datetime import datetime

from pydantic import BaseModel, ConfigDict

from backend.app.db.models.core_types import BoxType, InventoryStatus


class InventoryUnitRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sku: str
    country: str
    marketplace: str | None = None
    box_type: BoxType
    mix_box_num: str | None = None

    total_quantity: int
    total_boxes: int
    shipped_quantity: int
    available_quantity: int  # lecture seule : total - shipped
    status: InventoryStatus

    operator: str | None = None
    packer: str | None = None
    packed_at: datetime
    shipped_at: datetime | None = None
    remark: str | None = None


class AvailabilityRead(BaseModel):
    sku: str
    country: str
    whole_box_quantity: int
    whole_box_count: int
    mixed_box_quantity: int
    total_available: int
