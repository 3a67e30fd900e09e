from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from backend.app.core.config import get_settings
from backend.services.errors import ValidationError


@dataclass
class Page:
    items: list[Any] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20

    def as_dict(self) -> dict:
        return {"list": self.items, "total": self.total, "page": self.page, "limit": self.limit}


def clamp_page(page: int | None, limit: int | None) -> tuple[int, int]:
    settings = get_settings()
    page = page or 1
    limit = limit or settings.DEFAULT_PAGE_SIZE
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be >= 1", details={"page": page, "limit": limit})
    return page, min(limit, settings.MAX_PAGE_SIZE)
