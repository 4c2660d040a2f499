from datetime import datetime
from typing import Any

from pydantic import BaseModel


class AuditEntryOut(BaseModel):
    id: str
    warehouse_id: str
    user_id: str
    sku: str
    action: str
    previous_quantity: int
    new_quantity: int
    previous_reserved: int | None = None
    new_reserved: int | None = None
    variance: int
    variance_percent: float
    reason_code: str
    notes: str
    metadata: dict[str, Any] = {}
    created_at: datetime


class AuditQuery(BaseModel):
    sku: str | None = None
    warehouse_id: str | None = None
    user_id: str | None = None
    action: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    page: int = 1
    page_size: int = 20


class AuditPage(BaseModel):
    items: list[AuditEntryOut]
    total: int
    page: int
    page_size: int


class VarianceSummary(BaseModel):
    total_variance: int
    absolute_variance: int
    positive_variance: int
    negative_variance: int
    item_count: int


class ActivityCount(BaseModel):
    key: str
    count: int
    total_variance: int
