from datetime import datetime

from pydantic import BaseModel

from inventory_control.models.cycle_count import CycleCountLineStatus, CycleCountStatus, CycleCountType
from inventory_control.schemas.inventory_update import VarianceLevel


class CycleCountSessionCreate(BaseModel):
    type: CycleCountType
    warehouse_id: str
    skus: list[str] = []
    is_blind: bool = False
    lock_items: bool = False
    auto_approve_threshold: float | None = None
    notes: str = ""


class CycleCountSessionOut(BaseModel):
    id: str
    warehouse_id: str
    type: CycleCountType
    status: CycleCountStatus
    is_blind: bool
    lock_items: bool
    skus: list[str]
    item_count: int
    auto_approve_threshold: float | None = None
    created_by: str
    created_at: datetime
    completed_by: str | None = None
    completed_at: datetime | None = None


class BlindCountItem(BaseModel):
    line_id: str
    sku: str
    counted_quantity: int | None = None
    status: CycleCountLineStatus


class GuidedCountItem(BlindCountItem):
    expected_quantity: int


class CountEntry(BaseModel):
    sku: str
    counted_quantity: int


class CountError(BaseModel):
    sku: str
    message: str


class SubmitCountResult(BaseModel):
    success: bool
    session_id: str
    accepted: int
    errors: list[CountError] = []


class VarianceReportItem(BaseModel):
    sku: str
    expected_quantity: int
    counted_quantity: int
    variance: int
    variance_percent: float
    variance_level: VarianceLevel


class VarianceReport(BaseModel):
    session_id: str
    warning_threshold: float
    error_threshold: float
    total_items: int
    counted_items: int
    items_with_variance: int
    total_variance: int
    absolute_variance: int
    warning_count: int
    error_count: int
    items: list[VarianceReportItem]


class CompletionLine(BaseModel):
    sku: str
    status: CycleCountLineStatus
    movement_id: str | None = None
    error: str | None = None


class CycleCountCompletionResult(BaseModel):
    session_id: str
    status: CycleCountStatus
    applied: int = 0
    pending_approval: int = 0
    unchanged: int = 0
    failed: int = 0
    uncounted: int = 0
    lines: list[CompletionLine] = []
