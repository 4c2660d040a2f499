from datetime import datetime

from pydantic import BaseModel

from inventory_control.models.stock_movement import MovementDirection, MovementStatus, MovementType, ReferenceType
from inventory_control.schemas.common import OperationResult


class MovementCreate(BaseModel):
    warehouse_id: str
    sku: str
    quantity: int
    type: MovementType
    reason: str = ""
    notes: str = ""
    reference_id: str | None = None
    reference_type: ReferenceType | None = None


class TransferCreate(BaseModel):
    source_warehouse_id: str
    target_warehouse_id: str
    sku: str
    quantity: int
    reason: str = ""
    notes: str = ""
    reference_id: str | None = None


class MovementOut(BaseModel):
    id: str
    warehouse_id: str
    sku: str
    quantity: int
    type: MovementType
    direction: MovementDirection
    status: MovementStatus
    linked_movement_id: str | None = None
    reference_id: str | None = None
    reference_type: ReferenceType | None = None
    reason: str
    notes: str
    failure_reason: str | None = None
    cancellation_reason: str | None = None
    created_by: str
    created_at: datetime
    executed_by: str | None = None
    executed_at: datetime | None = None

    model_config = {"from_attributes": True}


class MovementResult(OperationResult):
    movement: MovementOut | None = None


class TransferResult(OperationResult):
    outbound: MovementOut | None = None
    inbound: MovementOut | None = None


class ExecuteResult(OperationResult):
    movement_id: str = ""
    status: MovementStatus | None = None
    previous_quantity: int | None = None
    new_quantity: int | None = None


class MovementFilter(BaseModel):
    sku: str | None = None
    warehouse_id: str | None = None
    type: MovementType | None = None
    status: MovementStatus | None = None
    reference_id: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    page: int = 1
    page_size: int = 20


class MovementPage(BaseModel):
    items: list[MovementOut]
    total: int
    page: int
    page_size: int


class MovementTypeTotals(BaseModel):
    count: int = 0
    quantity: int = 0


class MovementSummary(BaseModel):
    period_days: int
    total_movements: int
    inbound_quantity: int
    outbound_quantity: int
    by_type: dict[str, MovementTypeTotals]
    by_status: dict[str, int]
