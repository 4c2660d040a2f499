from enum import Enum as PyEnum

from pydantic import BaseModel

from inventory_control.models.stock_movement import ReferenceType
from inventory_control.schemas.common import OperationResult


class UpdateType(str, PyEnum):
    ABSOLUTE = "ABSOLUTE"
    ADJUSTMENT = "ADJUSTMENT"


class ReasonCode(str, PyEnum):
    CYCLE_COUNT = "CYCLE_COUNT"
    DAMAGE = "DAMAGE"
    THEFT = "THEFT"
    EXPIRED = "EXPIRED"
    FOUND = "FOUND"
    ADJUSTMENT = "ADJUSTMENT"
    RECEIVING = "RECEIVING"
    RECOUNT = "RECOUNT"
    TRANSFER = "TRANSFER"
    RETURN = "RETURN"
    WRITE_OFF = "WRITE_OFF"
    OTHER = "OTHER"


class VarianceLevel(str, PyEnum):
    OK = "OK"
    WARNING = "WARNING"
    ERROR = "ERROR"


class QuantityUpdate(BaseModel):
    sku: str
    quantity: int
    update_type: UpdateType = UpdateType.ABSOLUTE
    reason_code: str = ReasonCode.ADJUSTMENT.value
    warehouse_id: str | None = None
    notes: str = ""


class UpdateOptions(BaseModel):
    warning_threshold: float | None = None
    error_threshold: float | None = None
    auto_approve_threshold: float | None = None
    retry_on_conflict: bool = True
    reference_type: ReferenceType | None = None
    reference_id: str | None = None


class UpdateResult(OperationResult):
    sku: str = ""
    warehouse_id: str | None = None
    status: str = "FAILED"  # APPLIED, PENDING_APPROVAL, UNCHANGED or FAILED
    previous_quantity: int | None = None
    new_quantity: int | None = None
    variance: int = 0
    variance_percent: float = 0.0
    variance_level: VarianceLevel = VarianceLevel.OK
    requires_approval: bool = False
    movement_id: str | None = None


class BulkUpdateResult(BaseModel):
    success: bool
    atomic: bool
    total: int
    success_count: int
    error_count: int
    results: list[UpdateResult]
    error: str | None = None
