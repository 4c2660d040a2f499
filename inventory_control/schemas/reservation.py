from datetime import datetime

from pydantic import BaseModel

from inventory_control.models.reservation import ReservationStatus
from inventory_control.schemas.common import OperationResult


class ReservationLine(BaseModel):
    sku: str
    quantity: int
    # Omit to reserve from the first active warehouse that can cover the line
    warehouse_id: str | None = None


class ReservationOut(BaseModel):
    id: str
    order_id: str
    sku: str
    warehouse_id: str
    quantity_reserved: int
    status: ReservationStatus
    created_at: datetime
    released_at: datetime | None = None
    released_by: str | None = None
    release_reason: str | None = None
    release_reason_code: str | None = None

    model_config = {"from_attributes": True}


class ReserveResult(OperationResult):
    order_id: str = ""
    reservations: list[ReservationOut] = []
    already_reserved: bool = False


class ReleaseResult(OperationResult):
    reservation_id: str = ""
    status: ReservationStatus | None = None
    quantity_released: int = 0
    already_released: bool = False


class OrderReleaseResult(OperationResult):
    order_id: str = ""
    released_count: int = 0
    total_quantity_released: int = 0


class BatchReleaseResult(BaseModel):
    success: bool
    total_found: int = 0
    released_count: int = 0
    skipped_count: int = 0
    total_quantity_released: int = 0
    dry_run: bool = False
    would_release: int = 0
    released_ids: list[str] = []
    errors: list[str] = []
