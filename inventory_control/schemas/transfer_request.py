from datetime import datetime

from pydantic import BaseModel

from inventory_control.models.transfer_request import TransferPriority, TransferStatus, TransferType
from inventory_control.schemas.common import OperationResult


class TransferRequestCreate(BaseModel):
    reservation_id: str
    source_warehouse_id: str
    target_warehouse_id: str
    quantity: int
    transfer_type: TransferType = TransferType.PENDING
    priority: TransferPriority = TransferPriority.NORMAL
    scheduled_at: datetime | None = None
    reason: str = ""


class TransferRequestOut(BaseModel):
    id: str
    reservation_id: str
    order_id: str
    source_warehouse_id: str
    target_warehouse_id: str
    sku: str
    quantity: int
    transfer_type: TransferType
    status: TransferStatus
    priority: TransferPriority
    reason: str
    notes: str
    scheduled_at: datetime | None = None
    target_reservation_id: str | None = None
    outbound_movement_id: str | None = None
    inbound_movement_id: str | None = None
    failure_reason: str | None = None
    rejection_reason: str | None = None
    requested_by: str
    requested_at: datetime
    approved_by: str | None = None
    approved_at: datetime | None = None
    completed_at: datetime | None = None

    model_config = {"from_attributes": True}


class TransferRequestResult(OperationResult):
    transfer_id: str = ""
    status: TransferStatus | None = None
    transfer: TransferRequestOut | None = None


class TransferFilter(BaseModel):
    status: TransferStatus | None = None
    source_warehouse_id: str | None = None
    target_warehouse_id: str | None = None
    priority: TransferPriority | None = None
    sort_by_priority: bool = False
    page: int = 1
    page_size: int = 20


class TransferPage(BaseModel):
    items: list[TransferRequestOut]
    total: int
    page: int
    page_size: int
