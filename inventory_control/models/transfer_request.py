import uuid
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from inventory_control.database import Base, utcnow


class TransferType(str, PyEnum):
    IMMEDIATE = "IMMEDIATE"  # approved on creation
    PENDING = "PENDING"
    SCHEDULED = "SCHEDULED"


class TransferStatus(str, PyEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class TransferPriority(str, PyEnum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


PRIORITY_RANK: dict[TransferPriority, int] = {
    TransferPriority.LOW: 1,
    TransferPriority.NORMAL: 2,
    TransferPriority.HIGH: 3,
    TransferPriority.URGENT: 4,
}

# A reservation has at most one transfer request in one of these at a time
OPEN_TRANSFER_STATUSES = (TransferStatus.PENDING, TransferStatus.APPROVED)


class TransferRequest(Base):
    """Request to move a reservation's hold, and the units behind it, to another warehouse."""

    __tablename__ = "transfer_requests"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    reservation_id: Mapped[str] = mapped_column(String, ForeignKey("reservations.id"), index=True, nullable=False)
    order_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    source_warehouse_id: Mapped[str] = mapped_column(String, ForeignKey("warehouses.id"), nullable=False)
    target_warehouse_id: Mapped[str] = mapped_column(String, ForeignKey("warehouses.id"), nullable=False)
    sku: Mapped[str] = mapped_column(String, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    transfer_type: Mapped[str] = mapped_column(
        Enum(TransferType, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        Enum(TransferStatus, values_callable=lambda x: [e.value for e in x]),
        default=TransferStatus.PENDING,
        index=True,
    )
    priority: Mapped[str] = mapped_column(
        Enum(TransferPriority, values_callable=lambda x: [e.value for e in x]),
        default=TransferPriority.NORMAL,
    )
    reason: Mapped[str] = mapped_column(Text, default="")
    notes: Mapped[str] = mapped_column(Text, default="")
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Set on execution: the reservation now holding the units, and the recorded movement pair
    target_reservation_id: Mapped[str | None] = mapped_column(String, nullable=True)
    outbound_movement_id: Mapped[str | None] = mapped_column(String, nullable=True)
    inbound_movement_id: Mapped[str | None] = mapped_column(String, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    requested_by: Mapped[str] = mapped_column(String, default="")
    requested_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    approved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    rejected_by: Mapped[str | None] = mapped_column(String, nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __mapper_args__ = {"version_id_col": version}
