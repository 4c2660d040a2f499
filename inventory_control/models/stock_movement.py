import uuid
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from inventory_control.database import Base, utcnow


class MovementType(str, PyEnum):
    RECEIVE = "RECEIVE"
    SHIP = "SHIP"
    RETURN = "RETURN"
    TRANSFER_OUT = "TRANSFER_OUT"
    TRANSFER_IN = "TRANSFER_IN"
    ADJUSTMENT_ADD = "ADJUSTMENT_ADD"
    ADJUSTMENT_REMOVE = "ADJUSTMENT_REMOVE"
    DAMAGE = "DAMAGE"
    INTERNAL_MOVE = "INTERNAL_MOVE"


class MovementDirection(str, PyEnum):
    INBOUND = "INBOUND"
    OUTBOUND = "OUTBOUND"
    INTERNAL = "INTERNAL"


class MovementStatus(str, PyEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class ReferenceType(str, PyEnum):
    ORDER = "ORDER"
    PURCHASE_ORDER = "PURCHASE_ORDER"
    RETURN = "RETURN"
    TRANSFER = "TRANSFER"
    ADJUSTMENT = "ADJUSTMENT"
    CYCLE_COUNT = "CYCLE_COUNT"


# Sign of every stock mutation comes from this table and nowhere else.
MOVEMENT_DIRECTIONS: dict[MovementType, MovementDirection] = {
    MovementType.RECEIVE: MovementDirection.INBOUND,
    MovementType.RETURN: MovementDirection.INBOUND,
    MovementType.TRANSFER_IN: MovementDirection.INBOUND,
    MovementType.ADJUSTMENT_ADD: MovementDirection.INBOUND,
    MovementType.SHIP: MovementDirection.OUTBOUND,
    MovementType.TRANSFER_OUT: MovementDirection.OUTBOUND,
    MovementType.ADJUSTMENT_REMOVE: MovementDirection.OUTBOUND,
    MovementType.DAMAGE: MovementDirection.OUTBOUND,
    MovementType.INTERNAL_MOVE: MovementDirection.INTERNAL,
}

_unmapped = set(MovementType) - set(MOVEMENT_DIRECTIONS)
if _unmapped:
    raise RuntimeError(f"Movement types without a direction: {sorted(t.value for t in _unmapped)}")

# Allowed status changes; COMPLETED, CANCELLED and FAILED are terminal.
MOVEMENT_TRANSITIONS: dict[MovementStatus, frozenset[MovementStatus]] = {
    MovementStatus.PENDING: frozenset({MovementStatus.APPROVED, MovementStatus.IN_PROGRESS, MovementStatus.CANCELLED}),
    MovementStatus.APPROVED: frozenset({MovementStatus.IN_PROGRESS, MovementStatus.CANCELLED}),
    MovementStatus.IN_PROGRESS: frozenset({MovementStatus.COMPLETED, MovementStatus.FAILED}),
    MovementStatus.COMPLETED: frozenset(),
    MovementStatus.CANCELLED: frozenset(),
    MovementStatus.FAILED: frozenset(),
}


def direction_for(movement_type: MovementType | str) -> MovementDirection:
    return MOVEMENT_DIRECTIONS[MovementType(movement_type)]


class StockMovement(Base):
    __tablename__ = "stock_movements"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    warehouse_id: Mapped[str] = mapped_column(String, ForeignKey("warehouses.id"), nullable=False)
    sku: Mapped[str] = mapped_column(String, index=True, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    type: Mapped[str] = mapped_column(
        Enum(MovementType, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    direction: Mapped[str] = mapped_column(
        Enum(MovementDirection, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        Enum(MovementStatus, values_callable=lambda x: [e.value for e in x]),
        default=MovementStatus.PENDING,
        index=True,
    )

    # Transfers: the other leg of the pair
    linked_movement_id: Mapped[str | None] = mapped_column(String, nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String, nullable=True)
    reference_type: Mapped[str | None] = mapped_column(
        Enum(ReferenceType, values_callable=lambda x: [e.value for e in x]),
        nullable=True,
    )

    reason: Mapped[str] = mapped_column(Text, default="")
    notes: Mapped[str] = mapped_column(Text, default="")
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_by: Mapped[str] = mapped_column(String, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    approved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    executed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    executed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __mapper_args__ = {"version_id_col": version}
