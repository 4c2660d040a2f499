import uuid
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import Boolean, DateTime, Enum, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from inventory_control.database import Base, utcnow


class CycleCountType(str, PyEnum):
    FULL = "FULL"
    PARTIAL = "PARTIAL"


class CycleCountStatus(str, PyEnum):
    IN_PROGRESS = "IN_PROGRESS"
    # Claimed by one caller that is reconciling its lines
    COMPLETING = "COMPLETING"
    COMPLETED = "COMPLETED"


class CycleCountLineStatus(str, PyEnum):
    PENDING = "PENDING"
    COUNTED = "COUNTED"
    UNCHANGED = "UNCHANGED"
    APPLIED = "APPLIED"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


class CycleCountSession(Base):
    __tablename__ = "cycle_count_sessions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    warehouse_id: Mapped[str] = mapped_column(String, ForeignKey("warehouses.id"), nullable=False)
    type: Mapped[str] = mapped_column(
        Enum(CycleCountType, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        Enum(CycleCountStatus, values_callable=lambda x: [e.value for e in x]),
        default=CycleCountStatus.IN_PROGRESS,
    )
    is_blind: Mapped[bool] = mapped_column(Boolean, default=False)
    lock_items: Mapped[bool] = mapped_column(Boolean, default=False)

    # Requested SKUs for PARTIAL sessions, e.g. '["SKU-1","SKU-2"]'
    skus: Mapped[str] = mapped_column(Text, default="[]")

    auto_approve_threshold: Mapped[float | None] = mapped_column(Float, nullable=True)
    notes: Mapped[str] = mapped_column(Text, default="")

    created_by: Mapped[str] = mapped_column(String, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    completed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    lines: Mapped[list["CycleCountLine"]] = relationship(
        "CycleCountLine",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="CycleCountLine.sku",
    )


class CycleCountLine(Base):
    __tablename__ = "cycle_count_lines"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id: Mapped[str] = mapped_column(String, ForeignKey("cycle_count_sessions.id"), nullable=False)
    inventory_item_id: Mapped[str] = mapped_column(String, ForeignKey("inventory_items.id"), nullable=False)
    sku: Mapped[str] = mapped_column(String, nullable=False)

    # System quantity when the session started
    expected_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    counted_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    variance: Mapped[int | None] = mapped_column(Integer, nullable=True)
    variance_percent: Mapped[float | None] = mapped_column(Float, nullable=True)

    status: Mapped[str] = mapped_column(
        Enum(CycleCountLineStatus, values_callable=lambda x: [e.value for e in x]),
        default=CycleCountLineStatus.PENDING,
    )
    movement_id: Mapped[str | None] = mapped_column(String, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    counted_by: Mapped[str | None] = mapped_column(String, nullable=True)
    counted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    session: Mapped["CycleCountSession"] = relationship("CycleCountSession", back_populates="lines")
