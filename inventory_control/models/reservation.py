import uuid
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from inventory_control.database import Base, utcnow


class ReservationStatus(str, PyEnum):
    ACTIVE = "ACTIVE"
    RELEASED = "RELEASED"
    FULFILLED = "FULFILLED"
    FORCE_RELEASED = "FORCE_RELEASED"


class Reservation(Base):
    """Soft hold of stock for an order. Only ACTIVE reservations may change state."""

    __tablename__ = "reservations"
    __table_args__ = (
        Index(
            "uq_reservation_active_line",
            "organization_id",
            "order_id",
            "sku",
            "warehouse_id",
            unique=True,
            sqlite_where=text("status = 'ACTIVE'"),
            postgresql_where=text("status = 'ACTIVE'"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    order_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    sku: Mapped[str] = mapped_column(String, index=True, nullable=False)
    warehouse_id: Mapped[str] = mapped_column(String, ForeignKey("warehouses.id"), nullable=False)
    inventory_item_id: Mapped[str] = mapped_column(String, ForeignKey("inventory_items.id"), nullable=False)
    quantity_reserved: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        Enum(ReservationStatus, values_callable=lambda x: [e.value for e in x]),
        default=ReservationStatus.ACTIVE,
        index=True,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_by: Mapped[str] = mapped_column(String, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    released_by: Mapped[str | None] = mapped_column(String, nullable=True)
    release_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    release_reason_code: Mapped[str | None] = mapped_column(String, nullable=True)

    __mapper_args__ = {"version_id_col": version}
