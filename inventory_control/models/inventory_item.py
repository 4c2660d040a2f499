import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, Float, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from inventory_control.database import Base, utcnow


class InventoryItem(Base):
    """Stock of one SKU in one warehouse. Rows are never physically deleted."""

    __tablename__ = "inventory_items"
    __table_args__ = (
        UniqueConstraint("organization_id", "warehouse_id", "sku", name="uq_inventory_item_org_wh_sku"),
        CheckConstraint("quantity >= 0", name="ck_inventory_item_quantity_non_negative"),
        CheckConstraint(
            "reserved_quantity >= 0 AND reserved_quantity <= quantity",
            name="ck_inventory_item_reserved_bounds",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    warehouse_id: Mapped[str] = mapped_column(String, ForeignKey("warehouses.id"), nullable=False)
    sku: Mapped[str] = mapped_column(String, index=True, nullable=False)

    quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reserved_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Set while an open cycle count covers this item; movements are refused meanwhile
    is_locked: Mapped[bool] = mapped_column(Boolean, default=False)

    cost: Mapped[float | None] = mapped_column(Float, nullable=True)
    reorder_point: Mapped[int | None] = mapped_column(Integer, nullable=True)
    location: Mapped[str] = mapped_column(String, default="")

    created_by: Mapped[str] = mapped_column(String, default="")
    updated_by: Mapped[str] = mapped_column(String, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    @property
    def available_quantity(self) -> int:
        return self.quantity - self.reserved_quantity
