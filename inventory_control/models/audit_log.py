import logging
import uuid
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import DateTime, Float, Integer, String, Text, event
from sqlalchemy.orm import Mapped, mapped_column

from inventory_control.database import Base, utcnow
from inventory_control.exceptions import ImmutableRecordError

logger = logging.getLogger(__name__)


class AuditAction(str, PyEnum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    IMPORT = "IMPORT"
    RESERVE = "RESERVE"
    RELEASE = "RELEASE"
    FULFILL = "FULFILL"
    FORCE_RELEASE = "FORCE_RELEASE"
    # Executed movements are logged under their movement type
    RECEIVE = "RECEIVE"
    SHIP = "SHIP"
    RETURN = "RETURN"
    TRANSFER_OUT = "TRANSFER_OUT"
    TRANSFER_IN = "TRANSFER_IN"
    ADJUSTMENT_ADD = "ADJUSTMENT_ADD"
    ADJUSTMENT_REMOVE = "ADJUSTMENT_REMOVE"
    DAMAGE = "DAMAGE"
    INTERNAL_MOVE = "INTERNAL_MOVE"


class InventoryAuditLog(Base):
    """Write-once record of a committed quantity or reservation change."""

    __tablename__ = "inventory_audit_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    warehouse_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    sku: Mapped[str] = mapped_column(String, index=True, nullable=False)
    action: Mapped[str] = mapped_column(String, index=True, nullable=False)

    previous_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    new_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_reserved: Mapped[int | None] = mapped_column(Integer, nullable=True)
    new_reserved: Mapped[int | None] = mapped_column(Integer, nullable=True)
    variance: Mapped[int] = mapped_column(Integer, default=0)  # new - previous quantity
    variance_percent: Mapped[float] = mapped_column(Float, default=0.0)

    reason_code: Mapped[str] = mapped_column(String, default="")
    notes: Mapped[str] = mapped_column(Text, default="")

    # Free-form JSON, e.g. '{"movement_id": "...", "reference_id": "..."}'
    details: Mapped[str] = mapped_column("metadata", Text, default="{}")

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)


@event.listens_for(InventoryAuditLog, "before_update")
def _block_audit_update(mapper, connection, target):
    logger.error("Blocked update of audit entry %s", target.id)
    raise ImmutableRecordError("Audit entries are immutable and cannot be modified", entry_id=target.id)


@event.listens_for(InventoryAuditLog, "before_delete")
def _block_audit_delete(mapper, connection, target):
    logger.error("Blocked delete of audit entry %s", target.id)
    raise ImmutableRecordError("Audit entries are immutable and cannot be deleted", entry_id=target.id)
