import logging

from sqlalchemy import and_, case, func, select
from sqlalchemy.orm import Session

from inventory_control.exceptions import ConflictError, NotFoundError
from inventory_control.models.inventory_item import InventoryItem
from inventory_control.models.warehouse import Warehouse, WarehouseStatus
from inventory_control.schemas.common import CallerContext
from inventory_control.schemas.inventory import InventorySummary
from inventory_control.services import audit_service
from inventory_control.services.validation_service import MAX_QUANTITY

logger = logging.getLogger(__name__)


def find_item(
    db: Session, organization_id: str, warehouse_id: str, sku: str, lock: bool = False
) -> InventoryItem | None:
    """Look up one stock row. With ``lock`` the row is held exclusively until the transaction ends."""
    stmt = select(InventoryItem).where(
        InventoryItem.organization_id == organization_id,
        InventoryItem.warehouse_id == warehouse_id,
        InventoryItem.sku == sku,
    )
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return db.execute(stmt).scalar_one_or_none()


def lock_items_for_sku(db: Session, organization_id: str, sku: str) -> list[InventoryItem]:
    """Lock every row of a SKU in the organization's active warehouses, in warehouse order."""
    stmt = (
        select(InventoryItem)
        .join(Warehouse, Warehouse.id == InventoryItem.warehouse_id)
        .where(
            InventoryItem.organization_id == organization_id,
            InventoryItem.sku == sku,
            Warehouse.status == WarehouseStatus.ACTIVE,
        )
        .order_by(InventoryItem.warehouse_id)
        .with_for_update(of=InventoryItem)
        .execution_options(populate_existing=True)
    )
    return list(db.execute(stmt).scalars())


def get_item(db: Session, ctx: CallerContext, warehouse_id: str, sku: str) -> InventoryItem:
    item = find_item(db, ctx.organization_id, warehouse_id, sku)
    if not item:
        raise NotFoundError(f"Inventory item {sku} not found in warehouse {warehouse_id}")
    return item


def list_items(db: Session, ctx: CallerContext, warehouse_id: str | None = None) -> list[InventoryItem]:
    q = db.query(InventoryItem).filter(InventoryItem.organization_id == ctx.organization_id)
    if warehouse_id:
        q = q.filter(InventoryItem.warehouse_id == warehouse_id)
    return q.order_by(InventoryItem.warehouse_id, InventoryItem.sku).all()


def create_item(db: Session, ctx: CallerContext, warehouse_id: str, sku: str, **fields) -> InventoryItem:
    item = InventoryItem(
        organization_id=ctx.organization_id,
        warehouse_id=warehouse_id,
        sku=sku,
        quantity=0,
        reserved_quantity=0,
        created_by=ctx.user_id,
        updated_by=ctx.user_id,
        **fields,
    )
    db.add(item)
    db.flush()
    return item


def check_new_levels(item: InventoryItem, quantity: int, reserved: int) -> None:
    """Refuse any state that breaks 0 <= reserved <= quantity."""
    if quantity < 0:
        raise ConflictError(
            f"Quantity for {item.sku} cannot go below zero (would be {quantity})",
            sku=item.sku,
            quantity=quantity,
        )
    if quantity > MAX_QUANTITY:
        raise ConflictError(f"Quantity for {item.sku} cannot exceed {MAX_QUANTITY:,}", sku=item.sku)
    if reserved < 0:
        raise ConflictError(f"Reserved quantity for {item.sku} cannot go below zero", sku=item.sku)
    if reserved > quantity:
        raise ConflictError(
            f"Quantity {quantity} for {item.sku} would fall below reserved quantity {reserved}",
            sku=item.sku,
            quantity=quantity,
            reserved=reserved,
        )


def change_quantity(
    db: Session,
    ctx: CallerContext,
    item: InventoryItem,
    delta: int,
    *,
    action: str,
    reason_code: str = "",
    notes: str = "",
    metadata: dict | None = None,
) -> tuple[int, int]:
    """Apply a signed on-hand change and write its audit entry. Returns (previous, new) quantity."""
    previous = item.quantity
    new = previous + delta
    check_new_levels(item, new, item.reserved_quantity)

    item.quantity = new
    item.updated_by = ctx.user_id
    audit_service.record_entry(
        db,
        ctx,
        warehouse_id=item.warehouse_id,
        sku=item.sku,
        action=action,
        previous_quantity=previous,
        new_quantity=new,
        previous_reserved=item.reserved_quantity,
        new_reserved=item.reserved_quantity,
        reason_code=reason_code,
        notes=notes,
        metadata=metadata,
    )
    return previous, new


def change_reserved(
    db: Session,
    ctx: CallerContext,
    item: InventoryItem,
    delta: int,
    *,
    action: str,
    quantity_delta: int = 0,
    reason_code: str = "",
    notes: str = "",
    metadata: dict | None = None,
) -> tuple[int, int]:
    """Apply a reserved-quantity change (and optionally an on-hand change). Returns (previous, new) reserved.

    Releases floor at zero rather than failing, so a stale hold can always be cleared.
    """
    previous_quantity = item.quantity
    previous_reserved = item.reserved_quantity
    new_reserved = previous_reserved + delta
    if delta < 0 and new_reserved < 0:
        logger.warning(
            "Reserved quantity for %s in %s would drop to %s; flooring at 0",
            item.sku, item.warehouse_id, new_reserved,
        )
        new_reserved = 0
    new_quantity = previous_quantity + quantity_delta
    check_new_levels(item, new_quantity, new_reserved)

    item.quantity = new_quantity
    item.reserved_quantity = new_reserved
    item.updated_by = ctx.user_id
    audit_service.record_entry(
        db,
        ctx,
        warehouse_id=item.warehouse_id,
        sku=item.sku,
        action=action,
        previous_quantity=previous_quantity,
        new_quantity=new_quantity,
        previous_reserved=previous_reserved,
        new_reserved=new_reserved,
        reason_code=reason_code,
        notes=notes,
        metadata=metadata,
    )
    return previous_reserved, new_reserved


def inventory_summary(db: Session, ctx: CallerContext, warehouse_id: str | None = None) -> InventorySummary:
    """Stock totals across the organization, or one warehouse."""
    available = InventoryItem.quantity - InventoryItem.reserved_quantity
    low = and_(InventoryItem.reorder_point.is_not(None), available > 0, available <= InventoryItem.reorder_point)
    stmt = select(
        func.count(InventoryItem.id),
        func.coalesce(func.sum(InventoryItem.quantity), 0),
        func.coalesce(func.sum(InventoryItem.reserved_quantity), 0),
        func.coalesce(func.sum(case((available <= 0, 1), else_=0)), 0),
        func.coalesce(func.sum(case((low, 1), else_=0)), 0),
    ).where(InventoryItem.organization_id == ctx.organization_id)
    if warehouse_id:
        stmt = stmt.where(InventoryItem.warehouse_id == warehouse_id)

    count, quantity, reserved, out_of_stock, low_stock = db.execute(stmt).one()
    return InventorySummary(
        total_items=count,
        total_quantity=quantity,
        total_reserved=reserved,
        total_available=quantity - reserved,
        out_of_stock_count=out_of_stock,
        low_stock_count=low_stock,
    )
