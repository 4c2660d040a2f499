import logging
from collections import defaultdict
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from inventory_control.database import apply_transaction_timeout, utcnow
from inventory_control.events import event_bus
from inventory_control.exceptions import (
    ConflictError,
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from inventory_control.models.inventory_item import InventoryItem
from inventory_control.models.stock_movement import (
    MOVEMENT_TRANSITIONS,
    MovementDirection,
    MovementStatus,
    MovementType,
    ReferenceType,
    StockMovement,
    direction_for,
)
from inventory_control.schemas.common import CallerContext
from inventory_control.schemas.movement import (
    ExecuteResult,
    MovementCreate,
    MovementFilter,
    MovementOut,
    MovementPage,
    MovementResult,
    MovementSummary,
    MovementTypeTotals,
    TransferCreate,
    TransferResult,
)
from inventory_control.services import inventory_service, validation_service
from inventory_control.services.failures import as_inventory_error, rollback_result

logger = logging.getLogger(__name__)

APPROVER_ROLES = frozenset({"ADMIN", "INVENTORY_MANAGER"})
EXECUTABLE_STATUSES = (MovementStatus.PENDING, MovementStatus.APPROVED)
MAX_PAGE_SIZE = 100


def _check_line(sku: str, quantity: int) -> str:
    errors = validation_service.validate_sku_format(sku)
    if errors:
        raise ValidationError(errors[0], sku=sku)
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise ValidationError("Quantity must be a positive integer", quantity=quantity)
    if quantity > validation_service.MAX_QUANTITY:
        raise ValidationError(f"Quantity cannot exceed {validation_service.MAX_QUANTITY:,}", quantity=quantity)
    return sku.strip()


def _require_warehouse(db: Session, organization_id: str, warehouse_id: str) -> None:
    errors = validation_service.validate_warehouse(db, warehouse_id, organization_id)
    if errors:
        raise NotFoundError(errors[0], warehouse_id=warehouse_id)


def _find_movement(db: Session, organization_id: str, movement_id: str, lock: bool = False) -> StockMovement | None:
    stmt = select(StockMovement).where(
        StockMovement.id == movement_id, StockMovement.organization_id == organization_id
    )
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return db.execute(stmt).scalar_one_or_none()


def _transition(movement: StockMovement, new_status: MovementStatus) -> None:
    current = MovementStatus(movement.status)
    if new_status not in MOVEMENT_TRANSITIONS[current]:
        raise InvalidStateError(
            f"Cannot change movement {movement.id} from '{current.value}' to '{new_status.value}'"
        )
    movement.status = new_status


def _payload(movement: StockMovement, **extra) -> dict:
    return {
        "organization_id": movement.organization_id,
        "movement_id": movement.id,
        "type": MovementType(movement.type).value,
        "status": MovementStatus(movement.status).value,
        "warehouse_id": movement.warehouse_id,
        "sku": movement.sku,
        "quantity": movement.quantity,
        "linked_movement_id": movement.linked_movement_id,
        "reference_id": movement.reference_id,
        **extra,
    }


def _new_movement(ctx: CallerContext, warehouse_id: str, sku: str, quantity: int, movement_type: MovementType, **fields) -> StockMovement:
    return StockMovement(
        organization_id=ctx.organization_id,
        warehouse_id=warehouse_id,
        sku=sku,
        quantity=quantity,
        type=movement_type,
        direction=direction_for(movement_type),
        status=MovementStatus.PENDING,
        created_by=ctx.user_id,
        **fields,
    )


def _check_available(item: InventoryItem | None, warehouse_id: str, sku: str, quantity: int) -> InventoryItem:
    if not item:
        raise NotFoundError(f"Inventory item {sku} not found in warehouse {warehouse_id}")
    if item.available_quantity < quantity:
        raise InsufficientStockError(sku, quantity, item.available_quantity)
    return item


# --- Create ---

def create_movement(db: Session, ctx: CallerContext, data: MovementCreate) -> MovementResult:
    """Record a planned stock movement in PENDING status. Stock is not touched until execution."""
    validation_service.require_context(ctx)
    sku = _check_line(data.sku, data.quantity)
    reason = validation_service.require_reason(data.reason)

    try:
        _require_warehouse(db, ctx.organization_id, data.warehouse_id)
        if direction_for(data.type) == MovementDirection.OUTBOUND:
            # Advisory only; execution re-checks under lock
            item = inventory_service.find_item(db, ctx.organization_id, data.warehouse_id, sku)
            _check_available(item, data.warehouse_id, sku, data.quantity)

        movement = _new_movement(
            ctx,
            data.warehouse_id,
            sku,
            data.quantity,
            data.type,
            reason=reason,
            notes=validation_service.sanitize_text(data.notes),
            reference_id=data.reference_id,
            reference_type=data.reference_type,
        )
        db.add(movement)
        db.flush()
        out = MovementOut.model_validate(movement)
        payload = _payload(movement)
        db.commit()
    except (NotFoundError, ConflictError, SQLAlchemyError) as e:
        return rollback_result(db, e, MovementResult, "Create movement")

    event_bus.publish("movement.created", payload)
    logger.info("Created %s movement %s for %s x%s", out.type.value, out.id, sku, out.quantity)
    return MovementResult(movement=out)


def _stage_transfer_pair(
    db: Session,
    ctx: CallerContext,
    source_warehouse_id: str,
    target_warehouse_id: str,
    sku: str,
    quantity: int,
    **fields,
) -> tuple[StockMovement, StockMovement]:
    outbound = _new_movement(
        ctx, source_warehouse_id, sku, quantity, MovementType.TRANSFER_OUT, reference_type=ReferenceType.TRANSFER, **fields
    )
    db.add(outbound)
    db.flush()

    inbound = _new_movement(
        ctx, target_warehouse_id, sku, quantity, MovementType.TRANSFER_IN,
        linked_movement_id=outbound.id, reference_type=ReferenceType.TRANSFER, **fields,
    )
    db.add(inbound)
    db.flush()

    outbound.linked_movement_id = inbound.id
    db.flush()
    return outbound, inbound


def create_transfer(db: Session, ctx: CallerContext, data: TransferCreate) -> TransferResult:
    """Create the linked TRANSFER_OUT / TRANSFER_IN pair. Each leg is executed on its own."""
    validation_service.require_context(ctx)
    sku = _check_line(data.sku, data.quantity)
    if not data.source_warehouse_id or not data.target_warehouse_id:
        raise ValidationError("Source and target warehouses are required")
    if data.source_warehouse_id == data.target_warehouse_id:
        raise ValidationError("Source and target warehouses must be different")
    reason = validation_service.sanitize_text(data.reason) or (
        f"Transfer from {data.source_warehouse_id} to {data.target_warehouse_id}"
    )
    notes = validation_service.sanitize_text(data.notes)

    try:
        _require_warehouse(db, ctx.organization_id, data.source_warehouse_id)
        _require_warehouse(db, ctx.organization_id, data.target_warehouse_id)
        item = inventory_service.find_item(db, ctx.organization_id, data.source_warehouse_id, sku)
        _check_available(item, data.source_warehouse_id, sku, data.quantity)

        outbound, inbound = _stage_transfer_pair(
            db, ctx, data.source_warehouse_id, data.target_warehouse_id, sku, data.quantity,
            reason=reason, notes=notes, reference_id=data.reference_id,
        )
        out_leg = MovementOut.model_validate(outbound)
        in_leg = MovementOut.model_validate(inbound)
        payload = {
            "organization_id": ctx.organization_id,
            "outbound_movement_id": outbound.id,
            "inbound_movement_id": inbound.id,
            "source_warehouse_id": data.source_warehouse_id,
            "target_warehouse_id": data.target_warehouse_id,
            "sku": sku,
            "quantity": data.quantity,
        }
        db.commit()
    except (NotFoundError, ConflictError, SQLAlchemyError) as e:
        return rollback_result(db, e, TransferResult, "Create transfer")

    event_bus.publish("transfer.created", payload)
    logger.info(
        "Created transfer of %s x%s from %s to %s",
        sku, data.quantity, data.source_warehouse_id, data.target_warehouse_id,
    )
    return TransferResult(outbound=out_leg, inbound=in_leg)


def record_reserved_transfer(
    db: Session,
    ctx: CallerContext,
    source_warehouse_id: str,
    target_warehouse_id: str,
    sku: str,
    quantity: int,
    reason: str,
    reference_id: str,
) -> tuple[StockMovement, StockMovement]:
    """Record a transfer pair whose stock change the caller applies in its own transaction.

    Both legs are written as COMPLETED. Nothing is committed here.
    """
    outbound, inbound = _stage_transfer_pair(
        db, ctx, source_warehouse_id, target_warehouse_id, sku, quantity,
        reason=reason, reference_id=reference_id,
    )
    now = utcnow()
    for movement in (outbound, inbound):
        _transition(movement, MovementStatus.IN_PROGRESS)
        _transition(movement, MovementStatus.COMPLETED)
        movement.executed_by = ctx.user_id
        movement.executed_at = now
    db.flush()
    return outbound, inbound


# --- State changes ---

def approve_movement(db: Session, ctx: CallerContext, movement_id: str) -> ExecuteResult:
    validation_service.require_context(ctx)
    if ctx.user_role not in APPROVER_ROLES:
        raise PermissionDeniedError(f"Role '{ctx.user_role}' may not approve movements")
    if not movement_id:
        raise ValidationError("movement_id is required")

    try:
        movement = _find_movement(db, ctx.organization_id, movement_id, lock=True)
        if not movement:
            raise NotFoundError(f"Movement {movement_id} not found")
        _transition(movement, MovementStatus.APPROVED)
        movement.approved_by = ctx.user_id
        movement.approved_at = utcnow()
        db.flush()
        payload = _payload(movement, approved_by=ctx.user_id)
        db.commit()
    except (NotFoundError, ConflictError, SQLAlchemyError) as e:
        return rollback_result(db, e, ExecuteResult, "Approve movement", movement_id=movement_id)

    event_bus.publish("movement.approved", payload)
    return ExecuteResult(movement_id=movement_id, status=MovementStatus.APPROVED)


def _apply_stock_change(db: Session, ctx: CallerContext, movement: StockMovement) -> tuple[int, int]:
    direction = direction_for(movement.type)
    movement_type = MovementType(movement.type)
    item = inventory_service.find_item(db, ctx.organization_id, movement.warehouse_id, movement.sku, lock=True)
    if item is not None and item.is_locked:
        raise ConflictError(f"Inventory item {movement.sku} is locked by an open cycle count")

    if direction == MovementDirection.INBOUND:
        if item is None:
            item = inventory_service.create_item(db, ctx, movement.warehouse_id, movement.sku)
        delta = movement.quantity
    elif direction == MovementDirection.OUTBOUND:
        item = _check_available(item, movement.warehouse_id, movement.sku, movement.quantity)
        delta = -movement.quantity
    else:
        if item is None:
            raise NotFoundError(f"Inventory item {movement.sku} not found in warehouse {movement.warehouse_id}")
        delta = 0

    return inventory_service.change_quantity(
        db,
        ctx,
        item,
        delta,
        action=movement_type.value,
        reason_code=ReferenceType(movement.reference_type).value if movement.reference_type else "",
        notes=f"{movement_type.value}: {movement.reason}",
        metadata={
            "movement_id": movement.id,
            "reference_id": movement.reference_id,
            "reference_type": ReferenceType(movement.reference_type).value if movement.reference_type else None,
            "linked_movement_id": movement.linked_movement_id,
        },
    )


def _mark_failed(db: Session, ctx: CallerContext, movement_id: str, message: str) -> None:
    """Record a failed execution in its own transaction, after the stock change was rolled back."""
    try:
        apply_transaction_timeout(db)
        movement = _find_movement(db, ctx.organization_id, movement_id, lock=True)
        if movement is None or movement.status not in EXECUTABLE_STATUSES:
            db.rollback()
            return
        _transition(movement, MovementStatus.IN_PROGRESS)
        _transition(movement, MovementStatus.FAILED)
        movement.failure_reason = message
        movement.executed_by = ctx.user_id
        movement.executed_at = utcnow()
        db.flush()
        payload = _payload(movement, error=message)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Could not mark movement %s as failed: %s", movement_id, e)
        return
    event_bus.publish("movement.failed", payload)


def execute_movement(db: Session, ctx: CallerContext, movement_id: str) -> ExecuteResult:
    """Apply a PENDING or APPROVED movement to stock.

    Status, availability and the stock change are checked and applied in one
    locked transaction. If that fails the change is rolled back and the
    movement is marked FAILED separately.
    """
    validation_service.require_context(ctx)
    if not movement_id:
        raise ValidationError("movement_id is required")

    try:
        apply_transaction_timeout(db)
        movement = _find_movement(db, ctx.organization_id, movement_id, lock=True)
        if not movement:
            raise NotFoundError(f"Movement {movement_id} not found")
        if movement.status not in EXECUTABLE_STATUSES:
            raise InvalidStateError(
                f"Movement {movement_id} is {MovementStatus(movement.status).value} and cannot be executed"
            )
    except (NotFoundError, InvalidStateError, SQLAlchemyError) as e:
        return rollback_result(db, e, ExecuteResult, "Execute movement", movement_id=movement_id)

    try:
        _transition(movement, MovementStatus.IN_PROGRESS)
        previous, new = _apply_stock_change(db, ctx, movement)
        _transition(movement, MovementStatus.COMPLETED)
        movement.executed_by = ctx.user_id
        movement.executed_at = utcnow()
        db.flush()
        payload = _payload(movement, previous_quantity=previous, new_quantity=new)
        db.commit()
    except (NotFoundError, ConflictError, SQLAlchemyError) as e:
        db.rollback()
        error = as_inventory_error(e, "Execute movement")
        logger.warning("Movement %s failed: %s", movement_id, error.message)
        _mark_failed(db, ctx, movement_id, error.message)
        return ExecuteResult.from_error(error, movement_id=movement_id, status=MovementStatus.FAILED)

    event_bus.publish_all([
        ("movement.completed", payload),
        ("inventory.updated", {
            "organization_id": payload["organization_id"],
            "warehouse_id": payload["warehouse_id"],
            "sku": payload["sku"],
            "previous_quantity": previous,
            "new_quantity": new,
            "movement_id": movement_id,
        }),
    ])
    logger.info("Executed movement %s: %s -> %s", movement_id, previous, new)
    return ExecuteResult(
        movement_id=movement_id, status=MovementStatus.COMPLETED, previous_quantity=previous, new_quantity=new
    )


def cancel_movement(db: Session, ctx: CallerContext, movement_id: str, reason: str) -> ExecuteResult:
    """Cancel a PENDING or APPROVED movement. The other leg of a transfer is left alone."""
    validation_service.require_context(ctx)
    if not movement_id:
        raise ValidationError("movement_id is required")
    reason = validation_service.require_reason(reason)

    try:
        movement = _find_movement(db, ctx.organization_id, movement_id, lock=True)
        if not movement:
            raise NotFoundError(f"Movement {movement_id} not found")
        if movement.status in (MovementStatus.COMPLETED, MovementStatus.CANCELLED):
            raise InvalidStateError(
                f"Cannot cancel movement in '{MovementStatus(movement.status).value}' status"
            )
        _transition(movement, MovementStatus.CANCELLED)
        movement.cancelled_by = ctx.user_id
        movement.cancelled_at = utcnow()
        movement.cancellation_reason = reason
        db.flush()
        payload = _payload(movement, reason=reason)
        db.commit()
    except (NotFoundError, ConflictError, SQLAlchemyError) as e:
        return rollback_result(db, e, ExecuteResult, "Cancel movement", movement_id=movement_id)

    event_bus.publish("movement.cancelled", payload)
    return ExecuteResult(movement_id=movement_id, status=MovementStatus.CANCELLED)


# --- Queries ---

def get_movement(db: Session, ctx: CallerContext, movement_id: str) -> MovementOut:
    movement = _find_movement(db, ctx.organization_id, movement_id)
    if not movement:
        raise NotFoundError(f"Movement {movement_id} not found")
    return MovementOut.model_validate(movement)


def list_movements(db: Session, ctx: CallerContext, filters: MovementFilter | None = None) -> MovementPage:
    filters = filters or MovementFilter()
    page = max(filters.page, 1)
    page_size = min(max(filters.page_size, 1), MAX_PAGE_SIZE)

    q = db.query(StockMovement).filter(StockMovement.organization_id == ctx.organization_id)
    if filters.sku:
        q = q.filter(StockMovement.sku == filters.sku)
    if filters.warehouse_id:
        q = q.filter(StockMovement.warehouse_id == filters.warehouse_id)
    if filters.type:
        q = q.filter(StockMovement.type == filters.type)
    if filters.status:
        q = q.filter(StockMovement.status == filters.status)
    if filters.reference_id:
        q = q.filter(StockMovement.reference_id == filters.reference_id)
    if filters.start_date:
        q = q.filter(StockMovement.created_at >= filters.start_date)
    if filters.end_date:
        q = q.filter(StockMovement.created_at <= filters.end_date)

    total = q.count()
    movements = (
        q.order_by(StockMovement.created_at.desc(), StockMovement.id)
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return MovementPage(
        items=[MovementOut.model_validate(m) for m in movements], total=total, page=page, page_size=page_size
    )


def sku_movement_history(db: Session, ctx: CallerContext, sku: str, limit: int = 50) -> list[MovementOut]:
    movements = (
        db.query(StockMovement)
        .filter(StockMovement.organization_id == ctx.organization_id, StockMovement.sku == sku)
        .order_by(StockMovement.created_at.desc(), StockMovement.id)
        .limit(min(max(limit, 1), MAX_PAGE_SIZE))
        .all()
    )
    return [MovementOut.model_validate(m) for m in movements]


def movement_summary(db: Session, ctx: CallerContext, days: int = 30) -> MovementSummary:
    """Counts and quantities per movement type over the last ``days`` days.

    Inbound and outbound totals only include COMPLETED movements.
    """
    since = utcnow() - timedelta(days=days)
    movements = (
        db.query(StockMovement)
        .filter(StockMovement.organization_id == ctx.organization_id, StockMovement.created_at >= since)
        .all()
    )

    by_type: dict[str, MovementTypeTotals] = defaultdict(MovementTypeTotals)
    by_status: dict[str, int] = defaultdict(int)
    inbound = outbound = 0
    for m in movements:
        totals = by_type[MovementType(m.type).value]
        totals.count += 1
        totals.quantity += m.quantity
        by_status[MovementStatus(m.status).value] += 1
        if m.status == MovementStatus.COMPLETED:
            direction = direction_for(m.type)
            if direction == MovementDirection.INBOUND:
                inbound += m.quantity
            elif direction == MovementDirection.OUTBOUND:
                outbound += m.quantity

    return MovementSummary(
        period_days=days,
        total_movements=len(movements),
        inbound_quantity=inbound,
        outbound_quantity=outbound,
        by_type=dict(by_type),
        by_status=dict(by_status),
    )
