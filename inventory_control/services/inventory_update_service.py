import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from inventory_control.config import settings
from inventory_control.database import utcnow
from inventory_control.events import event_bus
from inventory_control.exceptions import InventoryError, NotFoundError, ValidationError
from inventory_control.models.audit_log import AuditAction
from inventory_control.models.inventory_item import InventoryItem
from inventory_control.models.stock_movement import MovementStatus, MovementType, ReferenceType, StockMovement, direction_for
from inventory_control.schemas.common import CallerContext
from inventory_control.schemas.inventory_update import (
    BulkUpdateResult,
    QuantityUpdate,
    ReasonCode,
    UpdateOptions,
    UpdateResult,
    UpdateType,
)
from inventory_control.services import inventory_service, validation_service
from inventory_control.services.failures import as_inventory_error
from inventory_control.services.variance import variance_level, variance_percent

logger = logging.getLogger(__name__)

REASON_CODES = frozenset(code.value for code in ReasonCode)


def _thresholds(options: UpdateOptions) -> tuple[float, float, float]:
    return (
        options.warning_threshold if options.warning_threshold is not None else settings.VARIANCE_WARNING_THRESHOLD,
        options.error_threshold if options.error_threshold is not None else settings.VARIANCE_ERROR_THRESHOLD,
        options.auto_approve_threshold if options.auto_approve_threshold is not None else settings.AUTO_APPROVE_THRESHOLD,
    )


def _check_update(update: QuantityUpdate) -> list[str]:
    errors = validation_service.validate_sku_format(update.sku)
    if update.update_type == UpdateType.ABSOLUTE:
        errors += validation_service.validate_quantity(update.quantity)
    elif abs(update.quantity) > validation_service.MAX_QUANTITY:
        errors.append(f"Adjustment cannot exceed {validation_service.MAX_QUANTITY:,}")
    if update.reason_code not in REASON_CODES:
        errors.append(f"Invalid reason code '{update.reason_code}'")
    return errors


def _find_target(db: Session, ctx: CallerContext, update: QuantityUpdate) -> InventoryItem:
    stmt = select(InventoryItem).where(
        InventoryItem.organization_id == ctx.organization_id,
        InventoryItem.sku == update.sku.strip(),
    )
    if update.warehouse_id:
        stmt = stmt.where(InventoryItem.warehouse_id == update.warehouse_id)
    items = list(db.execute(stmt.execution_options(populate_existing=True)).scalars())
    if not items:
        raise NotFoundError(f"Inventory item {update.sku} not found")
    if len(items) > 1:
        raise ValidationError(f"SKU {update.sku} is stocked in several warehouses; warehouse_id is required")
    return items[0]


def _adjustment_movement(
    ctx: CallerContext, item: InventoryItem, variance: int, update: QuantityUpdate, options: UpdateOptions, status: MovementStatus
) -> StockMovement:
    movement_type = MovementType.ADJUSTMENT_ADD if variance > 0 else MovementType.ADJUSTMENT_REMOVE
    return StockMovement(
        organization_id=ctx.organization_id,
        warehouse_id=item.warehouse_id,
        sku=item.sku,
        quantity=abs(variance),
        type=movement_type,
        direction=direction_for(movement_type),
        status=status,
        reference_type=options.reference_type or ReferenceType.ADJUSTMENT,
        reference_id=options.reference_id,
        reason=update.reason_code,
        notes=validation_service.sanitize_text(update.notes),
        created_by=ctx.user_id,
    )


def _stage_update(
    db: Session, ctx: CallerContext, update: QuantityUpdate, options: UpdateOptions, events: list
) -> UpdateResult:
    """Apply one update to the session without committing.

    Raises InventoryError for rule failures so callers decide what to roll back.
    """
    errors = _check_update(update)
    if errors:
        raise ValidationError("; ".join(errors), sku=update.sku)

    warning, error, auto_approve = _thresholds(options)
    item = _find_target(db, ctx, update)
    previous = item.quantity
    new = update.quantity if update.update_type == UpdateType.ABSOLUTE else previous + update.quantity
    inventory_service.check_new_levels(item, new, item.reserved_quantity)

    variance = new - previous
    percent = variance_percent(variance, previous)
    result = UpdateResult(
        sku=item.sku,
        warehouse_id=item.warehouse_id,
        previous_quantity=previous,
        new_quantity=new,
        variance=variance,
        variance_percent=percent,
        variance_level=variance_level(percent, warning, error),
        requires_approval=abs(percent) > auto_approve,
    )

    if variance == 0:
        result.status = "UNCHANGED"
        return result

    if result.requires_approval:
        # Nothing changes until someone approves and executes the movement
        movement = _adjustment_movement(ctx, item, variance, update, options, MovementStatus.PENDING)
        db.add(movement)
        db.flush()
        result.status = "PENDING_APPROVAL"
        result.movement_id = movement.id
        events.append(("movement.created", {
            "organization_id": ctx.organization_id,
            "movement_id": movement.id,
            "sku": item.sku,
            "warehouse_id": item.warehouse_id,
            "quantity": movement.quantity,
            "requires_approval": True,
        }))
        return result

    movement = _adjustment_movement(ctx, item, variance, update, options, MovementStatus.COMPLETED)
    movement.executed_by = ctx.user_id
    movement.executed_at = utcnow()
    db.add(movement)
    db.flush()

    inventory_service.change_quantity(
        db,
        ctx,
        item,
        variance,
        action=AuditAction.UPDATE,
        reason_code=update.reason_code,
        notes=validation_service.sanitize_text(update.notes),
        metadata={
            "movement_id": movement.id,
            "update_type": update.update_type.value,
            "reference_id": options.reference_id,
        },
    )
    result.status = "APPLIED"
    result.movement_id = movement.id
    events.append(("inventory.updated", {
        "organization_id": ctx.organization_id,
        "warehouse_id": item.warehouse_id,
        "sku": item.sku,
        "previous_quantity": previous,
        "new_quantity": new,
        "reason_code": update.reason_code,
    }))
    return result


def update_quantity(
    db: Session, ctx: CallerContext, update: QuantityUpdate, options: UpdateOptions | None = None
) -> UpdateResult:
    """Set (ABSOLUTE) or shift (ADJUSTMENT) the on-hand quantity of one item.

    Runs without a row lock and relies on the item's version column; a
    concurrent write is retried once before the update reports a conflict.
    Changes larger than the auto-approve threshold are parked as a PENDING
    adjustment movement instead of being applied.
    """
    validation_service.require_context(ctx)
    options = options or UpdateOptions()
    attempts = 2 if options.retry_on_conflict else 1

    for attempt in range(1, attempts + 1):
        events: list = []
        try:
            result = _stage_update(db, ctx, update, options, events)
            db.commit()
        except StaleDataError as e:
            db.rollback()
            if attempt < attempts:
                logger.info("Version conflict updating %s, retrying", update.sku)
                continue
            error = as_inventory_error(e, "Update quantity")
            return UpdateResult.from_error(error, sku=update.sku, warehouse_id=update.warehouse_id)
        except (InventoryError, SQLAlchemyError) as e:
            db.rollback()
            error = as_inventory_error(e, "Update quantity")
            return UpdateResult.from_error(error, sku=update.sku, warehouse_id=update.warehouse_id)

        event_bus.publish_all(events)
        return result


def update_bulk(
    db: Session,
    ctx: CallerContext,
    updates: list[QuantityUpdate],
    options: UpdateOptions | None = None,
    atomic: bool = False,
) -> BulkUpdateResult:
    """Apply several updates. ``atomic`` commits all of them or none."""
    validation_service.require_context(ctx)
    options = options or UpdateOptions()

    if not atomic:
        results = [update_quantity(db, ctx, update, options) for update in updates]
        success_count = sum(1 for r in results if r.success)
        return BulkUpdateResult(
            success=success_count == len(results),
            atomic=False,
            total=len(results),
            success_count=success_count,
            error_count=len(results) - success_count,
            results=results,
        )

    events: list = []
    results: list[UpdateResult] = []
    try:
        for update in updates:
            results.append(_stage_update(db, ctx, update, options, events))
        db.commit()
    except (InventoryError, SQLAlchemyError) as e:
        db.rollback()
        error = as_inventory_error(e, "Bulk update")
        failed_sku = updates[len(results)].sku if len(results) < len(updates) else ""
        logger.warning("Atomic bulk update rolled back at %s: %s", failed_sku, error.message)
        return BulkUpdateResult(
            success=False,
            atomic=True,
            total=len(updates),
            success_count=0,
            error_count=1,
            results=[UpdateResult.from_error(error, sku=failed_sku)],
            error=f"Atomic update failed - all changes rolled back: {error.message}",
        )

    event_bus.publish_all(events)
    return BulkUpdateResult(
        success=True, atomic=True, total=len(results), success_count=len(results), error_count=0, results=results
    )
