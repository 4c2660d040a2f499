import json
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from inventory_control.config import settings
from inventory_control.database import apply_transaction_timeout, utcnow
from inventory_control.events import event_bus
from inventory_control.exceptions import (
    ConflictError,
    InvalidStateError,
    InventoryError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from inventory_control.models.cycle_count import (
    CycleCountLine,
    CycleCountLineStatus,
    CycleCountSession,
    CycleCountStatus,
    CycleCountType,
)
from inventory_control.models.inventory_item import InventoryItem
from inventory_control.models.stock_movement import ReferenceType
from inventory_control.schemas.common import CallerContext
from inventory_control.schemas.cycle_count import (
    BlindCountItem,
    CompletionLine,
    CountEntry,
    CountError,
    CycleCountCompletionResult,
    CycleCountSessionCreate,
    CycleCountSessionOut,
    GuidedCountItem,
    SubmitCountResult,
    VarianceReport,
    VarianceReportItem,
)
from inventory_control.schemas.inventory_update import QuantityUpdate, ReasonCode, UpdateOptions, UpdateType, VarianceLevel
from inventory_control.schemas.movement import ExecuteResult
from inventory_control.services import inventory_update_service, movement_service, validation_service
from inventory_control.services.failures import as_inventory_error
from inventory_control.services.variance import variance_level, variance_percent

logger = logging.getLogger(__name__)

_LINE_STATUS_BY_RESULT = {
    "APPLIED": CycleCountLineStatus.APPLIED,
    "PENDING_APPROVAL": CycleCountLineStatus.PENDING_APPROVAL,
    "UNCHANGED": CycleCountLineStatus.UNCHANGED,
}


def _get_session(db: Session, ctx: CallerContext, session_id: str, lock: bool = False) -> CycleCountSession:
    stmt = select(CycleCountSession).where(
        CycleCountSession.id == session_id,
        CycleCountSession.organization_id == ctx.organization_id,
    )
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    session = db.execute(stmt).scalar_one_or_none()
    if not session:
        raise NotFoundError(f"Cycle count session {session_id} not found")
    return session


def _require_in_progress(session: CycleCountSession, action: str) -> None:
    if session.status != CycleCountStatus.IN_PROGRESS:
        raise InvalidStateError(
            f"Cannot {action} cycle count session in '{CycleCountStatus(session.status).value}' status"
        )


def _line_for(session: CycleCountSession, sku: str) -> CycleCountLine:
    for line in session.lines:
        if line.sku == sku:
            return line
    raise NotFoundError(f"SKU {sku} is not part of cycle count session {session.id}")


def _session_out(session: CycleCountSession) -> CycleCountSessionOut:
    return CycleCountSessionOut(
        id=session.id,
        warehouse_id=session.warehouse_id,
        type=session.type,
        status=session.status,
        is_blind=session.is_blind,
        lock_items=session.lock_items,
        skus=json.loads(session.skus) if session.skus else [],
        item_count=len(session.lines),
        auto_approve_threshold=session.auto_approve_threshold,
        created_by=session.created_by,
        created_at=session.created_at,
        completed_by=session.completed_by,
        completed_at=session.completed_at,
    )


def _set_item_locks(db: Session, item_ids: list[str], locked: bool) -> None:
    if not item_ids:
        return
    for item in db.query(InventoryItem).filter(InventoryItem.id.in_(item_ids)).all():
        item.is_locked = locked


def _check_approver(ctx: CallerContext) -> None:
    if ctx.user_role not in movement_service.APPROVER_ROLES:
        raise PermissionDeniedError(f"Role '{ctx.user_role}' may not approve cycle count adjustments")


# --- Sessions ---

def create_session(db: Session, ctx: CallerContext, data: CycleCountSessionCreate) -> CycleCountSessionOut:
    """Open a count and snapshot the expected quantity of every covered item."""
    validation_service.require_context(ctx)
    skus = sorted({s.strip() for s in data.skus if s and s.strip()})
    if data.type == CycleCountType.PARTIAL and not skus:
        raise ValidationError("Partial cycle counts require at least one SKU")
    if data.auto_approve_threshold is not None and data.auto_approve_threshold < 0:
        raise ValidationError("auto_approve_threshold cannot be negative")

    try:
        errors = validation_service.validate_warehouse(db, data.warehouse_id, ctx.organization_id)
        if errors:
            raise NotFoundError(errors[0], warehouse_id=data.warehouse_id)

        apply_transaction_timeout(db)
        stmt = select(InventoryItem).where(
            InventoryItem.organization_id == ctx.organization_id,
            InventoryItem.warehouse_id == data.warehouse_id,
        )
        if data.type == CycleCountType.PARTIAL:
            stmt = stmt.where(InventoryItem.sku.in_(skus))
        stmt = stmt.order_by(InventoryItem.sku)
        if data.lock_items:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        items = list(db.execute(stmt).scalars())

        if not items:
            raise ValidationError(f"No inventory items to count in warehouse {data.warehouse_id}")
        missing = set(skus) - {item.sku for item in items}
        if missing:
            logger.warning("Cycle count skips SKUs with no stock row: %s", ", ".join(sorted(missing)))
        if data.lock_items:
            already = [item.sku for item in items if item.is_locked]
            if already:
                raise ConflictError(f"Items already locked by another cycle count: {', '.join(already)}")

        session = CycleCountSession(
            organization_id=ctx.organization_id,
            warehouse_id=data.warehouse_id,
            type=data.type,
            status=CycleCountStatus.IN_PROGRESS,
            is_blind=data.is_blind,
            lock_items=data.lock_items,
            skus=json.dumps(skus),
            auto_approve_threshold=data.auto_approve_threshold,
            notes=validation_service.sanitize_text(data.notes),
            created_by=ctx.user_id,
        )
        for item in items:
            session.lines.append(CycleCountLine(
                inventory_item_id=item.id,
                sku=item.sku,
                expected_quantity=item.quantity,
                status=CycleCountLineStatus.PENDING,
            ))
            if data.lock_items:
                item.is_locked = True
        db.add(session)
        db.flush()
        out = _session_out(session)
        db.commit()
    except InventoryError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        raise as_inventory_error(e, "Create cycle count") from e

    event_bus.publish("cycle_count.started", {
        "organization_id": ctx.organization_id,
        "session_id": out.id,
        "warehouse_id": out.warehouse_id,
        "type": out.type.value,
        "item_count": out.item_count,
    })
    logger.info("Started %s cycle count %s with %s item(s)", out.type.value, out.id, out.item_count)
    return out


def get_session(db: Session, ctx: CallerContext, session_id: str) -> CycleCountSessionOut:
    return _session_out(_get_session(db, ctx, session_id))


def list_sessions(
    db: Session, ctx: CallerContext, warehouse_id: str | None = None, status: CycleCountStatus | None = None
) -> list[CycleCountSessionOut]:
    q = db.query(CycleCountSession).filter(CycleCountSession.organization_id == ctx.organization_id)
    if warehouse_id:
        q = q.filter(CycleCountSession.warehouse_id == warehouse_id)
    if status:
        q = q.filter(CycleCountSession.status == status)
    return [_session_out(s) for s in q.order_by(CycleCountSession.created_at.desc()).all()]


def get_session_items(db: Session, ctx: CallerContext, session_id: str) -> list[BlindCountItem]:
    """Items to count. Blind sessions never expose the expected quantity."""
    session = _get_session(db, ctx, session_id)
    items = []
    for line in session.lines:
        fields = dict(
            line_id=line.id,
            sku=line.sku,
            counted_quantity=line.counted_quantity,
            status=line.status,
        )
        if session.is_blind:
            items.append(BlindCountItem(**fields))
        else:
            items.append(GuidedCountItem(expected_quantity=line.expected_quantity, **fields))
    return items


# --- Counting ---

def submit_cycle_count(db: Session, ctx: CallerContext, session_id: str, counts: list[CountEntry]) -> SubmitCountResult:
    """Record counted quantities. A later submission for the same SKU replaces the earlier one."""
    validation_service.require_context(ctx)
    session = _get_session(db, ctx, session_id, lock=True)
    _require_in_progress(session, "submit counts for")

    lines = {line.sku: line for line in session.lines}
    errors: list[CountError] = []
    accepted = 0
    now = utcnow()
    for entry in counts:
        sku = entry.sku.strip()
        line = lines.get(sku)
        if line is None:
            errors.append(CountError(sku=sku, message="SKU is not part of this cycle count"))
            continue
        quantity_errors = validation_service.validate_quantity(entry.counted_quantity)
        if quantity_errors:
            errors.append(CountError(sku=sku, message=quantity_errors[0]))
            continue

        line.counted_quantity = entry.counted_quantity
        line.variance = entry.counted_quantity - line.expected_quantity
        line.variance_percent = variance_percent(line.variance, line.expected_quantity)
        line.status = CycleCountLineStatus.COUNTED
        line.counted_by = ctx.user_id
        line.counted_at = now
        accepted += 1

    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise as_inventory_error(e, "Submit cycle count") from e

    return SubmitCountResult(success=not errors, session_id=session_id, accepted=accepted, errors=errors)


def complete_cycle_count_session(db: Session, ctx: CallerContext, session_id: str) -> CycleCountCompletionResult:
    """Reconcile stock to the counted quantities and close the session.

    Each counted line becomes an absolute quantity update. Updates whose
    variance exceeds the session's auto-approve threshold wait as PENDING
    adjustment movements; the rest are applied straight away.

    The session is claimed as COMPLETING before any line is touched, so a
    second caller is rejected even though every line commits on its own.
    """
    validation_service.require_context(ctx)
    try:
        apply_transaction_timeout(db)
        session = _get_session(db, ctx, session_id, lock=True)
        _require_in_progress(session, "complete")
        session.status = CycleCountStatus.COMPLETING
        session.completed_by = ctx.user_id
        db.commit()
    except InventoryError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        raise as_inventory_error(e, "Complete cycle count") from e

    options = UpdateOptions(
        auto_approve_threshold=session.auto_approve_threshold,
        reference_type=ReferenceType.CYCLE_COUNT,
        reference_id=session.id,
        retry_on_conflict=True,
    )
    warehouse_id = session.warehouse_id
    line_ids = [(line.id, line.sku, line.counted_quantity, line.status) for line in session.lines]
    item_ids = [line.inventory_item_id for line in session.lines]
    result = CycleCountCompletionResult(session_id=session_id, status=CycleCountStatus.COMPLETING)

    for line_id, sku, counted, line_status in line_ids:
        if counted is None:
            result.uncounted += 1
            result.lines.append(CompletionLine(sku=sku, status=CycleCountLineStatus.PENDING))
            continue
        if line_status != CycleCountLineStatus.COUNTED:
            logger.warning("Skipping %s in cycle count %s: line is already %s", sku, session_id, line_status)
            continue

        update = inventory_update_service.update_quantity(
            db,
            ctx,
            QuantityUpdate(
                sku=sku,
                quantity=counted,
                update_type=UpdateType.ABSOLUTE,
                reason_code=ReasonCode.CYCLE_COUNT.value,
                warehouse_id=warehouse_id,
                notes=f"Cycle count {session_id}",
            ),
            options,
        )
        status = _LINE_STATUS_BY_RESULT.get(update.status, CycleCountLineStatus.FAILED) if update.success else CycleCountLineStatus.FAILED

        line = db.get(CycleCountLine, line_id)
        line.status = status
        line.movement_id = update.movement_id
        line.error = update.error
        db.commit()

        if status == CycleCountLineStatus.APPLIED:
            result.applied += 1
        elif status == CycleCountLineStatus.PENDING_APPROVAL:
            result.pending_approval += 1
        elif status == CycleCountLineStatus.UNCHANGED:
            result.unchanged += 1
        else:
            result.failed += 1
        result.lines.append(CompletionLine(sku=sku, status=status, movement_id=update.movement_id, error=update.error))

    try:
        session = _get_session(db, ctx, session_id, lock=True)
        if session.lock_items:
            _set_item_locks(db, item_ids, False)
        session.status = CycleCountStatus.COMPLETED
        session.completed_by = ctx.user_id
        session.completed_at = utcnow()
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise as_inventory_error(e, "Complete cycle count") from e

    result.status = CycleCountStatus.COMPLETED
    event_bus.publish("cycle_count.completed", {
        "organization_id": ctx.organization_id,
        "session_id": session_id,
        "applied": result.applied,
        "pending_approval": result.pending_approval,
        "failed": result.failed,
    })
    logger.info(
        "Completed cycle count %s: %s applied, %s pending approval, %s failed",
        session_id, result.applied, result.pending_approval, result.failed,
    )
    return result


# --- Approval ---

def approve_count_adjustment(db: Session, ctx: CallerContext, session_id: str, sku: str) -> ExecuteResult:
    """Approve and execute an adjustment that was held for exceeding the auto-approve threshold."""
    validation_service.require_context(ctx)
    _check_approver(ctx)
    session = _get_session(db, ctx, session_id)
    line = _line_for(session, sku)
    if line.status != CycleCountLineStatus.PENDING_APPROVAL:
        raise InvalidStateError(f"Count for {sku} is not awaiting approval")
    line_id, movement_id = line.id, line.movement_id

    approved = movement_service.approve_movement(db, ctx, movement_id)
    if not approved.success:
        return approved
    executed = movement_service.execute_movement(db, ctx, movement_id)

    line = db.get(CycleCountLine, line_id)
    line.status = CycleCountLineStatus.APPLIED if executed.success else CycleCountLineStatus.FAILED
    line.error = executed.error
    db.commit()
    return executed


def reject_count_adjustment(db: Session, ctx: CallerContext, session_id: str, sku: str, reason: str) -> ExecuteResult:
    validation_service.require_context(ctx)
    _check_approver(ctx)
    reason = validation_service.require_reason(reason)
    session = _get_session(db, ctx, session_id)
    line = _line_for(session, sku)
    if line.status != CycleCountLineStatus.PENDING_APPROVAL:
        raise InvalidStateError(f"Count for {sku} is not awaiting approval")
    line_id, movement_id = line.id, line.movement_id

    cancelled = movement_service.cancel_movement(db, ctx, movement_id, reason)
    if cancelled.success:
        line = db.get(CycleCountLine, line_id)
        line.status = CycleCountLineStatus.REJECTED
        line.error = reason
        db.commit()
    return cancelled


# --- Reporting ---

def generate_variance_report(
    db: Session,
    ctx: CallerContext,
    session_id: str,
    warning_threshold: float | None = None,
    error_threshold: float | None = None,
) -> VarianceReport:
    warning = warning_threshold if warning_threshold is not None else settings.VARIANCE_WARNING_THRESHOLD
    error = error_threshold if error_threshold is not None else settings.VARIANCE_ERROR_THRESHOLD
    session = _get_session(db, ctx, session_id)

    items = []
    for line in session.lines:
        if line.counted_quantity is None:
            continue
        variance = line.counted_quantity - line.expected_quantity
        percent = variance_percent(variance, line.expected_quantity)
        items.append(VarianceReportItem(
            sku=line.sku,
            expected_quantity=line.expected_quantity,
            counted_quantity=line.counted_quantity,
            variance=variance,
            variance_percent=percent,
            variance_level=variance_level(percent, warning, error),
        ))

    return VarianceReport(
        session_id=session_id,
        warning_threshold=warning,
        error_threshold=error,
        total_items=len(session.lines),
        counted_items=len(items),
        items_with_variance=sum(1 for i in items if i.variance != 0),
        total_variance=sum(i.variance for i in items),
        absolute_variance=sum(abs(i.variance) for i in items),
        warning_count=sum(1 for i in items if i.variance_level == VarianceLevel.WARNING),
        error_count=sum(1 for i in items if i.variance_level == VarianceLevel.ERROR),
        items=items,
    )
