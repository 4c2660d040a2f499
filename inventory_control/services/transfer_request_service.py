import logging
from datetime import datetime, timezone

from sqlalchemy import and_, case, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from inventory_control.database import apply_transaction_timeout, utcnow
from inventory_control.events import event_bus
from inventory_control.exceptions import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from inventory_control.models.audit_log import AuditAction
from inventory_control.models.inventory_item import InventoryItem
from inventory_control.models.reservation import Reservation, ReservationStatus
from inventory_control.models.transfer_request import (
    OPEN_TRANSFER_STATUSES,
    PRIORITY_RANK,
    TransferRequest,
    TransferStatus,
    TransferType,
)
from inventory_control.schemas.common import CallerContext
from inventory_control.schemas.transfer_request import (
    TransferFilter,
    TransferPage,
    TransferRequestCreate,
    TransferRequestOut,
    TransferRequestResult,
)
from inventory_control.services import (
    inventory_service,
    movement_service,
    notification_service,
    reservation_service,
    validation_service,
)
from inventory_control.services.failures import as_inventory_error, rollback_result

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

_priority_rank = case(
    {priority.value: rank for priority, rank in PRIORITY_RANK.items()},
    value=TransferRequest.priority,
    else_=0,
)


def _check_approver(ctx: CallerContext, action: str) -> None:
    if ctx.user_role not in movement_service.APPROVER_ROLES:
        raise PermissionDeniedError(
            f"Role '{ctx.user_role}' may not {action} transfer requests. "
            f"Allowed roles: {', '.join(sorted(movement_service.APPROVER_ROLES))}"
        )


def _naive_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _check_schedule(scheduled_at: datetime | None) -> None:
    if scheduled_at is None:
        raise ValidationError("Scheduled time is required for SCHEDULED transfers")
    if scheduled_at < utcnow():
        raise ValidationError("Scheduled time cannot be in the past")


def _find_transfer(db: Session, organization_id: str, transfer_id: str, lock: bool = False) -> TransferRequest | None:
    stmt = select(TransferRequest).where(
        TransferRequest.id == transfer_id, TransferRequest.organization_id == organization_id
    )
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return db.execute(stmt).scalar_one_or_none()


def _payload(transfer: TransferRequest, **extra) -> dict:
    return {
        "organization_id": transfer.organization_id,
        "transfer_id": transfer.id,
        "reservation_id": transfer.reservation_id,
        "order_id": transfer.order_id,
        "sku": transfer.sku,
        "quantity": transfer.quantity,
        "source_warehouse_id": transfer.source_warehouse_id,
        "target_warehouse_id": transfer.target_warehouse_id,
        "priority": transfer.priority.value if hasattr(transfer.priority, "value") else transfer.priority,
        "status": transfer.status.value if hasattr(transfer.status, "value") else transfer.status,
        **extra,
    }


def _change(db: Session, ctx: CallerContext, transfer_id: str, action: str, allowed, apply, topic: str):
    """Lock one request, check its status and apply ``apply`` to it in a single transaction."""
    if not transfer_id:
        raise ValidationError("transfer_id is required")
    try:
        apply_transaction_timeout(db)
        transfer = _find_transfer(db, ctx.organization_id, transfer_id, lock=True)
        if not transfer:
            raise NotFoundError(f"Transfer request {transfer_id} not found")
        if transfer.status not in allowed:
            raise InvalidStateError(
                f"Cannot {action} transfer request in '{TransferStatus(transfer.status).value}' status"
            )
        apply(transfer)
        db.flush()
        out = TransferRequestOut.model_validate(transfer)
        payload = _payload(transfer, changed_by=ctx.user_id)
        db.commit()
    except (ValidationError, NotFoundError, ConflictError, SQLAlchemyError) as e:
        return rollback_result(db, e, TransferRequestResult, f"{action.capitalize()} transfer request", transfer_id=transfer_id)

    event_bus.publish(topic, payload)
    return TransferRequestResult(transfer_id=transfer_id, status=out.status, transfer=out)


# --- Requests ---

def create_transfer_request(db: Session, ctx: CallerContext, data: TransferRequestCreate) -> TransferRequestResult:
    """Ask to move part or all of a reservation to another warehouse.

    IMMEDIATE requests are approved on creation and so need an approver role.
    SCHEDULED requests need a future ``scheduled_at``.
    """
    validation_service.require_context(ctx)
    if not data.reservation_id or not data.reservation_id.strip():
        raise ValidationError("reservation_id is required")
    if isinstance(data.quantity, bool) or data.quantity < 1:
        raise ValidationError("Quantity must be greater than 0", quantity=data.quantity)
    reason = validation_service.require_reason(data.reason)
    if data.source_warehouse_id == data.target_warehouse_id:
        raise ValidationError("Source and target warehouses must be different")
    scheduled_at = _naive_utc(data.scheduled_at)
    if data.transfer_type == TransferType.SCHEDULED:
        _check_schedule(scheduled_at)
    immediate = data.transfer_type == TransferType.IMMEDIATE
    if immediate:
        _check_approver(ctx, "auto-approve")

    try:
        apply_transaction_timeout(db)
        reservation = reservation_service.lock_reservation(db, ctx.organization_id, data.reservation_id.strip())
        if not reservation or reservation.status != ReservationStatus.ACTIVE:
            raise NotFoundError(f"Active reservation {data.reservation_id} not found")
        if reservation.warehouse_id != data.source_warehouse_id:
            raise ValidationError(
                f"Reservation {reservation.id} is held in warehouse {reservation.warehouse_id}, "
                f"not {data.source_warehouse_id}"
            )
        if data.quantity > reservation.quantity_reserved:
            raise ValidationError(
                f"Transfer quantity {data.quantity} exceeds reserved amount {reservation.quantity_reserved}"
            )
        errors = validation_service.validate_warehouse(db, data.target_warehouse_id, ctx.organization_id)
        if errors:
            raise NotFoundError(errors[0], warehouse_id=data.target_warehouse_id)

        open_id = db.execute(
            select(TransferRequest.id).where(
                TransferRequest.organization_id == ctx.organization_id,
                TransferRequest.reservation_id == reservation.id,
                TransferRequest.status.in_(OPEN_TRANSFER_STATUSES),
            )
        ).scalar()
        if open_id:
            raise ConflictError(f"Transfer request {open_id} is already open for reservation {reservation.id}")

        now = utcnow()
        transfer = TransferRequest(
            organization_id=ctx.organization_id,
            reservation_id=reservation.id,
            order_id=reservation.order_id,
            source_warehouse_id=data.source_warehouse_id,
            target_warehouse_id=data.target_warehouse_id,
            sku=reservation.sku,
            quantity=data.quantity,
            transfer_type=data.transfer_type,
            status=TransferStatus.APPROVED if immediate else TransferStatus.PENDING,
            priority=data.priority,
            reason=reason,
            scheduled_at=scheduled_at,
            requested_by=ctx.user_id,
            requested_at=now,
            approved_by=ctx.user_id if immediate else None,
            approved_at=now if immediate else None,
        )
        db.add(transfer)
        db.flush()
        out = TransferRequestOut.model_validate(transfer)
        payload = _payload(transfer, requested_by=ctx.user_id)
        db.commit()
    except (ValidationError, NotFoundError, ConflictError, SQLAlchemyError) as e:
        return rollback_result(db, e, TransferRequestResult, "Create transfer request")

    event_bus.publish("transfer_request.created", payload)
    logger.info(
        "Transfer request %s: %s x%s from %s to %s (%s)",
        out.id, out.sku, out.quantity, out.source_warehouse_id, out.target_warehouse_id, out.status.value,
    )
    return TransferRequestResult(transfer_id=out.id, status=out.status, transfer=out)


def approve_transfer(db: Session, ctx: CallerContext, transfer_id: str, notes: str = "") -> TransferRequestResult:
    validation_service.require_context(ctx)
    _check_approver(ctx, "approve")
    notes = validation_service.sanitize_text(notes)

    def apply(transfer: TransferRequest) -> None:
        transfer.status = TransferStatus.APPROVED
        transfer.approved_by = ctx.user_id
        transfer.approved_at = utcnow()
        if notes:
            transfer.notes = notes

    return _change(db, ctx, transfer_id, "approve", (TransferStatus.PENDING,), apply, "transfer_request.approved")


def reject_transfer(db: Session, ctx: CallerContext, transfer_id: str, reason: str) -> TransferRequestResult:
    validation_service.require_context(ctx)
    _check_approver(ctx, "reject")
    reason = validation_service.require_reason(reason)

    def apply(transfer: TransferRequest) -> None:
        transfer.status = TransferStatus.REJECTED
        transfer.rejected_by = ctx.user_id
        transfer.rejected_at = utcnow()
        transfer.rejection_reason = reason

    return _change(db, ctx, transfer_id, "reject", (TransferStatus.PENDING,), apply, "transfer_request.rejected")


def cancel_transfer(db: Session, ctx: CallerContext, transfer_id: str, reason: str) -> TransferRequestResult:
    """Withdraw a request that has not run yet. Finished requests cannot be cancelled."""
    validation_service.require_context(ctx)
    reason = validation_service.require_reason(reason)

    def apply(transfer: TransferRequest) -> None:
        transfer.status = TransferStatus.CANCELLED
        transfer.cancelled_by = ctx.user_id
        transfer.cancelled_at = utcnow()
        transfer.notes = reason

    return _change(db, ctx, transfer_id, "cancel", OPEN_TRANSFER_STATUSES, apply, "transfer_request.cancelled")


def reschedule_transfer(db: Session, ctx: CallerContext, transfer_id: str, scheduled_at: datetime) -> TransferRequestResult:
    validation_service.require_context(ctx)
    scheduled_at = _naive_utc(scheduled_at)
    _check_schedule(scheduled_at)

    def apply(transfer: TransferRequest) -> None:
        if transfer.transfer_type != TransferType.SCHEDULED:
            raise ValidationError(f"Transfer request {transfer.id} is not a SCHEDULED transfer")
        transfer.scheduled_at = scheduled_at

    return _change(db, ctx, transfer_id, "reschedule", OPEN_TRANSFER_STATUSES, apply, "transfer_request.rescheduled")


# --- Execution ---

def _lock_reservations(db: Session, transfer: TransferRequest) -> tuple[Reservation | None, Reservation | None]:
    """Lock the source reservation and the order's active hold at the target, in warehouse order."""
    stmt = (
        select(Reservation)
        .where(
            Reservation.organization_id == transfer.organization_id,
            Reservation.order_id == transfer.order_id,
            Reservation.sku == transfer.sku,
            or_(
                Reservation.id == transfer.reservation_id,
                and_(
                    Reservation.warehouse_id == transfer.target_warehouse_id,
                    Reservation.status == ReservationStatus.ACTIVE,
                ),
            ),
        )
        .order_by(Reservation.warehouse_id, Reservation.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    source = target = None
    for reservation in db.execute(stmt).scalars():
        if reservation.id == transfer.reservation_id:
            source = reservation
        else:
            target = reservation
    return source, target


def _lock_items(db: Session, ctx: CallerContext, transfer: TransferRequest) -> tuple[InventoryItem, InventoryItem]:
    items = {}
    for warehouse_id in sorted((transfer.source_warehouse_id, transfer.target_warehouse_id)):
        items[warehouse_id] = inventory_service.find_item(
            db, transfer.organization_id, warehouse_id, transfer.sku, lock=True
        )
    source = items[transfer.source_warehouse_id]
    if source is None:
        raise NotFoundError(f"Inventory item {transfer.sku} not found in warehouse {transfer.source_warehouse_id}")
    target = items[transfer.target_warehouse_id]
    if target is None:
        target = inventory_service.create_item(db, ctx, transfer.target_warehouse_id, transfer.sku)
    for item in (source, target):
        if item.is_locked:
            raise ConflictError(
                f"Inventory item {item.sku} in warehouse {item.warehouse_id} is locked by an open cycle count"
            )
    return source, target


def _move_hold(db: Session, ctx: CallerContext, transfer: TransferRequest) -> Reservation:
    """Move the units and their hold from source to target. Returns the reservation now holding them."""
    quantity = transfer.quantity
    reservation, target_reservation = _lock_reservations(db, transfer)
    if reservation is None or reservation.status != ReservationStatus.ACTIVE:
        raise InvalidStateError(f"Reservation {transfer.reservation_id} is no longer active")
    if reservation.warehouse_id != transfer.source_warehouse_id:
        raise InvalidStateError(
            f"Reservation {reservation.id} is no longer held in warehouse {transfer.source_warehouse_id}"
        )
    if reservation.quantity_reserved < quantity:
        raise InvalidStateError(
            f"Reservation {reservation.id} now holds {reservation.quantity_reserved}, fewer than {quantity}"
        )
    errors = validation_service.validate_warehouse(db, transfer.target_warehouse_id, transfer.organization_id)
    if errors:
        raise NotFoundError(errors[0], warehouse_id=transfer.target_warehouse_id)

    source_item, target_item = _lock_items(db, ctx, transfer)
    metadata = {
        "transfer_id": transfer.id,
        "reservation_id": reservation.id,
        "order_id": reservation.order_id,
        "source_warehouse_id": transfer.source_warehouse_id,
        "target_warehouse_id": transfer.target_warehouse_id,
    }
    inventory_service.change_reserved(
        db, ctx, source_item, -quantity,
        quantity_delta=-quantity,
        action=AuditAction.TRANSFER_OUT,
        reason_code="TRANSFER",
        notes=f"Transfer to {transfer.target_warehouse_id}: {quantity} units",
        metadata=metadata,
    )
    inventory_service.change_reserved(
        db, ctx, target_item, quantity,
        quantity_delta=quantity,
        action=AuditAction.TRANSFER_IN,
        reason_code="TRANSFER",
        notes=f"Transfer from {transfer.source_warehouse_id}: {quantity} units",
        metadata=metadata,
    )

    # Whole hold, nothing to merge with: the reservation itself moves and keeps its order link
    if target_reservation is None and reservation.quantity_reserved == quantity:
        reservation.warehouse_id = target_item.warehouse_id
        reservation.inventory_item_id = target_item.id
        return reservation

    reservation.quantity_reserved -= quantity
    if target_reservation is None:
        target_reservation = Reservation(
            organization_id=reservation.organization_id,
            order_id=reservation.order_id,
            sku=reservation.sku,
            warehouse_id=target_item.warehouse_id,
            inventory_item_id=target_item.id,
            quantity_reserved=quantity,
            status=ReservationStatus.ACTIVE,
            created_by=ctx.user_id,
        )
        db.add(target_reservation)
    else:
        target_reservation.quantity_reserved += quantity

    if reservation.quantity_reserved == 0:
        # Units already moved with the hold, so no stock change here
        reservation.status = ReservationStatus.RELEASED
        reservation.released_at = utcnow()
        reservation.released_by = ctx.user_id
        reservation.release_reason = f"Merged into the order's hold in warehouse {transfer.target_warehouse_id}"
        reservation.release_reason_code = "TRANSFER"
    db.flush()
    return target_reservation


def _mark_failed(db: Session, ctx: CallerContext, transfer_id: str, message: str) -> None:
    try:
        apply_transaction_timeout(db)
        transfer = _find_transfer(db, ctx.organization_id, transfer_id, lock=True)
        if transfer is None or transfer.status != TransferStatus.APPROVED:
            db.rollback()
            return
        transfer.status = TransferStatus.FAILED
        transfer.failure_reason = message
        db.flush()
        payload = _payload(transfer, error=message)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Could not mark transfer request %s as failed: %s", transfer_id, e)
        return
    event_bus.publish("transfer_request.failed", payload)


def execute_transfer(
    db: Session, ctx: CallerContext, transfer_id: str, notify_order_owner: bool = False
) -> TransferRequestResult:
    """Run an APPROVED request.

    Source stock and hold drop, target stock and hold rise, the reservation
    follows, and a COMPLETED TRANSFER_OUT / TRANSFER_IN pair is recorded, all
    in one locked transaction. If anything fails the change is rolled back
    and the request is marked FAILED separately.
    """
    validation_service.require_context(ctx)
    if not transfer_id:
        raise ValidationError("transfer_id is required")

    try:
        apply_transaction_timeout(db)
        transfer = _find_transfer(db, ctx.organization_id, transfer_id, lock=True)
        if not transfer:
            raise NotFoundError(f"Transfer request {transfer_id} not found")
        if transfer.status != TransferStatus.APPROVED:
            raise InvalidStateError(
                f"Transfer request {transfer_id} is {TransferStatus(transfer.status).value}, not APPROVED"
            )
    except (NotFoundError, ConflictError, SQLAlchemyError) as e:
        return rollback_result(db, e, TransferRequestResult, "Execute transfer request", transfer_id=transfer_id)

    try:
        holder = _move_hold(db, ctx, transfer)
        outbound, inbound = movement_service.record_reserved_transfer(
            db,
            ctx,
            transfer.source_warehouse_id,
            transfer.target_warehouse_id,
            transfer.sku,
            transfer.quantity,
            reason=transfer.reason or f"Transfer request {transfer.id}",
            reference_id=transfer.id,
        )
        transfer.status = TransferStatus.COMPLETED
        transfer.completed_at = utcnow()
        transfer.target_reservation_id = holder.id
        transfer.outbound_movement_id = outbound.id
        transfer.inbound_movement_id = inbound.id
        db.flush()
        out = TransferRequestOut.model_validate(transfer)
        payload = _payload(transfer, target_reservation_id=holder.id, executed_by=ctx.user_id)
        order = reservation_service.order_snapshot(db, ctx.organization_id, transfer.order_id) if notify_order_owner else None
        db.commit()
    except (NotFoundError, ConflictError, SQLAlchemyError) as e:
        db.rollback()
        error = as_inventory_error(e, "Execute transfer request")
        logger.warning("Transfer request %s failed: %s", transfer_id, error.message)
        _mark_failed(db, ctx, transfer_id, error.message)
        return TransferRequestResult.from_error(error, transfer_id=transfer_id, status=TransferStatus.FAILED)

    event_bus.publish("transfer_request.completed", payload)
    logger.info(
        "Transferred %s x%s for order %s from %s to %s",
        out.sku, out.quantity, out.order_id, out.source_warehouse_id, out.target_warehouse_id,
    )
    if notify_order_owner:
        try:
            notification_service.send_notification("transfer_request.completed", payload, order)
        except Exception as e:
            logger.error("Transfer notification for %s failed: %s", transfer_id, e)

    return TransferRequestResult(transfer_id=transfer_id, status=TransferStatus.COMPLETED, transfer=out)


# --- Queries ---

def get_transfer_request(db: Session, ctx: CallerContext, transfer_id: str) -> TransferRequestOut:
    transfer = _find_transfer(db, ctx.organization_id, transfer_id)
    if not transfer:
        raise NotFoundError(f"Transfer request {transfer_id} not found")
    return TransferRequestOut.model_validate(transfer)


def list_transfer_requests(db: Session, ctx: CallerContext, filters: TransferFilter | None = None) -> TransferPage:
    filters = filters or TransferFilter()
    page = max(filters.page, 1)
    page_size = min(max(filters.page_size, 1), MAX_PAGE_SIZE)

    q = db.query(TransferRequest).filter(TransferRequest.organization_id == ctx.organization_id)
    if filters.status:
        q = q.filter(TransferRequest.status == filters.status)
    if filters.source_warehouse_id:
        q = q.filter(TransferRequest.source_warehouse_id == filters.source_warehouse_id)
    if filters.target_warehouse_id:
        q = q.filter(TransferRequest.target_warehouse_id == filters.target_warehouse_id)
    if filters.priority:
        q = q.filter(TransferRequest.priority == filters.priority)

    total = q.count()
    if filters.sort_by_priority:
        q = q.order_by(_priority_rank.desc(), TransferRequest.requested_at.desc(), TransferRequest.id)
    else:
        q = q.order_by(TransferRequest.requested_at.desc(), TransferRequest.id)
    rows = q.offset((page - 1) * page_size).limit(page_size).all()
    return TransferPage(
        items=[TransferRequestOut.model_validate(r) for r in rows],
        total=total,
        page=page,
        page_size=page_size,
    )


def due_scheduled_transfers(db: Session, ctx: CallerContext, now: datetime | None = None) -> list[TransferRequestOut]:
    """APPROVED scheduled requests whose time has come, most urgent first."""
    validation_service.require_context(ctx)
    now = _naive_utc(now) or utcnow()
    rows = (
        db.query(TransferRequest)
        .filter(
            TransferRequest.organization_id == ctx.organization_id,
            TransferRequest.transfer_type == TransferType.SCHEDULED,
            TransferRequest.status == TransferStatus.APPROVED,
            TransferRequest.scheduled_at <= now,
        )
        .order_by(_priority_rank.desc(), TransferRequest.scheduled_at, TransferRequest.id)
        .all()
    )
    return [TransferRequestOut.model_validate(r) for r in rows]
