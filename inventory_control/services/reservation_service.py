import logging
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from inventory_control.config import settings
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
from inventory_control.models.audit_log import AuditAction
from inventory_control.models.inventory_item import InventoryItem
from inventory_control.models.order import Order, OrderStatus
from inventory_control.models.reservation import Reservation, ReservationStatus
from inventory_control.schemas.common import CallerContext
from inventory_control.schemas.reservation import (
    BatchReleaseResult,
    OrderReleaseResult,
    ReleaseResult,
    ReservationLine,
    ReservationOut,
    ReserveResult,
)
from inventory_control.services import inventory_service, notification_service, validation_service
from inventory_control.services.failures import as_inventory_error, rollback_result

logger = logging.getLogger(__name__)

FORCE_RELEASE_ROLES = frozenset({"ADMIN", "INVENTORY_MANAGER"})

FORCE_RELEASE_REASON_CODES = frozenset({
    "STUCK_ORDER",
    "ORDER_CANCELLED",
    "EXPIRED",
    "DUPLICATE",
    "ADMIN_OVERRIDE",
    "SYSTEM_RECOVERY",
})

EXPIRED_RELEASE_REASON = "Expired - automatic cleanup"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def check_force_release_permission(ctx: CallerContext) -> None:
    if ctx.user_role not in FORCE_RELEASE_ROLES:
        logger.warning(
            "User %s with role %s denied force release in org %s",
            ctx.user_id, ctx.user_role, ctx.organization_id,
        )
        raise PermissionDeniedError(
            f"Role '{ctx.user_role}' may not force release reservations. "
            f"Allowed roles: {', '.join(sorted(FORCE_RELEASE_ROLES))}"
        )


def _check_reason_code(reason_code: str) -> None:
    if reason_code not in FORCE_RELEASE_REASON_CODES:
        raise ValidationError(
            f"Invalid reason code '{reason_code}'. "
            f"Allowed: {', '.join(sorted(FORCE_RELEASE_REASON_CODES))}"
        )


def _merge_lines(lines: list[ReservationLine]) -> list[ReservationLine]:
    """Validate line shape, merge repeated (sku, warehouse) lines and sort them into lock order."""
    merged: dict[tuple[str, str], ReservationLine] = {}
    for line in lines:
        errors = validation_service.validate_sku_format(line.sku)
        if errors:
            raise ValidationError(errors[0], sku=line.sku)
        if line.quantity < 1:
            raise ValidationError(f"Quantity for {line.sku} must be at least 1", sku=line.sku)

        sku = line.sku.strip()
        key = (sku, line.warehouse_id or "")
        if key in merged:
            merged[key].quantity += line.quantity
        else:
            merged[key] = ReservationLine(sku=sku, quantity=line.quantity, warehouse_id=line.warehouse_id)

    return [merged[key] for key in sorted(merged)]


def _payload(reservation: Reservation) -> dict:
    return {
        "organization_id": reservation.organization_id,
        "reservation_id": reservation.id,
        "order_id": reservation.order_id,
        "sku": reservation.sku,
        "warehouse_id": reservation.warehouse_id,
        "quantity": reservation.quantity_reserved,
        "status": reservation.status.value if hasattr(reservation.status, "value") else reservation.status,
    }


def _active_for_order(db: Session, organization_id: str, order_id: str) -> list[Reservation]:
    return (
        db.query(Reservation)
        .filter(
            Reservation.organization_id == organization_id,
            Reservation.order_id == order_id,
            Reservation.status == ReservationStatus.ACTIVE,
        )
        .order_by(Reservation.sku, Reservation.warehouse_id)
        .all()
    )


def lock_reservation(db: Session, organization_id: str, reservation_id: str) -> Reservation | None:
    stmt = (
        select(Reservation)
        .where(Reservation.id == reservation_id, Reservation.organization_id == organization_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return db.execute(stmt).scalar_one_or_none()


def _lock_item_for(db: Session, reservation: Reservation) -> InventoryItem:
    item = inventory_service.find_item(
        db, reservation.organization_id, reservation.warehouse_id, reservation.sku, lock=True
    )
    if not item:
        raise NotFoundError(f"Inventory item {reservation.sku} not found in warehouse {reservation.warehouse_id}")
    return item


def _lock_source_item(db: Session, organization_id: str, line: ReservationLine) -> InventoryItem:
    if line.warehouse_id:
        item = inventory_service.find_item(db, organization_id, line.warehouse_id, line.sku, lock=True)
        if not item:
            raise NotFoundError(f"No inventory for SKU {line.sku} in warehouse {line.warehouse_id}")
        if item.available_quantity < line.quantity:
            raise InsufficientStockError(line.sku, line.quantity, item.available_quantity)
        return item

    items = inventory_service.lock_items_for_sku(db, organization_id, line.sku)
    if not items:
        raise NotFoundError(f"No inventory for SKU {line.sku}")
    for item in items:
        if item.available_quantity >= line.quantity:
            return item
    raise InsufficientStockError(line.sku, line.quantity, max(i.available_quantity for i in items))


def _close(reservation: Reservation, status: ReservationStatus, ctx: CallerContext, reason: str, reason_code: str | None):
    if reservation.status != ReservationStatus.ACTIVE:
        raise InvalidStateError(f"Reservation {reservation.id} is already {reservation.status}")
    reservation.status = status
    reservation.released_at = utcnow()
    reservation.released_by = ctx.user_id
    reservation.release_reason = reason
    reservation.release_reason_code = reason_code


def _release_many(
    db: Session,
    ctx: CallerContext,
    reservations: list[Reservation],
    *,
    status: ReservationStatus,
    action: AuditAction,
    reason: str,
    reason_code: str | None,
) -> tuple[list[dict], int, int]:
    """Release locked reservations, one audit entry each. Returns (payloads, skipped, quantity released)."""
    by_key: dict[tuple[str, str], Reservation] = {}
    for reservation in reservations:
        by_key.setdefault((reservation.warehouse_id, reservation.sku), reservation)
    # Stock rows are locked in (warehouse, sku) order
    items = {key: _lock_item_for(db, by_key[key]) for key in sorted(by_key)}

    released, skipped, total = [], 0, 0
    for reservation in reservations:
        if reservation.status != ReservationStatus.ACTIVE:
            skipped += 1
            continue
        item = items[(reservation.warehouse_id, reservation.sku)]
        _close(reservation, status, ctx, reason, reason_code)
        inventory_service.change_reserved(
            db,
            ctx,
            item,
            -reservation.quantity_reserved,
            action=action,
            reason_code=reason_code or "",
            notes=reason,
            metadata={"reservation_id": reservation.id, "order_id": reservation.order_id},
        )
        total += reservation.quantity_reserved
        released.append(_payload(reservation))
    return released, skipped, total


def order_snapshot(db: Session, organization_id: str, order_id: str) -> Order | None:
    """Load the order and detach it so it stays readable after commit."""
    order = db.query(Order).filter(Order.id == order_id, Order.organization_id == organization_id).first()
    if order is not None:
        db.expunge(order)
    return order


def _notify_quietly(order: Order | None, payload: dict) -> None:
    try:
        notification_service.notify_force_release(order, payload)
    except Exception as e:
        logger.error("Force release notification for %s failed: %s", payload.get("reservation_id"), e)


# ---------------------------------------------------------------------------
# Reserve / release
# ---------------------------------------------------------------------------

def reserve_stock(db: Session, ctx: CallerContext, order_id: str, lines: list[ReservationLine]) -> ReserveResult:
    """Reserve every line of an order or none of them."""
    validation_service.require_context(ctx)
    if not order_id:
        raise ValidationError("order_id is required")
    if not lines:
        raise ValidationError("At least one line item is required")
    merged = _merge_lines(lines)

    existing = _active_for_order(db, ctx.organization_id, order_id)
    if existing:
        reservations = [ReservationOut.model_validate(r) for r in existing]
        db.rollback()
        return ReserveResult(order_id=order_id, reservations=reservations, already_reserved=True)

    errors = []
    for line in merged:
        errors += validation_service.validate_product(db, line.sku, ctx.organization_id)
        if line.warehouse_id:
            errors += validation_service.validate_warehouse(db, line.warehouse_id, ctx.organization_id)
    if errors:
        db.rollback()
        return ReserveResult(success=False, error="; ".join(errors), error_code=ValidationError.code, order_id=order_id)

    try:
        apply_transaction_timeout(db)
        created = []
        for line in merged:
            item = _lock_source_item(db, ctx.organization_id, line)
            reservation = Reservation(
                organization_id=ctx.organization_id,
                order_id=order_id,
                sku=line.sku,
                warehouse_id=item.warehouse_id,
                inventory_item_id=item.id,
                quantity_reserved=line.quantity,
                status=ReservationStatus.ACTIVE,
                created_by=ctx.user_id,
            )
            db.add(reservation)
            db.flush()
            inventory_service.change_reserved(
                db,
                ctx,
                item,
                line.quantity,
                action=AuditAction.RESERVE,
                notes=f"Reserved for order {order_id}",
                metadata={"reservation_id": reservation.id, "order_id": order_id},
            )
            created.append(reservation)

        db.flush()
        reservations = [ReservationOut.model_validate(r) for r in created]
        events = [("reservation.created", _payload(r)) for r in created]
        db.commit()
    except (NotFoundError, ConflictError, SQLAlchemyError) as e:
        return rollback_result(db, e, ReserveResult, "Reserve", order_id=order_id)

    event_bus.publish_all(events)
    logger.info("Reserved %s line(s) for order %s", len(reservations), order_id)
    return ReserveResult(order_id=order_id, reservations=reservations)


def release_reservation(db: Session, ctx: CallerContext, reservation_id: str, reason: str = "") -> ReleaseResult:
    """Release an ACTIVE reservation. Releasing a finished reservation again is a no-op."""
    validation_service.require_context(ctx)
    if not reservation_id:
        raise ValidationError("reservation_id is required")
    reason = validation_service.sanitize_text(reason)

    try:
        apply_transaction_timeout(db)
        reservation = lock_reservation(db, ctx.organization_id, reservation_id)
        if not reservation:
            raise NotFoundError(f"Reservation {reservation_id} not found")
        if reservation.status != ReservationStatus.ACTIVE:
            status = reservation.status
            db.rollback()
            return ReleaseResult(reservation_id=reservation_id, status=status, already_released=True)

        payloads, _, quantity = _release_many(
            db, ctx, [reservation],
            status=ReservationStatus.RELEASED,
            action=AuditAction.RELEASE,
            reason=reason,
            reason_code=None,
        )
        db.commit()
    except (NotFoundError, ConflictError, SQLAlchemyError) as e:
        return rollback_result(db, e, ReleaseResult, "Release", reservation_id=reservation_id)

    event_bus.publish_all([("reservation.released", p) for p in payloads])
    return ReleaseResult(reservation_id=reservation_id, status=ReservationStatus.RELEASED, quantity_released=quantity)


def release_order_reservations(db: Session, ctx: CallerContext, order_id: str, reason: str = "") -> OrderReleaseResult:
    """Release every ACTIVE reservation held by an order."""
    validation_service.require_context(ctx)
    if not order_id:
        raise ValidationError("order_id is required")
    reason = validation_service.sanitize_text(reason)

    try:
        apply_transaction_timeout(db)
        stmt = (
            select(Reservation)
            .where(
                Reservation.organization_id == ctx.organization_id,
                Reservation.order_id == order_id,
                Reservation.status == ReservationStatus.ACTIVE,
            )
            .order_by(Reservation.warehouse_id, Reservation.sku)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        reservations = list(db.execute(stmt).scalars())
        payloads, _, quantity = _release_many(
            db, ctx, reservations,
            status=ReservationStatus.RELEASED,
            action=AuditAction.RELEASE,
            reason=reason,
            reason_code=None,
        )
        db.commit()
    except (NotFoundError, ConflictError, SQLAlchemyError) as e:
        return rollback_result(db, e, OrderReleaseResult, "Release order", order_id=order_id)

    event_bus.publish_all([("reservation.released", p) for p in payloads])
    return OrderReleaseResult(order_id=order_id, released_count=len(payloads), total_quantity_released=quantity)


def fulfill_reservation(db: Session, ctx: CallerContext, reservation_id: str) -> ReleaseResult:
    """Ship against a reservation: the hold and the on-hand stock drop together."""
    validation_service.require_context(ctx)
    if not reservation_id:
        raise ValidationError("reservation_id is required")

    try:
        apply_transaction_timeout(db)
        reservation = lock_reservation(db, ctx.organization_id, reservation_id)
        if not reservation:
            raise NotFoundError(f"Reservation {reservation_id} not found")
        if reservation.status != ReservationStatus.ACTIVE:
            raise InvalidStateError(f"Cannot fulfill reservation in '{reservation.status.value}' status")

        item = _lock_item_for(db, reservation)
        quantity = reservation.quantity_reserved
        _close(reservation, ReservationStatus.FULFILLED, ctx, "Fulfilled", None)
        inventory_service.change_reserved(
            db,
            ctx,
            item,
            -quantity,
            quantity_delta=-quantity,
            action=AuditAction.FULFILL,
            notes=f"Fulfilled order {reservation.order_id}",
            metadata={"reservation_id": reservation.id, "order_id": reservation.order_id},
        )
        payload = _payload(reservation)
        db.commit()
    except (NotFoundError, ConflictError, SQLAlchemyError) as e:
        return rollback_result(db, e, ReleaseResult, "Fulfill", reservation_id=reservation_id)

    event_bus.publish("reservation.fulfilled", payload)
    return ReleaseResult(reservation_id=reservation_id, status=ReservationStatus.FULFILLED, quantity_released=quantity)


def list_reservations(
    db: Session,
    ctx: CallerContext,
    order_id: str | None = None,
    sku: str | None = None,
    status: ReservationStatus | None = None,
) -> list[ReservationOut]:
    q = db.query(Reservation).filter(Reservation.organization_id == ctx.organization_id)
    if order_id:
        q = q.filter(Reservation.order_id == order_id)
    if sku:
        q = q.filter(Reservation.sku == sku)
    if status:
        q = q.filter(Reservation.status == status)
    return [ReservationOut.model_validate(r) for r in q.order_by(Reservation.created_at, Reservation.id).all()]


# ---------------------------------------------------------------------------
# Force release
# ---------------------------------------------------------------------------

def force_release(
    db: Session,
    ctx: CallerContext,
    reservation_id: str,
    reason: str,
    reason_code: str,
    notify_order_owner: bool = False,
) -> ReleaseResult:
    """Administrative release of a single ACTIVE reservation."""
    validation_service.require_context(ctx)
    check_force_release_permission(ctx)
    reason = validation_service.require_reason(reason)
    _check_reason_code(reason_code)
    if not reservation_id:
        raise ValidationError("reservation_id is required")

    try:
        apply_transaction_timeout(db)
        reservation = lock_reservation(db, ctx.organization_id, reservation_id)
        if not reservation or reservation.status != ReservationStatus.ACTIVE:
            raise NotFoundError(f"Active reservation {reservation_id} not found")

        order = order_snapshot(db, ctx.organization_id, reservation.order_id) if notify_order_owner else None
        payloads, _, quantity = _release_many(
            db, ctx, [reservation],
            status=ReservationStatus.FORCE_RELEASED,
            action=AuditAction.FORCE_RELEASE,
            reason=reason,
            reason_code=reason_code,
        )
        db.commit()
    except (NotFoundError, ConflictError, SQLAlchemyError) as e:
        return rollback_result(db, e, ReleaseResult, "Force release", reservation_id=reservation_id)

    payload = {**payloads[0], "reason": reason, "reason_code": reason_code, "released_by": ctx.user_id}
    logger.info("Reservation %s force released by %s (%s)", reservation_id, ctx.user_id, reason_code)
    event_bus.publish("reservation.force_released", payload)
    if notify_order_owner:
        _notify_quietly(order, payload)

    return ReleaseResult(
        reservation_id=reservation_id, status=ReservationStatus.FORCE_RELEASED, quantity_released=quantity
    )


def batch_force_release_by_sku(
    db: Session,
    ctx: CallerContext,
    sku: str,
    reason: str,
    reason_code: str = "ADMIN_OVERRIDE",
    older_than_minutes: int | None = None,
    max_batch_size: int | None = None,
    notify_order_owners: bool = False,
) -> BatchReleaseResult:
    """Force release up to one batch of ACTIVE reservations for a SKU in a single transaction."""
    validation_service.require_context(ctx)
    check_force_release_permission(ctx)
    reason = validation_service.require_reason(reason)
    _check_reason_code(reason_code)
    sku_errors = validation_service.validate_sku_format(sku)
    if sku_errors:
        raise ValidationError(sku_errors[0], sku=sku)
    limit = max_batch_size if max_batch_size is not None else settings.MAX_RELEASE_BATCH_SIZE
    if limit < 1:
        raise ValidationError("max_batch_size must be at least 1")
    if older_than_minutes is not None and older_than_minutes < 0:
        raise ValidationError("older_than_minutes cannot be negative")

    total_found = 0
    try:
        apply_transaction_timeout(db)
        stmt = select(Reservation).where(
            Reservation.organization_id == ctx.organization_id,
            Reservation.sku == sku.strip(),
            Reservation.status == ReservationStatus.ACTIVE,
        )
        if older_than_minutes is not None:
            stmt = stmt.where(Reservation.created_at < utcnow() - timedelta(minutes=older_than_minutes))
        stmt = (
            stmt.order_by(Reservation.created_at, Reservation.id)
            .limit(limit)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        reservations = list(db.execute(stmt).scalars())
        total_found = len(reservations)

        orders = {}
        if notify_order_owners:
            for order_id in {r.order_id for r in reservations}:
                orders[order_id] = order_snapshot(db, ctx.organization_id, order_id)

        payloads, skipped, quantity = _release_many(
            db, ctx, reservations,
            status=ReservationStatus.FORCE_RELEASED,
            action=AuditAction.FORCE_RELEASE,
            reason=reason,
            reason_code=reason_code,
        )
        db.commit()
    except (NotFoundError, ConflictError, SQLAlchemyError) as e:
        db.rollback()
        error = as_inventory_error(e, "Batch force release")
        logger.error("Batch force release for %s aborted: %s", sku, error.message)
        return BatchReleaseResult(success=False, total_found=total_found, errors=[error.message])

    logger.info("Batch force released %s reservation(s) for %s by %s", len(payloads), sku, ctx.user_id)
    event_bus.publish("reservation.batch_force_released", {
        "organization_id": ctx.organization_id,
        "sku": sku,
        "reason_code": reason_code,
        "released_count": len(payloads),
        "total_quantity_released": quantity,
        "reservation_ids": [p["reservation_id"] for p in payloads],
    })
    if notify_order_owners:
        for payload in payloads:
            _notify_quietly(orders.get(payload["order_id"]), {**payload, "reason": reason, "reason_code": reason_code})

    return BatchReleaseResult(
        success=True,
        total_found=total_found,
        released_count=len(payloads),
        skipped_count=skipped,
        total_quantity_released=quantity,
        released_ids=[p["reservation_id"] for p in payloads],
    )


def release_expired(
    db: Session,
    ctx: CallerContext,
    expiry_minutes: int | None = None,
    max_to_release: int | None = None,
    dry_run: bool = False,
    skip_active_orders: bool = False,
) -> BatchReleaseResult:
    """Sweep ACTIVE reservations older than the expiry window.

    ``dry_run`` reports what would be released and changes nothing.
    ``skip_active_orders`` leaves alone reservations whose order is still PROCESSING.
    """
    validation_service.require_context(ctx)
    check_force_release_permission(ctx)
    expiry = expiry_minutes if expiry_minutes is not None else settings.RESERVATION_EXPIRY_MINUTES
    limit = max_to_release if max_to_release is not None else settings.MAX_RELEASE_BATCH_SIZE
    if expiry < 0:
        raise ValidationError("expiry_minutes cannot be negative")
    if limit < 1:
        raise ValidationError("max_to_release must be at least 1")

    total_found = 0
    try:
        apply_transaction_timeout(db)
        stmt = (
            select(Reservation)
            .where(
                Reservation.organization_id == ctx.organization_id,
                Reservation.status == ReservationStatus.ACTIVE,
                Reservation.created_at < utcnow() - timedelta(minutes=expiry),
            )
            .order_by(Reservation.created_at, Reservation.id)
            .limit(limit)
        )
        if not dry_run:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        candidates = list(db.execute(stmt).scalars())
        total_found = len(candidates)

        to_release = candidates
        if skip_active_orders and candidates:
            busy = set(
                db.execute(
                    select(Order.id).where(
                        Order.organization_id == ctx.organization_id,
                        Order.id.in_(sorted({r.order_id for r in candidates})),
                        Order.status == OrderStatus.PROCESSING,
                    )
                ).scalars()
            )
            to_release = [r for r in candidates if r.order_id not in busy]
        skipped = total_found - len(to_release)

        if dry_run:
            db.rollback()
            return BatchReleaseResult(
                success=True,
                total_found=total_found,
                skipped_count=skipped,
                dry_run=True,
                would_release=len(to_release),
            )

        payloads, already_closed, quantity = _release_many(
            db, ctx, to_release,
            status=ReservationStatus.FORCE_RELEASED,
            action=AuditAction.FORCE_RELEASE,
            reason=EXPIRED_RELEASE_REASON,
            reason_code="EXPIRED",
        )
        db.commit()
    except (NotFoundError, ConflictError, SQLAlchemyError) as e:
        db.rollback()
        error = as_inventory_error(e, "Release expired")
        logger.error("Expired reservation sweep aborted: %s", error.message)
        return BatchReleaseResult(success=False, total_found=total_found, dry_run=dry_run, errors=[error.message])

    logger.info("Released %s expired reservation(s) in org %s", len(payloads), ctx.organization_id)
    event_bus.publish("reservation.expired_released", {
        "organization_id": ctx.organization_id,
        "released_count": len(payloads),
        "total_quantity_released": quantity,
        "reservation_ids": [p["reservation_id"] for p in payloads],
    })
    return BatchReleaseResult(
        success=True,
        total_found=total_found,
        released_count=len(payloads),
        skipped_count=skipped + already_closed,
        total_quantity_released=quantity,
        released_ids=[p["reservation_id"] for p in payloads],
    )
