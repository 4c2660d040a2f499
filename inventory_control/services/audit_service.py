import csv
import io
import json
import logging
import threading
from datetime import timedelta

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from inventory_control.config import settings
from inventory_control.database import utcnow
from inventory_control.models.audit_log import InventoryAuditLog
from inventory_control.schemas.audit import ActivityCount, AuditEntryOut, AuditPage, AuditQuery, VarianceSummary
from inventory_control.schemas.common import CallerContext
from inventory_control.services.variance import variance_percent

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

EXPORT_COLUMNS = [
    "id", "created_at", "user_id", "warehouse_id", "sku", "action",
    "previous_quantity", "new_quantity", "previous_reserved", "new_reserved",
    "variance", "variance_percent", "reason_code", "notes",
]


class AuditIntegrityMonitor:
    """Counts audit writes that were dropped so the gap stays visible."""

    def __init__(self):
        self._lock = threading.Lock()
        self.failures = 0
        self.last_error: str | None = None

    def record_failure(self, error: str) -> None:
        with self._lock:
            self.failures += 1
            self.last_error = error

    def reset(self) -> None:
        with self._lock:
            self.failures = 0
            self.last_error = None


integrity_monitor = AuditIntegrityMonitor()


def _build_entry(ctx: CallerContext, **fields) -> InventoryAuditLog:
    metadata = fields.pop("metadata", None) or {}
    return InventoryAuditLog(
        organization_id=ctx.organization_id,
        user_id=ctx.user_id,
        details=json.dumps(metadata, default=str),
        **fields,
    )


def record_entry(
    db: Session,
    ctx: CallerContext,
    *,
    warehouse_id: str,
    sku: str,
    action: str,
    previous_quantity: int,
    new_quantity: int,
    previous_reserved: int | None = None,
    new_reserved: int | None = None,
    reason_code: str = "",
    notes: str = "",
    metadata: dict | None = None,
) -> InventoryAuditLog | None:
    """Append an audit entry inside the caller's open transaction.

    The insert runs in a SAVEPOINT. If it fails the savepoint is rolled back,
    the failure is logged and counted, and the caller's mutation carries on.
    """
    # Flush the caller's own changes first so their errors are not mistaken for audit failures
    db.flush()

    variance = new_quantity - previous_quantity
    try:
        with db.begin_nested():
            entry = _build_entry(
                ctx,
                warehouse_id=warehouse_id,
                sku=sku,
                action=str(getattr(action, "value", action)),
                previous_quantity=previous_quantity,
                new_quantity=new_quantity,
                previous_reserved=previous_reserved,
                new_reserved=new_reserved,
                variance=variance,
                variance_percent=variance_percent(variance, previous_quantity),
                reason_code=reason_code or "",
                notes=notes or "",
                metadata=metadata,
            )
            db.add(entry)
            db.flush()
    except SQLAlchemyError as e:
        integrity_monitor.record_failure(str(e))
        logger.error(
            "Audit write failed for %s %s in warehouse %s (org %s): %s",
            action, sku, warehouse_id, ctx.organization_id, e,
        )
        return None
    return entry


def to_out(entry: InventoryAuditLog) -> AuditEntryOut:
    return AuditEntryOut(
        id=entry.id,
        warehouse_id=entry.warehouse_id,
        user_id=entry.user_id,
        sku=entry.sku,
        action=entry.action,
        previous_quantity=entry.previous_quantity,
        new_quantity=entry.new_quantity,
        previous_reserved=entry.previous_reserved,
        new_reserved=entry.new_reserved,
        variance=entry.variance,
        variance_percent=entry.variance_percent,
        reason_code=entry.reason_code,
        notes=entry.notes,
        metadata=json.loads(entry.details) if entry.details else {},
        created_at=entry.created_at,
    )


def _filtered(db: Session, organization_id: str, query: AuditQuery):
    q = db.query(InventoryAuditLog).filter(InventoryAuditLog.organization_id == organization_id)
    if query.sku:
        q = q.filter(InventoryAuditLog.sku == query.sku)
    if query.warehouse_id:
        q = q.filter(InventoryAuditLog.warehouse_id == query.warehouse_id)
    if query.user_id:
        q = q.filter(InventoryAuditLog.user_id == query.user_id)
    if query.action:
        q = q.filter(InventoryAuditLog.action == query.action)
    if query.start_date:
        q = q.filter(InventoryAuditLog.created_at >= query.start_date)
    if query.end_date:
        q = q.filter(InventoryAuditLog.created_at <= query.end_date)
    return q


def _inverted_range(query: AuditQuery) -> bool:
    return bool(query.start_date and query.end_date and query.start_date > query.end_date)


def query_entries(db: Session, ctx: CallerContext, query: AuditQuery | None = None) -> AuditPage:
    query = query or AuditQuery()
    page = max(query.page, 1)
    page_size = min(max(query.page_size, 1), MAX_PAGE_SIZE)

    if _inverted_range(query):
        return AuditPage(items=[], total=0, page=page, page_size=page_size)

    q = _filtered(db, ctx.organization_id, query)
    total = q.count()
    entries = (
        q.order_by(InventoryAuditLog.created_at.desc(), InventoryAuditLog.id)
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return AuditPage(items=[to_out(e) for e in entries], total=total, page=page, page_size=page_size)


def entries_for_sku(db: Session, ctx: CallerContext, sku: str, warehouse_id: str | None = None) -> list[AuditEntryOut]:
    """Full history of one SKU, oldest first."""
    q = _filtered(db, ctx.organization_id, AuditQuery(sku=sku, warehouse_id=warehouse_id))
    return [to_out(e) for e in q.order_by(InventoryAuditLog.created_at, InventoryAuditLog.id).all()]


def variance_summary(db: Session, ctx: CallerContext, query: AuditQuery | None = None) -> VarianceSummary:
    query = query or AuditQuery()
    if _inverted_range(query):
        return VarianceSummary(total_variance=0, absolute_variance=0, positive_variance=0, negative_variance=0, item_count=0)

    variances = [v for (v,) in _filtered(db, ctx.organization_id, query).with_entities(InventoryAuditLog.variance)]
    return VarianceSummary(
        total_variance=sum(variances),
        absolute_variance=sum(abs(v) for v in variances),
        positive_variance=sum(v for v in variances if v > 0),
        negative_variance=sum(v for v in variances if v < 0),
        item_count=len(variances),
    )


def _activity_by(db: Session, ctx: CallerContext, column) -> list[ActivityCount]:
    rows = (
        db.query(column, func.count(InventoryAuditLog.id), func.coalesce(func.sum(InventoryAuditLog.variance), 0))
        .filter(InventoryAuditLog.organization_id == ctx.organization_id)
        .group_by(column)
        .order_by(func.count(InventoryAuditLog.id).desc(), column)
        .all()
    )
    return [ActivityCount(key=key, count=count, total_variance=total) for key, count, total in rows]


def activity_by_action(db: Session, ctx: CallerContext) -> list[ActivityCount]:
    return _activity_by(db, ctx, InventoryAuditLog.action)


def activity_by_user(db: Session, ctx: CallerContext) -> list[ActivityCount]:
    return _activity_by(db, ctx, InventoryAuditLog.user_id)


def export_csv(db: Session, ctx: CallerContext, query: AuditQuery | None = None) -> str:
    query = query or AuditQuery()
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(EXPORT_COLUMNS)
    if _inverted_range(query):
        return buf.getvalue()

    for entry in _filtered(db, ctx.organization_id, query).order_by(InventoryAuditLog.created_at, InventoryAuditLog.id):
        writer.writerow([
            entry.id, entry.created_at.isoformat(), entry.user_id, entry.warehouse_id, entry.sku, entry.action,
            entry.previous_quantity, entry.new_quantity,
            "" if entry.previous_reserved is None else entry.previous_reserved,
            "" if entry.new_reserved is None else entry.new_reserved,
            entry.variance, entry.variance_percent, entry.reason_code, entry.notes,
        ])
    return buf.getvalue()


def export_json(db: Session, ctx: CallerContext, query: AuditQuery | None = None) -> str:
    query = query or AuditQuery()
    if _inverted_range(query):
        return "[]"
    entries = _filtered(db, ctx.organization_id, query).order_by(InventoryAuditLog.created_at, InventoryAuditLog.id)
    return json.dumps([to_out(e).model_dump(mode="json") for e in entries], indent=2)


def entries_past_retention(db: Session, ctx: CallerContext, retention_days: int | None = None) -> int:
    """How many entries are older than the retention window. Purging is left to the archive job."""
    days = retention_days if retention_days is not None else settings.AUDIT_RETENTION_DAYS
    cutoff = utcnow() - timedelta(days=days)
    return (
        db.query(func.count(InventoryAuditLog.id))
        .filter(InventoryAuditLog.organization_id == ctx.organization_id, InventoryAuditLog.created_at < cutoff)
        .scalar()
    )
