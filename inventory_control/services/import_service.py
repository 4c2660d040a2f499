import csv
import io
import logging
import math
import uuid

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from inventory_control.config import settings
from inventory_control.database import apply_transaction_timeout
from inventory_control.events import event_bus
from inventory_control.exceptions import InventoryError, ValidationError
from inventory_control.models.audit_log import AuditAction
from inventory_control.schemas.common import CallerContext
from inventory_control.schemas.inventory_import import ImportOptions, ImportResult, ImportRowError
from inventory_control.schemas.validation import ValidationInput
from inventory_control.services import inventory_service, validation_service
from inventory_control.services.failures import as_inventory_error

logger = logging.getLogger(__name__)

REQUIRED_HEADERS = ("sku", "quantity")
OPTIONAL_HEADERS = ("warehouseid", "cost", "reorderpoint", "location")
TEMPLATE_COLUMNS = ["sku", "quantity", "warehouseId", "cost", "reorderPoint", "location"]

ATOMIC_FAILURE_MESSAGE = "Atomic import failed - all changes rolled back"


class _RowError(Exception):
    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message


def import_template() -> str:
    """Sample CSV showing every supported column."""
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(TEMPLATE_COLUMNS)
    writer.writerow(["WIDGET-001", "100", "", "4.50", "20", "A-01-01"])
    writer.writerow(["WIDGET-002", "35", "", "", "", "B-02-03"])
    return buf.getvalue()


# --- Parsing ---

def parse_csv(content: str) -> tuple[list[str], list[list[str]]]:
    """Split CSV text into lower-cased headers and non-blank data rows."""
    if content.startswith("\ufeff"):
        content = content[1:]
    content = content.replace("\r\n", "\n").replace("\r", "\n")

    rows = [row for row in csv.reader(io.StringIO(content)) if any(cell.strip() for cell in row)]
    if not rows:
        return [], []
    headers = [h.strip().lower() for h in rows[0]]
    return headers, rows[1:]


def check_headers(headers: list[str]) -> tuple[list[str], list[str]]:
    """Returns (errors, warnings) for a header row."""
    errors, warnings = [], []
    seen = set()
    for position, header in enumerate(headers, start=1):
        if not header:
            errors.append(f"Empty header in column {position}")
            continue
        if header in seen:
            errors.append(f"Duplicate header '{header}'")
        seen.add(header)
        if header not in REQUIRED_HEADERS and header not in OPTIONAL_HEADERS:
            warnings.append(f"Unknown column '{header}' will be ignored")
    for required in REQUIRED_HEADERS:
        if required not in seen:
            errors.append(f"Missing required header '{required}'")
    return errors, warnings


def _to_record(headers: list[str], cells: list[str]) -> dict[str, str]:
    return {
        header: cells[i].strip() if i < len(cells) else ""
        for i, header in enumerate(headers)
        if header
    }


def _dedupe(rows: list[tuple[int, dict[str, str]]], default_warehouse_id: str | None):
    """Keep the last row for each (sku, warehouse) pair, in the position of that last row."""
    latest: dict[tuple[str, str], tuple[int, dict[str, str]]] = {}
    warnings = []
    for row_number, record in rows:
        sku = record.get("sku", "")
        key = (sku, record.get("warehouseid") or default_warehouse_id or "") if sku else ("", f"row-{row_number}")
        if key in latest:
            warnings.append(f"Duplicate SKU '{sku}' found in file, using last occurrence")
            latest.pop(key)
        latest[key] = (row_number, record)
    return list(latest.values()), warnings


def _parse_int(value: str, label: str) -> int:
    if value == "":
        raise _RowError(label.lower(), f"{label} is required")
    try:
        return int(value)
    except ValueError:
        pass
    try:
        number = float(value)
    except ValueError:
        raise _RowError(label.lower(), f"{label} must be a numeric value, got '{value}'")
    if not math.isfinite(number):
        raise _RowError(label.lower(), f"{label} must be a finite number")
    raise _RowError(label.lower(), f"{label} must be an integer, got '{value}'")


# --- Rows ---

def _optional_fields(record: dict[str, str]) -> dict:
    fields = {}
    if record.get("cost"):
        try:
            cost = float(record["cost"])
        except ValueError:
            raise _RowError("cost", f"Cost must be a number, got '{record['cost']}'")
        if not math.isfinite(cost) or cost < 0:
            raise _RowError("cost", "Cost must be a non-negative number")
        fields["cost"] = cost
    if record.get("reorderpoint"):
        reorder_point = _parse_int(record["reorderpoint"], "reorderPoint")
        if reorder_point < 0:
            raise _RowError("reorderpoint", "reorderPoint cannot be negative")
        fields["reorder_point"] = reorder_point
    if record.get("location"):
        fields["location"] = validation_service.sanitize_text(record["location"])
    return fields


def _import_row(db: Session, ctx: CallerContext, record: dict[str, str], row_number: int,
                default_warehouse_id: str | None, import_id: str) -> str:
    """Create or update one stock row. Returns "created" or "updated"."""
    sku = record.get("sku", "")
    quantity = _parse_int(record.get("quantity", ""), "Quantity")
    warehouse_id = record.get("warehouseid") or default_warehouse_id
    if not warehouse_id:
        raise _RowError("warehouseId", "Warehouse ID is required (column or import option)")
    fields = _optional_fields(record)

    result = validation_service.validate(db, ValidationInput(
        organization_id=ctx.organization_id, sku=sku, quantity=quantity, warehouse_id=warehouse_id,
    ))
    if not result.valid:
        raise _RowError(validation_service.error_field(result.errors[0]), "; ".join(result.errors))

    item = inventory_service.find_item(db, ctx.organization_id, warehouse_id, sku, lock=True)
    if item is None:
        item = inventory_service.create_item(db, ctx, warehouse_id, sku, **fields)
        outcome, action = "created", AuditAction.CREATE
    else:
        for name, value in fields.items():
            setattr(item, name, value)
        outcome, action = "updated", AuditAction.IMPORT

    inventory_service.change_quantity(
        db,
        ctx,
        item,
        quantity - item.quantity,
        action=action,
        reason_code="IMPORT",
        notes=f"Bulk import {import_id}",
        metadata={"import_id": import_id, "row": row_number},
    )
    return outcome


def _fatal(import_id: str, message: str, warnings: list[str] | None = None, field: str = "file") -> ImportResult:
    logger.warning("Import %s rejected: %s", import_id, message)
    return ImportResult(
        success=False,
        import_id=import_id,
        error_count=1,
        total_errors=1,
        errors=[ImportRowError(row=0, field=field, message=message)],
        warnings=warnings or [],
    )


def import_inventory_csv(db: Session, content: str, options: ImportOptions) -> ImportResult:
    """Import stock levels from CSV text.

    By default every row stands alone and the result reports partial success.
    With ``atomic`` the first failing row rolls the whole file back.
    """
    if options is None or not options.organization_id:
        raise ValidationError("organization_id is required")
    if not options.user_id:
        raise ValidationError("user_id is required")
    if content is None:
        raise ValidationError("CSV content is required")

    ctx = CallerContext(organization_id=options.organization_id, user_id=options.user_id)
    import_id = str(uuid.uuid4())
    max_rows = options.max_rows if options.max_rows is not None else settings.IMPORT_MAX_ROWS
    max_size = (
        options.max_file_size_bytes if options.max_file_size_bytes is not None else settings.IMPORT_MAX_FILE_SIZE_BYTES
    )
    max_errors = settings.IMPORT_MAX_ERRORS_RETURNED

    size = len(content.encode("utf-8"))
    if size > max_size:
        return _fatal(import_id, f"File size {size} bytes exceeds maximum of {max_size} bytes")

    try:
        headers, data_rows = parse_csv(content)
    except csv.Error as e:
        return _fatal(import_id, f"CSV parse error: {e}")
    if not headers:
        return _fatal(import_id, "CSV file is empty")

    header_errors, warnings = check_headers(headers)
    if header_errors:
        return _fatal(import_id, "; ".join(header_errors), warnings, field="header")
    if not data_rows:
        return _fatal(import_id, "CSV file has no data rows", warnings)
    if len(data_rows) > max_rows:
        return _fatal(import_id, f"File has {len(data_rows)} data rows, exceeding maximum of {max_rows}", warnings)

    records = [(index + 2, _to_record(headers, cells)) for index, cells in enumerate(data_rows)]
    rows, duplicate_warnings = _dedupe(records, options.warehouse_id)
    warnings += duplicate_warnings

    created = updated = failed = processed = 0
    errors: list[ImportRowError] = []
    for row_number, record in rows:
        processed += 1
        row_error = None
        try:
            # One transaction per row, or one for the whole file when atomic
            if not options.atomic or processed == 1:
                apply_transaction_timeout(db)
            outcome = _import_row(db, ctx, record, row_number, options.warehouse_id, import_id)
            if not options.atomic:
                db.commit()
        except _RowError as e:
            row_error = ImportRowError(row=row_number, field=e.field, message=e.message, original_data=record)
        except (InventoryError, SQLAlchemyError) as e:
            error = as_inventory_error(e, f"Row {row_number}")
            row_error = ImportRowError(
                row=row_number,
                field=validation_service.error_field(error.message),
                message=error.message,
                original_data=record,
            )

        if row_error is None:
            if outcome == "created":
                created += 1
            else:
                updated += 1
            continue

        db.rollback()
        failed += 1
        if len(errors) < max_errors:
            errors.append(row_error)

        if options.atomic:
            errors.append(ImportRowError(row=0, field="transaction", message=ATOMIC_FAILURE_MESSAGE))
            logger.warning("Atomic import %s rolled back at row %s: %s", import_id, row_number, row_error.message)
            return ImportResult(
                success=False,
                import_id=import_id,
                total_rows=len(rows),
                skipped=len(rows) - processed,
                error_count=failed,
                total_errors=failed + 1,
                errors=errors,
                warnings=warnings,
            )
        if options.fail_on_first_error:
            break

    if options.atomic:
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Atomic import %s failed to commit: %s", import_id, e)
            return _fatal(import_id, ATOMIC_FAILURE_MESSAGE, warnings, field="transaction")

    success_count = created + updated
    result = ImportResult(
        success=failed == 0,
        partial_success=failed > 0 and success_count > 0,
        import_id=import_id,
        total_rows=len(rows),
        created=created,
        updated=updated,
        skipped=len(rows) - processed,
        success_count=success_count,
        error_count=failed,
        total_errors=failed,
        errors=errors,
        warnings=warnings,
    )
    event_bus.publish("inventory.import.completed", {
        "organization_id": ctx.organization_id,
        "import_id": import_id,
        "created": created,
        "updated": updated,
        "error_count": failed,
    })
    logger.info("Import %s: %s created, %s updated, %s failed", import_id, created, updated, failed)
    return result
