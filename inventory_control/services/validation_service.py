import re
from typing import Any

from sqlalchemy.orm import Session

from inventory_control.exceptions import ValidationError
from inventory_control.models.inventory_item import InventoryItem
from inventory_control.models.product import Product, ProductStatus
from inventory_control.models.warehouse import Warehouse, WarehouseStatus
from inventory_control.schemas.common import CallerContext
from inventory_control.schemas.validation import BatchValidationResult, ValidationInput, ValidationResult

MAX_QUANTITY = 10_000_000
SKU_MIN_LENGTH = 3
SKU_MAX_LENGTH = 100

_SKU_CHARS = re.compile(r"^[A-Za-z0-9-]+$")
_SCRIPT_BLOCK = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_HTML_TAG = re.compile(r"<[^>]*>")


def require_context(ctx: CallerContext | None) -> None:
    if ctx is None or not ctx.organization_id:
        raise ValidationError("organization_id is required")
    if not ctx.user_id:
        raise ValidationError("user_id is required")


def sanitize_text(value: str | None) -> str:
    """Strip script blocks and HTML tags from free text."""
    if not value:
        return ""
    value = _SCRIPT_BLOCK.sub("", value)
    value = _HTML_TAG.sub("", value)
    return value.strip()


def require_reason(reason: str | None) -> str:
    cleaned = sanitize_text(reason)
    if not cleaned:
        raise ValidationError("A reason is required")
    return cleaned


def validate_sku_format(sku: Any) -> list[str]:
    if sku is None or not isinstance(sku, str) or not sku.strip():
        return ["SKU is required"]
    sku = sku.strip()
    if len(sku) < SKU_MIN_LENGTH:
        return [f"SKU must be at least {SKU_MIN_LENGTH} characters"]
    if len(sku) > SKU_MAX_LENGTH:
        return [f"SKU must be at most {SKU_MAX_LENGTH} characters"]
    if not _SKU_CHARS.match(sku):
        return ["SKU can only contain letters, numbers, and hyphens"]
    return []


def validate_quantity(quantity: Any) -> list[str]:
    if quantity is None:
        return ["Quantity is required"]
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        return ["Quantity must be an integer"]
    if quantity < 0:
        return ["Quantity cannot be negative"]
    if quantity > MAX_QUANTITY:
        return [f"Quantity cannot exceed {MAX_QUANTITY:,}"]
    return []


def validate_warehouse(db: Session, warehouse_id: str, organization_id: str) -> list[str]:
    warehouse = (
        db.query(Warehouse)
        .filter(Warehouse.id == warehouse_id, Warehouse.organization_id == organization_id)
        .first()
    )
    if not warehouse:
        return [f"Warehouse '{warehouse_id}' not found or not accessible"]
    if warehouse.status != WarehouseStatus.ACTIVE:
        return [f"Warehouse '{warehouse_id}' is not active"]
    return []


def validate_product(db: Session, sku: str, organization_id: str) -> list[str]:
    product = (
        db.query(Product)
        .filter(Product.sku == sku, Product.organization_id == organization_id)
        .first()
    )
    if not product:
        return [f"Product with SKU '{sku}' not found or not accessible"]
    if product.status != ProductStatus.ACTIVE:
        return [f"Product with SKU '{sku}' is not active"]
    return []


def validate(db: Session, data: ValidationInput) -> ValidationResult:
    """Run every rule and collect failures instead of stopping at the first one."""
    if data is None:
        raise ValidationError("Validation input is required")
    if not data.organization_id:
        raise ValidationError("organization_id is required")

    errors = validate_sku_format(data.sku)
    errors += validate_quantity(data.quantity)

    if data.warehouse_id:
        errors += validate_warehouse(db, data.warehouse_id, data.organization_id)

    # Only look the product up when the SKU is well formed
    if not validate_sku_format(data.sku):
        errors += validate_product(db, data.sku.strip(), data.organization_id)

    return ValidationResult(valid=not errors, errors=errors)


def validate_for_create(db: Session, data: ValidationInput) -> ValidationResult:
    result = validate(db, data)
    errors = list(result.errors)

    if not validate_sku_format(data.sku):
        sku = data.sku.strip()
        exists = (
            db.query(InventoryItem.id)
            .filter(InventoryItem.organization_id == data.organization_id, InventoryItem.sku == sku)
            .first()
        )
        if exists:
            errors.append(f"SKU '{sku}' already exists - duplicate not allowed")

    return ValidationResult(valid=not errors, errors=errors)


def validate_batch(db: Session, items: list[ValidationInput]) -> BatchValidationResult:
    results = [validate(db, item) for item in items]
    valid_count = sum(1 for r in results if r.valid)
    return BatchValidationResult(
        valid=valid_count == len(results),
        total=len(results),
        valid_count=valid_count,
        invalid_count=len(results) - valid_count,
        results=results,
    )


def error_field(message: str) -> str:
    """Best guess at which input field a validation message is about."""
    lowered = message.lower()
    if "sku" in lowered:
        return "sku"
    if "quantity" in lowered:
        return "quantity"
    if "warehouse" in lowered:
        return "warehouseId"
    return "unknown"
