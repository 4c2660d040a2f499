class InventoryError(Exception):
    """Base class for inventory engine errors. ``code`` is stable and safe to expose to callers."""

    code = "INVENTORY_ERROR"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(InventoryError):
    code = "VALIDATION_ERROR"


class NotFoundError(InventoryError):
    """Absent or owned by another organization; the two cases are never distinguished."""

    code = "NOT_FOUND"


class PermissionDeniedError(InventoryError):
    code = "PERMISSION_DENIED"


class ConflictError(InventoryError):
    code = "CONFLICT"


class InsufficientStockError(ConflictError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, sku: str, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for SKU {sku}: requested {requested}, available {available}",
            sku=sku,
            requested=requested,
            available=available,
        )


class VersionConflictError(ConflictError):
    code = "VERSION_CONFLICT"


class InvalidStateError(ConflictError):
    code = "INVALID_STATE"


class InfrastructureError(InventoryError):
    code = "INFRASTRUCTURE_ERROR"


class ImmutableRecordError(InventoryError):
    code = "IMMUTABLE_RECORD"
