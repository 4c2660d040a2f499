from typing import Any

from pydantic import BaseModel


class ValidationInput(BaseModel):
    organization_id: str = ""
    sku: str | None = None
    quantity: Any = None
    warehouse_id: str | None = None


class ValidationResult(BaseModel):
    valid: bool
    errors: list[str] = []


class BatchValidationResult(BaseModel):
    valid: bool
    total: int
    valid_count: int
    invalid_count: int
    results: list[ValidationResult]
