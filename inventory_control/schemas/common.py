from pydantic import BaseModel

from inventory_control.exceptions import InventoryError


class CallerContext(BaseModel):
    """Who is calling. Every query and mutation is scoped to ``organization_id``."""

    organization_id: str = ""
    user_id: str = ""
    user_role: str | None = None


class OperationResult(BaseModel):
    success: bool = True
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def from_error(cls, exc: InventoryError, **fields):
        return cls(success=False, error=exc.message, error_code=exc.code, **fields)
