import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from inventory_control.exceptions import ConflictError, InfrastructureError, InventoryError, VersionConflictError

logger = logging.getLogger(__name__)


def as_inventory_error(exc: Exception, operation: str) -> InventoryError:
    """Translate storage errors into the engine's error kinds."""
    if isinstance(exc, InventoryError):
        return exc
    if isinstance(exc, StaleDataError):
        return VersionConflictError(f"{operation}: record was changed concurrently, re-read and retry")
    if isinstance(exc, IntegrityError):
        return ConflictError(f"{operation}: conflicts with an existing record")
    if isinstance(exc, SQLAlchemyError):
        logger.error("%s failed with a database error: %s", operation, exc)
        return InfrastructureError(f"{operation} failed: database error")
    raise exc


def rollback_result(db: Session, exc: Exception, result_cls, operation: str, **fields):
    """Roll back the open transaction and turn ``exc`` into a failed result of ``result_cls``."""
    db.rollback()
    error = as_inventory_error(exc, operation)
    logger.info("%s rejected (%s): %s", operation, error.code, error.message)
    return result_cls.from_error(error, **fields)
