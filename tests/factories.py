from inventory_control.models.inventory_item import InventoryItem
from inventory_control.models.product import Product, ProductStatus
from inventory_control.models.warehouse import Warehouse, WarehouseStatus
from inventory_control.schemas.common import CallerContext
from inventory_control.schemas.reservation import ReservationLine
from inventory_control.services import reservation_service

ORG = "org-acme"
OTHER_ORG = "org-globex"

WAREHOUSES = [
    # id, organization, code, status
    ("wh-a", ORG, "A", WarehouseStatus.ACTIVE),
    ("wh-b", ORG, "B", WarehouseStatus.ACTIVE),
    ("wh-x", ORG, "X", WarehouseStatus.INACTIVE),
    ("wh-other", OTHER_ORG, "A", WarehouseStatus.ACTIVE),
]

PRODUCTS = [
    (ORG, "WIDGET-001", ProductStatus.ACTIVE),
    (ORG, "WIDGET-002", ProductStatus.ACTIVE),
    (ORG, "GADGET-100", ProductStatus.ACTIVE),
    (ORG, "OLD-999", ProductStatus.INACTIVE),
    (OTHER_ORG, "WIDGET-001", ProductStatus.ACTIVE),
]


def context(role: str | None = "INVENTORY_MANAGER", organization_id: str = ORG, user_id: str = "user-1") -> CallerContext:
    return CallerContext(organization_id=organization_id, user_id=user_id, user_role=role)


def seed_master_data(db):
    for warehouse_id, organization_id, code, status in WAREHOUSES:
        db.add(Warehouse(id=warehouse_id, organization_id=organization_id, code=code, name=f"Warehouse {code}", status=status))
    for organization_id, sku, status in PRODUCTS:
        db.add(Product(organization_id=organization_id, sku=sku, name=sku.title(), status=status))
    db.commit()


def add_item(db, sku="WIDGET-001", warehouse_id="wh-a", quantity=100, reserved=0, organization_id=ORG) -> str:
    item = InventoryItem(
        organization_id=organization_id,
        warehouse_id=warehouse_id,
        sku=sku,
        quantity=quantity,
        reserved_quantity=reserved,
    )
    db.add(item)
    db.commit()
    return item.id


def stock(db, sku="WIDGET-001", warehouse_id="wh-a", organization_id=ORG) -> InventoryItem | None:
    """Fresh read of a stock row."""
    db.expire_all()
    return (
        db.query(InventoryItem)
        .filter(
            InventoryItem.organization_id == organization_id,
            InventoryItem.warehouse_id == warehouse_id,
            InventoryItem.sku == sku,
        )
        .first()
    )


def reserve(db, ctx, order_id, sku="WIDGET-001", quantity=1, warehouse_id="wh-a") -> str:
    result = reservation_service.reserve_stock(
        db, ctx, order_id, [ReservationLine(sku=sku, quantity=quantity, warehouse_id=warehouse_id)]
    )
    assert result.success, result.error
    return result.reservations[0].id
