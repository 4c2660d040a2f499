from pydantic import BaseModel


class InventorySummary(BaseModel):
    total_items: int = 0
    total_quantity: int = 0
    total_reserved: int = 0
    total_available: int = 0
    # Items with nothing left to reserve
    out_of_stock_count: int = 0
    # Items with available stock at or below their reorder point
    low_stock_count: int = 0
