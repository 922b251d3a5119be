"""
Database Schemas for the Vending Fleet API

Each Pydantic model represents a MongoDB document. Machines live in the "machine" collection and users in
the "user" collection. Field names are stored and served in camelCase (the dashboard reads them that way)
while Python code uses the snake_case attribute names.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_serializer, field_validator

MAX_SLOT_AMOUNT = 2**31 - 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Slot(BaseModel):
    """One inventory position inside a machine. The key never changes once the machine exists."""

    model_config = ConfigDict(populate_by_name=True)

    key: str
    name: str = "empty"
    original_price: float = Field(0, ge=0, alias="originalPrice")
    retail_price: float = Field(0, ge=0, alias="retailPrice")
    amount: int = Field(0, ge=0, le=MAX_SLOT_AMOUNT)
    expiry_date: str = Field("unset", alias="expiryDate")


class SaleRecord(BaseModel):
    """Entry of a machine's salesHistory. Prices are copied from the slot at the moment of sale."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str
    original_price: float = Field(alias="originalPrice")
    retail_price: float = Field(alias="retailPrice")
    date: datetime


class Machine(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str = "Vending Machine"
    location: str = "unset"
    content: List[Slot] = Field(default_factory=list)
    total_sales: Dict[str, int] = Field(default_factory=dict, alias="totalSales")
    total_revenue: float = Field(0, alias="totalRevenue")
    active_revenue: float = Field(0, alias="activeRevenue")
    is_cash_full: bool = Field(False, alias="isCashFull")
    is_stock_full: bool = Field(False, alias="isStockFull")
    sales_history: List[SaleRecord] = Field(default_factory=list, alias="salesHistory")
    version: int = 0
    created_at: Optional[datetime] = Field(None, alias="createdAt")
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")

    @field_validator("total_sales", mode="before")
    @classmethod
    def _load_total_sales(cls, value):
        # Stored as [{"name": ..., "amount": ...}]; held in memory keyed by product name
        if isinstance(value, list):
            totals: Dict[str, int] = {}
            for entry in value:
                totals[entry["name"]] = totals.get(entry["name"], 0) + int(entry["amount"])
            return totals
        return value

    @field_serializer("total_sales")
    def _dump_total_sales(self, totals: Dict[str, int]):
        return [{"name": name, "amount": amount} for name, amount in totals.items()]

    def find_slot(self, key: str) -> Optional[Slot]:
        for slot in self.content:
            if slot.key == key:
                return slot
        return None

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True)

    def to_response(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class Notification(BaseModel):
    message: str
    date: str
    type: str
    status: str = "unread"


class User(BaseModel):
    email: EmailStr
    password_hash: str
    machines: List[str] = Field(default_factory=list)
    notifications: List[Notification] = Field(default_factory=list)
    created_at: Optional[datetime] = None


class SaleReceipt(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    machine_id: str = Field(alias="machineId")
    slot: Slot
    sale: SaleRecord
    total_revenue: float = Field(alias="totalRevenue")
    active_revenue: float = Field(alias="activeRevenue")
    product_total: int = Field(alias="productTotal")
