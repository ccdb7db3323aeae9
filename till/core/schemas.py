from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class Direction(str, Enum):
    USD2SOS = "USD2SOS"  # sobró USD: el cliente recibe SOS
    SOS2USD = "SOS2USD"  # sobró SOS: el cliente recibe USD


class RoundingMode(str, Enum):
    AUTO = "auto"
    UP = "up"
    DOWN = "down"

    @property
    def step_mode(self) -> str:
        return "nearest" if self is RoundingMode.AUTO else self.value


class Rate(BaseModel):
    accounting: Decimal = Decimal("0")
    sell: Decimal = Decimal("0")
    buy: Decimal = Decimal("0")
    as_of_date: Optional[str] = None

    @property
    def available(self) -> bool:
        return self.accounting > 0


class Device(BaseModel):
    id: str
    label: Optional[str] = None
    name: Optional[str] = None


class CashSession(BaseModel):
    id: str
    device_id: Optional[str] = None
    opened_at: Optional[str] = None
    closed_at: Optional[str] = None


class Customer(BaseModel):
    id: str
    name: str
    phone: Optional[str] = None


class Product(BaseModel):
    id: str
    sku: str = ""
    name: str = ""
    unit: Optional[str] = None
    price_usd: Optional[Decimal] = None

    @property
    def display_name(self) -> str:
        return self.name or self.sku or self.id


class Lot(BaseModel):
    batch_id: str
    batch_number: str = ""
    expiry_date: Optional[str] = None
    store_id: str
    store_name: str = ""
    product_id: Optional[str] = None
    on_hand: int = 0

    @property
    def summary(self) -> str:
        exp = f" • exp {self.expiry_date}" if self.expiry_date else ""
        return f"{self.store_name} • {self.batch_number}{exp} • {self.on_hand}"


class Line(BaseModel):
    product_id: str
    name: str
    qty: int = Field(default=1, ge=1)
    unit_price_usd: Decimal = Field(default=Decimal("0"), ge=0)
    batch_id: Optional[str] = None
    store_id: Optional[str] = None
    expiry_date: Optional[str] = None
    lot_summary: Optional[str] = None


class TenderState(BaseModel):
    usd_amount: str = ""
    sos_native: str = ""


class ScanFeedback(BaseModel):
    title: str
    subtitle: Optional[str] = None
    ok: bool = True
    expires_at: Optional[float] = None


class CartSnapshot(BaseModel):
    id: str
    label: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    device: Optional[Device] = None
    session: Optional[CashSession] = None
    customer: Optional[Customer] = None

    lines: List[Line] = Field(default_factory=list)
    usd_amount: str = ""
    sos_native: str = ""
    rate: Rate = Field(default_factory=Rate)
    exchange_accepted: bool = False
    exchange_rounding: RoundingMode = RoundingMode.AUTO
    sos_target_rounding: RoundingMode = RoundingMode.AUTO

    scan_feedback: Optional[ScanFeedback] = None
    beep_tick: int = 0


# ---------- Cuerpos de entrada (routers) ----------

class SelectionIn(BaseModel):
    device: Optional[Device] = None
    session: Optional[CashSession] = None
    customer: Optional[Customer] = None


class AddLineIn(BaseModel):
    product: Product
    lot: Optional[Lot] = None


class LineEditIn(BaseModel):
    qty: Optional[str] = None
    price: Optional[str] = None


class BindLotIn(BaseModel):
    lot: Lot


class TenderIn(BaseModel):
    usd_amount: Optional[str] = None
    sos_native: Optional[str] = None


class ScanIn(BaseModel):
    code: str
