"""Registros de dominio que devuelven los stores

Son objetos planos (sin sesión SQLAlchemy) para que los servicios de checkout
puedan probarse con stores en memoria.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional


@dataclass
class ProductRecord:
    id: str
    name: str


@dataclass
class TicketTypeRecord:
    id: str
    org_id: str
    event_id: str
    name: str
    price: Decimal
    capacity: Optional[int] = None
    sold: int = 0
    max_per_order: Optional[int] = None
    includes_merch: bool = False
    merch_name: Optional[str] = None
    sort_order: int = 0
    status: str = "active"
    product: Optional[ProductRecord] = None

    @property
    def remaining(self) -> Optional[int]:
        if self.capacity is None:
            return None
        return max(self.capacity - self.sold, 0)

    @property
    def is_sold_out(self) -> bool:
        return self.capacity is not None and self.capacity > 0 and self.sold >= self.capacity

    @property
    def display_merch_name(self) -> Optional[str]:
        if self.product and self.product.name:
            return self.product.name
        return self.merch_name


@dataclass
class EventRecord:
    id: str
    org_id: str
    name: str
    slug: str = ""
    currency: str = "GBP"
    payment_method: str = "stripe"
    venue_name: Optional[str] = None
    date_start: Optional[str] = None
    doors_time: Optional[str] = None
    stripe_account_id: Optional[str] = None
    platform_fee_percent: Optional[Decimal] = None
    vat_registered: Optional[bool] = None
    vat_rate: Optional[Decimal] = None
    vat_prices_include: Optional[bool] = None
    vat_number: Optional[str] = None


@dataclass
class DiscountRecord:
    id: str
    org_id: str
    code: str
    type: str  # percentage | fixed
    value: Decimal
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    max_uses: Optional[int] = None
    used_count: int = 0
    min_order_amount: Optional[Decimal] = None
    applicable_event_ids: Optional[List[str]] = None
    status: str = "active"


@dataclass
class CustomerRecord:
    id: str
    org_id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    total_orders: int = 0
    total_spent: Decimal = Decimal("0")


@dataclass
class OrderRecord:
    id: str
    org_id: str
    order_number: str
    event_id: str
    customer_id: str
    subtotal: Decimal
    fees: Decimal
    total: Decimal
    currency: str
    payment_method: str
    payment_ref: str
    status: str = "completed"
    metadata: Dict = field(default_factory=dict)
    created_at: Optional[datetime] = None


@dataclass
class OrderItemRecord:
    id: str
    org_id: str
    order_id: str
    ticket_type_id: str
    qty: int
    unit_price: Decimal
    merch_size: Optional[str] = None


@dataclass
class TicketRecord:
    """Fila de ticket tal como la crea el Order Materializer (una por unidad)"""
    org_id: str
    order_item_id: str
    order_id: str
    event_id: str
    ticket_type_id: str
    customer_id: str
    ticket_code: str
    holder_first_name: str
    holder_last_name: str
    holder_email: str
    merch_size: Optional[str] = None

    def to_row(self) -> Dict:
        # Las líneas sin talla nunca escriben merch_size
        row = asdict(self)
        if self.merch_size is None:
            row.pop("merch_size")
        return row


@dataclass
class VatSettings:
    vat_registered: bool = False
    vat_number: str = ""
    vat_rate: Decimal = Decimal("20")
    prices_include_vat: bool = True

    @classmethod
    def from_dict(cls, data: Dict) -> "VatSettings":
        merged = {**asdict(cls()), **(data or {})}
        return cls(
            vat_registered=bool(merged.get("vat_registered")),
            vat_number=merged.get("vat_number") or "",
            vat_rate=Decimal(str(merged.get("vat_rate") or 0)),
            prices_include_vat=bool(merged.get("prices_include_vat")),
        )


@dataclass
class PlatformPlan:
    id: str
    name: str
    fee_percent: Decimal
    min_fee: int  # En unidad mínima


@dataclass
class ReleaseSettings:
    """Configuración de release secuencial por evento"""
    group_map: Dict[str, Optional[str]] = field(default_factory=dict)
    release_mode: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> Optional["ReleaseSettings"]:
        if not data or not data.get("ticket_group_release_mode"):
            return None
        return cls(
            group_map=data.get("ticket_group_map") or {},
            release_mode=data.get("ticket_group_release_mode") or {},
        )


@dataclass
class ExchangeRates:
    """Tasas con base USD (1 USD = X moneda destino)"""
    rates: Dict[str, float]
    fetched_at: datetime
    base: str = "USD"

    def to_dict(self) -> Dict:
        return {
            "base": self.base,
            "rates": self.rates,
            "fetched_at": self.fetched_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "ExchangeRates":
        return cls(
            base=data.get("base", "USD"),
            rates={k.upper(): float(v) for k, v in (data.get("rates") or {}).items()},
            fetched_at=datetime.fromisoformat(data["fetched_at"].replace("Z", "+00:00")),
        )


@dataclass
class PaymentEventRecord:
    org_id: str
    type: str
    severity: str
    event_id: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    stripe_account_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    customer_email: Optional[str] = None
    ip_address: Optional[str] = None
    metadata: Dict = field(default_factory=dict)
