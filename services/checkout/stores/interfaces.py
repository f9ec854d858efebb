"""Interfaces de stores del checkout (patrón repositorio)

Los servicios dependen solo de estas interfaces; la implementación SQLAlchemy
vive en sqlalchemy_store.py y los tests usan implementaciones en memoria.
Los errores de infraestructura se propagan tal cual: traducirlos es trabajo
de los servicios.
"""
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, List, Optional

from services.checkout.models.domain import (
    CustomerRecord,
    DiscountRecord,
    EventRecord,
    OrderItemRecord,
    OrderRecord,
    PaymentEventRecord,
    TicketRecord,
    TicketTypeRecord,
)


class EventStore(ABC):

    @abstractmethod
    async def get_event(self, org_id: str, event_id: str) -> Optional[EventRecord]:
        """Evento por ID dentro de la organización, o None"""
        ...


class TicketTypeStore(ABC):

    @abstractmethod
    async def fetch_ticket_types(self, org_id: str, ids: List[str]) -> List[TicketTypeRecord]:
        """Tipos de ticket (con producto asociado) por ID, siempre frescos"""
        ...

    @abstractmethod
    async def fetch_event_ticket_types(self, org_id: str, event_id: str) -> List[TicketTypeRecord]:
        """Todos los tipos de ticket de un evento, ordenados por sort_order"""
        ...

    @abstractmethod
    async def atomic_increment_sold(self, ticket_type_id: str, qty: int) -> int:
        """Incrementar sold en una sola operación atómica; devuelve el nuevo valor"""
        ...


class DiscountStore(ABC):

    @abstractmethod
    async def fetch_discount(self, org_id: str, code: str) -> Optional[DiscountRecord]:
        """Código activo, búsqueda case-insensitive"""
        ...

    @abstractmethod
    async def increment_used_count(self, discount_id: str) -> None:
        """Best-effort (lectura + escritura), no es estrictamente consistente"""
        ...


class CustomerStore(ABC):

    @abstractmethod
    async def upsert_customer(
        self,
        org_id: str,
        email_lower: str,
        first_name: str,
        last_name: str,
        phone: Optional[str] = None,
    ) -> str:
        """Crear o actualizar cliente por (org, email en minúsculas); devuelve el ID"""
        ...

    @abstractmethod
    async def update_customer_stats(self, customer_id: str, orders_delta: int, spend_delta: Decimal) -> None:
        ...

    @abstractmethod
    async def get_customer(self, customer_id: str) -> Optional[CustomerRecord]:
        ...


class OrderStore(ABC):

    @abstractmethod
    async def next_order_sequence(self, org_id: str) -> int:
        """Siguiente valor del contador de órdenes de la organización (atómico)"""
        ...

    @abstractmethod
    async def find_order_by_payment_ref(self, org_id: str, payment_ref: str) -> Optional[OrderRecord]:
        ...

    @abstractmethod
    async def insert_order(self, order: OrderRecord) -> OrderRecord:
        ...

    @abstractmethod
    async def insert_order_items(self, items: List[OrderItemRecord]) -> List[OrderItemRecord]:
        ...

    @abstractmethod
    async def insert_tickets(self, tickets: List[TicketRecord]) -> None:
        ...

    @abstractmethod
    async def list_order_tickets(self, order_id: str) -> List[TicketRecord]:
        ...


class SettingsStore(ABC):
    """Configuración clave/valor (IVA, plan, cuenta conectada, release secuencial, tipos de cambio)"""

    @abstractmethod
    async def get_setting(self, key: str) -> Optional[Dict]:
        ...

    @abstractmethod
    async def set_setting(self, key: str, data: Dict, org_id: Optional[str] = None) -> None:
        ...


class PaymentEventStore(ABC):

    @abstractmethod
    async def insert_payment_event(self, event: PaymentEventRecord) -> None:
        ...


# ── Claves de configuración ───────────────────────────────────────

EXCHANGE_RATES_KEY = "platform_exchange_rates"


def vat_key(org_id: str) -> str:
    return f"{org_id}_vat"


def plan_key(org_id: str) -> str:
    return f"{org_id}_plan"


def stripe_account_key(org_id: str) -> str:
    return f"{org_id}_stripe_account"


def event_settings_key(org_id: str, event_id: str) -> str:
    return f"{org_id}_event_{event_id}"
