"""Modelos SQLAlchemy compatibles con Supabase"""
from sqlalchemy import Column, String, Integer, Boolean, DateTime, ForeignKey, Numeric, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid
from shared.database.connection import Base


class Event(Base):
    __tablename__ = "events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    org_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    slug = Column(String, nullable=False)
    status = Column(String, nullable=False, server_default="draft")  # draft, live, past, cancelled
    payment_method = Column(String, nullable=False, server_default="stripe")  # stripe, test, external
    currency = Column(String, nullable=False, server_default="GBP")
    venue_name = Column(String, nullable=True)
    date_start = Column(DateTime(timezone=True), nullable=True)
    doors_time = Column(String, nullable=True)
    stripe_account_id = Column(String, nullable=True)  # Override de cuenta conectada por evento
    platform_fee_percent = Column(Numeric(5, 2), nullable=True)
    # NULL = heredar configuración de IVA de la organización
    vat_registered = Column(Boolean, nullable=True)
    vat_rate = Column(Numeric(5, 2), nullable=True)
    vat_prices_include = Column(Boolean, nullable=True)
    vat_number = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    # Relaciones
    ticket_types = relationship("TicketType", back_populates="event", cascade="all, delete-orphan")
    orders = relationship("Order", back_populates="event")


class Product(Base):
    __tablename__ = "products"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    org_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    sizes = Column(JSONB, nullable=True)  # ["S", "M", "L"]
    price = Column(Numeric(12, 2), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class TicketType(Base):
    __tablename__ = "ticket_types"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    org_id = Column(String, nullable=False, index=True)
    event_id = Column(UUID(as_uuid=True), ForeignKey("events.id"), nullable=False)
    name = Column(String, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    capacity = Column(Integer, nullable=True)  # NULL = sin límite
    sold = Column(Integer, nullable=False, server_default="0")  # Solo se modifica vía increment_sold
    max_per_order = Column(Integer, nullable=True)
    includes_merch = Column(Boolean, nullable=False, server_default="false")
    merch_name = Column(String, nullable=True)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id"), nullable=True)
    sort_order = Column(Integer, nullable=False, server_default="0")
    status = Column(String, nullable=False, server_default="active")  # active, inactive, archived
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    # Relaciones
    event = relationship("Event", back_populates="ticket_types")
    product = relationship("Product")
    order_items = relationship("OrderItem", back_populates="ticket_type")


class DiscountCode(Base):
    __tablename__ = "discounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    org_id = Column(String, nullable=False, index=True)
    code = Column(String, nullable=False)  # Único por org, comparación case-insensitive
    type = Column(String, nullable=False)  # percentage, fixed
    value = Column(Numeric(12, 2), nullable=False)
    starts_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    max_uses = Column(Integer, nullable=True)
    used_count = Column(Integer, nullable=False, server_default="0")
    min_order_amount = Column(Numeric(12, 2), nullable=True)
    applicable_event_ids = Column(JSONB, nullable=True)
    status = Column(String, nullable=False, server_default="active")  # active, disabled
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (UniqueConstraint("org_id", "email", name="uq_customers_org_email"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    org_id = Column(String, nullable=False, index=True)
    email = Column(String, nullable=False)  # Siempre en minúsculas
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    total_orders = Column(Integer, nullable=False, server_default="0")
    total_spent = Column(Numeric(12, 2), nullable=False, server_default="0")
    first_order_at = Column(DateTime(timezone=True), nullable=True)
    last_order_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    # Relaciones
    orders = relationship("Order", back_populates="customer")


class OrderSequence(Base):
    """Contador por organización para números de orden legibles"""
    __tablename__ = "order_sequences"

    org_id = Column(String, primary_key=True)
    last_value = Column(Integer, nullable=False, server_default="0")


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("org_id", "order_number", name="uq_orders_org_number"),
        # Una sola orden por pago: respalda la idempotencia de confirm-order
        UniqueConstraint("org_id", "payment_ref", name="uq_orders_org_payment_ref"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    org_id = Column(String, nullable=False, index=True)
    order_number = Column(String, nullable=False)
    event_id = Column(UUID(as_uuid=True), ForeignKey("events.id"), nullable=False)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False)
    status = Column(String, nullable=False, server_default="completed")  # completed, refunded, cancelled
    subtotal = Column(Numeric(12, 2), nullable=False, server_default="0")
    fees = Column(Numeric(12, 2), nullable=False, server_default="0")
    total = Column(Numeric(12, 2), nullable=False, server_default="0")
    currency = Column(String, nullable=False, server_default="GBP")
    payment_method = Column(String, nullable=False)  # stripe, test
    payment_ref = Column(String, nullable=True, index=True)  # PaymentIntent ID / TEST-xxx
    # "metadata" está reservado en declarative_base
    order_metadata = Column("metadata", JSONB, nullable=True)  # IVA, descuento, conversión de moneda
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    # Relaciones
    event = relationship("Event", back_populates="orders")
    customer = relationship("Customer", back_populates="orders")
    order_items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    tickets = relationship("Ticket", back_populates="order")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    org_id = Column(String, nullable=False)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False)
    ticket_type_id = Column(UUID(as_uuid=True), ForeignKey("ticket_types.id"), nullable=False)
    qty = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    merch_size = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    # Relaciones
    order = relationship("Order", back_populates="order_items")
    ticket_type = relationship("TicketType", back_populates="order_items")
    tickets = relationship("Ticket", back_populates="order_item")


class Ticket(Base):
    __tablename__ = "tickets"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    org_id = Column(String, nullable=False)
    order_item_id = Column(UUID(as_uuid=True), ForeignKey("order_items.id"), nullable=False)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False)
    event_id = Column(UUID(as_uuid=True), ForeignKey("events.id"), nullable=False)
    ticket_type_id = Column(UUID(as_uuid=True), ForeignKey("ticket_types.id"), nullable=False)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False)
    ticket_code = Column(String, unique=True, index=True, nullable=False)  # Payload del QR
    holder_first_name = Column(String, nullable=False)
    holder_last_name = Column(String, nullable=False)
    holder_email = Column(String, nullable=False, index=True)
    merch_size = Column(String, nullable=True)
    status = Column(String, nullable=False, server_default="valid")  # valid, used, cancelled
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    # Relaciones
    order = relationship("Order", back_populates="tickets")
    order_item = relationship("OrderItem", back_populates="tickets")


class SiteSetting(Base):
    """Configuración clave/valor (IVA, plan, cuenta Stripe, tipos de cambio, release secuencial)"""
    __tablename__ = "site_settings"

    key = Column(String, primary_key=True)
    org_id = Column(String, nullable=True, index=True)
    data = Column(JSONB, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class PaymentEvent(Base):
    """Eventos de pago para monitoreo y auditoría"""
    __tablename__ = "payment_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    org_id = Column(String, nullable=False, index=True)
    type = Column(String, nullable=False)
    severity = Column(String, nullable=False, server_default="info")  # info, warning, critical
    event_id = Column(String, nullable=True)
    stripe_payment_intent_id = Column(String, nullable=True)
    stripe_account_id = Column(String, nullable=True)
    error_code = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)
    ip_address = Column(String, nullable=True)
    event_metadata = Column("metadata", JSONB, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
