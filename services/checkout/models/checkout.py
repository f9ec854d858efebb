"""Modelos Pydantic para checkout y creación de órdenes"""
from pydantic import BaseModel, EmailStr, Field, field_validator
from typing import Optional, List, Dict, Literal
from decimal import Decimal
import json


class CartLine(BaseModel):
    ticket_type_id: str
    qty: int = Field(ge=1)
    merch_size: Optional[str] = None  # Solo tickets con merch

    def to_metadata_dict(self) -> Dict:
        data = {"ticket_type_id": self.ticket_type_id, "qty": self.qty}
        if self.merch_size is not None:
            data["merch_size"] = self.merch_size
        return data


class CheckoutCustomer(BaseModel):
    email: EmailStr
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    phone: Optional[str] = None

    @property
    def email_lower(self) -> str:
        return str(self.email).strip().lower()


class PaymentIntentRequest(BaseModel):
    event_id: str
    items: List[CartLine] = Field(min_length=1)
    customer: CheckoutCustomer
    discount_code: Optional[str] = None
    currency: Optional[str] = None  # Moneda de presentación

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, value: Optional[str]) -> Optional[str]:
        return value.upper() if value else value


class DiscountSummary(BaseModel):
    code: str
    type: str
    value: Decimal
    amount: Decimal


class VatSummary(BaseModel):
    amount: Decimal
    rate: Decimal
    inclusive: bool


class PaymentIntentResponse(BaseModel):
    client_secret: str
    payment_intent_id: str
    stripe_account_id: Optional[str] = None
    amount: int  # En unidad mínima
    currency: str
    application_fee: int = 0
    subtotal: Decimal
    discount: Optional[DiscountSummary] = None
    vat: Optional[VatSummary] = None
    # Solo si hubo conversión de moneda
    exchange_rate: Optional[Decimal] = None
    base_currency: Optional[str] = None
    base_subtotal: Optional[Decimal] = None
    base_total: Optional[Decimal] = None


class CurrencyFallback(BaseModel):
    """Resultado no-error: el cliente debe reintentar en la moneda base"""
    error: Literal["currency_fallback"] = "currency_fallback"
    base_currency: str
    requested_currency: str
    detail: str = "This currency is not available for this event. Please pay in the event currency."


class PaymentIntentMetadata(BaseModel):
    """Datos que el Intent Builder deja en el PaymentIntent para reconstruir la orden

    Stripe solo acepta metadata str -> str, por eso la (de)serialización es explícita.
    """
    event_id: str
    event_slug: str = ""
    org_id: str
    customer_email: str
    customer_first_name: str
    customer_last_name: str
    customer_phone: str = ""
    items: List[CartLine]
    subtotal: Decimal
    discount_code: Optional[str] = None
    discount_amount: Optional[Decimal] = None
    vat_amount: Optional[Decimal] = None
    vat_rate: Optional[Decimal] = None
    vat_inclusive: Optional[bool] = None
    presentment_currency: Optional[str] = None
    base_currency: Optional[str] = None
    exchange_rate: Optional[Decimal] = None
    base_subtotal: Optional[Decimal] = None
    base_total: Optional[Decimal] = None

    def to_stripe_metadata(self) -> Dict[str, str]:
        metadata = {
            "event_id": self.event_id,
            "event_slug": self.event_slug,
            "org_id": self.org_id,
            "customer_email": self.customer_email,
            "customer_first_name": self.customer_first_name,
            "customer_last_name": self.customer_last_name,
            "customer_phone": self.customer_phone,
            "items_json": json.dumps([item.to_metadata_dict() for item in self.items]),
            "subtotal": str(self.subtotal),
        }
        optional = {
            "discount_code": self.discount_code,
            "discount_amount": self.discount_amount,
            "vat_amount": self.vat_amount,
            "vat_rate": self.vat_rate,
            "presentment_currency": self.presentment_currency,
            "base_currency": self.base_currency,
            "exchange_rate": self.exchange_rate,
            "base_subtotal": self.base_subtotal,
            "base_total": self.base_total,
        }
        for key, value in optional.items():
            if value is not None:
                metadata[key] = str(value)
        if self.vat_inclusive is not None:
            metadata["vat_inclusive"] = "true" if self.vat_inclusive else "false"
        return metadata

    @classmethod
    def from_stripe_metadata(cls, metadata: Dict[str, str]) -> "PaymentIntentMetadata":
        data = dict(metadata)
        items_json = data.pop("items_json", None)
        if not items_json:
            raise ValueError("PaymentIntent missing required metadata")
        data["items"] = json.loads(items_json)
        if "vat_inclusive" in data:
            data["vat_inclusive"] = data["vat_inclusive"] == "true"
        # Stripe devuelve strings vacíos para campos opcionales ausentes
        cleaned = {k: v for k, v in data.items() if v != "" or k in ("event_slug", "customer_phone")}
        return cls(**cleaned)


class ConfirmOrderRequest(BaseModel):
    payment_intent_id: str
    stripe_account_id: Optional[str] = None  # Cuenta conectada donde se creó el PaymentIntent


class ManualOrderRequest(BaseModel):
    event_id: str
    items: List[CartLine] = Field(min_length=1)
    customer: CheckoutCustomer
    send_email: bool = True


class DiscountValidateRequest(BaseModel):
    code: Optional[str] = None
    event_id: Optional[str] = None
    subtotal: Optional[Decimal] = None


class DiscountValidateResponse(BaseModel):
    valid: bool
    discount: Optional[Dict] = None
    error: Optional[str] = None


class OrderResponse(BaseModel):
    order_id: str
    order_number: str
    status: str
    subtotal: Decimal
    fees: Decimal
    total: Decimal
    currency: str
    payment_method: str
    payment_ref: str
    customer_id: str
    tickets: List[Dict]
