"""Errores de dominio del checkout

Cada error lleva un código interno, un mensaje apto para el comprador y el
status HTTP que la ruta debe devolver.
"""
from enum import Enum
from typing import Optional


class ErrorCode(Enum):
    INVALID_REQUEST = "INVALID_REQUEST"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    TICKET_TYPE_NOT_FOUND = "TICKET_TYPE_NOT_FOUND"
    TICKET_TYPE_UNAVAILABLE = "TICKET_TYPE_UNAVAILABLE"
    MAX_PER_ORDER_EXCEEDED = "MAX_PER_ORDER_EXCEEDED"
    INSUFFICIENT_CAPACITY = "INSUFFICIENT_CAPACITY"
    SEQUENTIAL_RELEASE = "SEQUENTIAL_RELEASE"
    DISCOUNT_INVALID = "DISCOUNT_INVALID"
    AMOUNT_TOO_LOW = "AMOUNT_TOO_LOW"
    STORE_ERROR = "STORE_ERROR"
    GATEWAY_ERROR = "GATEWAY_ERROR"


class CheckoutError(Exception):
    """Error base del Intent Builder"""

    status_code = 400

    def __init__(self, code: ErrorCode, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class CheckoutValidationError(CheckoutError):
    pass


class InventoryConflictError(CheckoutError):
    """Capacidad insuficiente al cotizar (no es una reserva)"""

    def __init__(self, ticket_type_id: str, ticket_type_name: str, remaining: int):
        super().__init__(
            ErrorCode.INSUFFICIENT_CAPACITY,
            f'Not enough tickets available for "{ticket_type_name}". Available: {remaining}',
        )
        self.ticket_type_id = ticket_type_id
        self.remaining = remaining


class SequentialReleaseError(CheckoutError):
    def __init__(self, message: str):
        super().__init__(ErrorCode.SEQUENTIAL_RELEASE, message)


class DiscountInvalidError(CheckoutError):
    def __init__(self, message: str):
        super().__init__(ErrorCode.DISCOUNT_INVALID, message)


class CheckoutStoreError(CheckoutError):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(ErrorCode.STORE_ERROR, message)


class PaymentGatewayError(CheckoutError):
    """Rechazo del gateway; el detalle técnico queda en internal_code"""

    status_code = 502

    def __init__(self, internal_code: str, message: str = "Failed to create payment. Please try again."):
        super().__init__(ErrorCode.GATEWAY_ERROR, message)
        self.internal_code = internal_code


class OrderCreationError(Exception):
    """Error tipado del Order Materializer para que el caller extraiga el status HTTP"""

    def __init__(self, message: str, status_code: int = 500, order_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.order_id = order_id


class DuplicateOrderError(Exception):
    """Ya existe una orden para este pago (org_id, payment_ref)"""

    def __init__(self, org_id: str, payment_ref: str):
        super().__init__(f"Order already exists for payment {payment_ref}")
        self.org_id = org_id
        self.payment_ref = payment_ref
