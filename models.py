"""Modelos de datos persistentes.

Incluye la transacción de pago canónica, el log de auditoría append-only,
clientes y tarjetas (colaboradores externos) y los clientes de la API.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    """Hora actual en UTC, con zona horaria."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """DateTime con zona que siempre entrega UTC.

    SQLite no conserva la zona horaria: al leer, un valor sin tzinfo se
    interpreta como UTC, que es lo único que se escribe.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    AUTHORIZED = "AUTHORIZED"
    CAPTURED = "CAPTURED"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"


class Provider(str, Enum):
    STRIPE = "stripe"
    CIELO = "cielo"
    PAYPAL = "paypal"

    @classmethod
    def parse(cls, name: Optional[str]) -> Optional["Provider"]:
        """Resuelve el nombre sin distinguir mayúsculas; None si no existe."""
        if not name:
            return None
        try:
            return cls(name.strip().lower())
        except ValueError:
            return None


class PaymentTransaction(SQLModel, table=True):
    """Registro canónico del ciclo de vida de un pago.

    Campos:
      provider_transaction_id: ID asignado por el proveedor (nulo hasta autorizar).
      provider_capture_id: ID de la captura cuando el proveedor la distingue
        de la autorización (PayPal); los reembolsos se emiten contra él.
      pending_operation: operación en curso contra el proveedor (authorize |
        capture | refund); mientras no sea nulo ninguna otra operación puede
        reclamar la transacción.
      version: token de concurrencia optimista, incrementado en cada claim.
    """
    __tablename__ = "payment_transactions"

    id: str = Field(default_factory=new_id, primary_key=True)
    provider: str = Field(index=True)
    provider_transaction_id: Optional[str] = Field(default=None, unique=True, index=True)
    provider_capture_id: Optional[str] = None
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    currency: str
    status: str = Field(default=PaymentStatus.PENDING.value, index=True)
    payment_method: str
    description: Optional[str] = Field(default=None, max_length=255)
    customer_id: Optional[str] = Field(default=None, max_length=100)
    metadata_json: Optional[str] = None  # blob opaco del llamador
    raw_response: Optional[str] = None  # JSON del proveedor, solo diagnóstico
    error_message: Optional[str] = None  # solo en FAILED
    refunded_amount: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    pending_operation: Optional[str] = None
    version: int = Field(default=0)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class AuditLogEntry(SQLModel, table=True):
    """Hecho inmutable: una entrada por cada intento de transición de estado."""
    __tablename__ = "transaction_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    transaction_id: str = Field(index=True, foreign_key="payment_transactions.id")
    status: str = Field(max_length=20, index=True)
    message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, index=True)


class Customer(SQLModel, table=True):
    __tablename__ = "customers"

    id: str = Field(default_factory=new_id, primary_key=True)
    external_id: str = Field(unique=True, index=True, max_length=100)
    name: str
    email: str = Field(unique=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class CreditCard(SQLModel, table=True):
    """Tarjeta almacenada. A lo sumo una tarjeta por cliente tiene is_default."""
    __tablename__ = "credit_cards"

    id: str = Field(default_factory=new_id, primary_key=True)
    customer_id: str = Field(index=True, foreign_key="customers.id")
    provider_card_id: str = Field(unique=True)
    last_four_digits: str = Field(max_length=4)
    brand: str = Field(max_length=20)
    expiration_month: int
    expiration_year: int
    is_default: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class ApiClient(SQLModel, table=True):
    """Cliente autenticable de la API con sus scopes (separados por espacio)."""
    __tablename__ = "api_clients"

    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: str = Field(unique=True, index=True)
    secret_hash: str
    scopes: str = Field(default='payments:read')
