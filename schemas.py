"""Schemas normalizados de petición y resultado de pagos.

Son la forma común que ven los llamadores sin importar el proveedor que
procesó el cargo. Los campos de la petición son opcionales a propósito: la
presencia y el formato los decide el motor de validación, en orden fijo.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field


class PaymentRequest(BaseModel):
    """Petición de autorización tal como llega del llamador."""
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    payment_method: Optional[str] = Field(default=None, alias="paymentMethod")
    provider: Optional[str] = None
    description: Optional[str] = Field(default=None, max_length=255)
    customer_id: Optional[str] = Field(default=None, alias="customerId", max_length=100)
    metadata: Optional[str] = Field(default=None, max_length=1000)

    model_config = {"populate_by_name": True}


class ProviderResult(BaseModel):
    """Resultado normalizado de una llamada a un adaptador."""
    provider: str
    provider_transaction_id: str
    amount: Decimal
    currency: str
    status: str
    payment_method: Optional[str] = None
    capture_id: Optional[str] = None  # solo si difiere de provider_transaction_id
    raw: Dict[str, Any] = Field(default_factory=dict)


class PaymentResult(BaseModel):
    """Respuesta normalizada que recibe el llamador."""
    id: Optional[str] = None
    provider: str
    provider_transaction_id: Optional[str] = None
    amount: Decimal
    currency: str
    status: str
    payment_method: Optional[str] = None
    description: Optional[str] = None
    customer_id: Optional[str] = None
    metadata: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AuditEntryView(BaseModel):
    id: int
    transaction_id: str
    status: str
    message: Optional[str] = None
    created_at: datetime
