"""Taxonomía de errores del orquestador de pagos.

Cada error expone `reason`, un texto estable y legible para el llamador.
"""

from typing import Optional


class PaymentError(Exception):
    """Base de todos los errores de dominio."""
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ValidationFailed(PaymentError):
    """Regla de validación violada; no se realizó ninguna llamada de red."""


class UnsupportedProvider(PaymentError):
    def __init__(self, name: Optional[str]):
        super().__init__(f"Unsupported provider: {name}")
        self.name = name


class NotFound(PaymentError):
    def __init__(self, transaction_id: str, kind: str = "Transaction"):
        super().__init__(f"{kind} not found: {transaction_id}")
        self.transaction_id = transaction_id


class InvalidStateTransition(PaymentError):
    def __init__(self, transaction_id: str, current: str, operation: str):
        super().__init__(f"Cannot {operation} transaction {transaction_id} in status {current}")
        self.transaction_id = transaction_id
        self.current = current
        self.operation = operation


class ConcurrentModification(PaymentError):
    def __init__(self, transaction_id: str):
        super().__init__(f"Transaction {transaction_id} is being modified by another operation")
        self.transaction_id = transaction_id


class ProviderError(PaymentError):
    """Falla a nivel de adaptador. El detalle queda en `cause` y en los logs."""
    def __init__(self, provider: str, cause: str, status_code: Optional[int] = None):
        super().__init__(f"Provider {provider} failed: {cause}")
        self.provider = provider
        self.cause = cause
        self.status_code = status_code


class ProviderRejected(ProviderError):
    """Rechazo definitivo del proveedor: es seguro marcar la transacción FAILED."""


class AmbiguousOutcome(ProviderError):
    """Timeout o corte de red: el resultado real en el proveedor es desconocido."""
