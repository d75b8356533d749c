"""Log de auditoría de transiciones de estado.

Cada intento de transición (exitoso o fallido) agrega exactamente una entrada
con un mensaje fijo por tipo de transición.
"""

from decimal import Decimal
from typing import List, Optional

import structlog

from models import AuditLogEntry, PaymentStatus
from stores import AuditLogStore

logger = structlog.get_logger(__name__)


class AuditLog:
    """Registra y consulta entradas del log de auditoría."""
    def __init__(self, store: Optional[AuditLogStore] = None):
        self.store = store or AuditLogStore()

    def record(self, transaction_id: str, status: str, message: str) -> AuditLogEntry:
        status = status.value if isinstance(status, PaymentStatus) else status
        entry = self.store.save(AuditLogEntry(transaction_id=transaction_id, status=status, message=message))
        logger.info("audit_entry_recorded", transaction_id=transaction_id, status=status, message=message)
        return entry

    def list_for_transaction(self, transaction_id: str) -> List[AuditLogEntry]:
        return self.store.find_by_transaction(transaction_id)

    def list_by_status(self, transaction_id: str, status: str) -> List[AuditLogEntry]:
        status = status.value if isinstance(status, PaymentStatus) else status.upper()
        return self.store.find_by_transaction_and_status(transaction_id, status)

    # Plantillas por transición

    def log_pending(self, transaction_id: str) -> AuditLogEntry:
        return self.record(transaction_id, PaymentStatus.PENDING, "Payment processing")

    def log_authorization(self, transaction_id: str) -> AuditLogEntry:
        return self.record(transaction_id, PaymentStatus.AUTHORIZED, "Payment authorized successfully")

    def log_capture(self, transaction_id: str) -> AuditLogEntry:
        return self.record(transaction_id, PaymentStatus.CAPTURED, "Payment captured successfully")

    def log_refund(self, transaction_id: str, amount: Decimal) -> AuditLogEntry:
        return self.record(transaction_id, PaymentStatus.REFUNDED, f"Payment refunded in the amount of {amount}")

    def log_failure(self, transaction_id: str, reason: str) -> AuditLogEntry:
        return self.record(transaction_id, PaymentStatus.FAILED, f"Payment failed: {reason}")
