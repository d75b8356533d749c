"""Gateways de persistencia: transacciones y log de auditoría.

Exponen operaciones simples de carga/guardado sobre SQLModel. El único punto
no trivial es `TransactionStore.claim`, un compare-and-set atómico sobre
(status, version, pending_operation) que serializa las operaciones
concurrentes sobre una misma transacción.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import update
from sqlmodel import select

from database import DBSession
from models import AuditLogEntry, PaymentTransaction, utcnow


class TransactionStore:
    """Acceso a PaymentTransaction. `bind` permite inyectar otro motor."""
    def __init__(self, bind=None):
        self.bind = bind

    # save: Inserta o actualiza por id; actualiza updated_at en cada escritura.
    def save(self, transaction: PaymentTransaction) -> PaymentTransaction:
        with DBSession(self.bind) as s:
            transaction.updated_at = utcnow()
            merged = s.merge(transaction)
            s.commit()
            s.refresh(merged)
            return merged

    def find_by_id(self, transaction_id: str) -> Optional[PaymentTransaction]:
        with DBSession(self.bind) as s:
            return s.get(PaymentTransaction, transaction_id)

    def find_by_provider_transaction_id(self, provider_transaction_id: str) -> Optional[PaymentTransaction]:
        with DBSession(self.bind) as s:
            statement = select(PaymentTransaction).where(
                PaymentTransaction.provider_transaction_id == provider_transaction_id)
            return s.exec(statement).first()

    def claim(self, transaction: PaymentTransaction, operation: str) -> Optional[PaymentTransaction]:
        """Reclama la transacción para `operation` si nadie la modificó.

        El UPDATE solo afecta la fila si status y version siguen siendo los
        leídos y no hay otra operación en curso. Devuelve la fila actualizada
        o None si otro llamador ganó la carrera.
        """
        with DBSession(self.bind) as s:
            statement = (
                update(PaymentTransaction)
                .where(PaymentTransaction.id == transaction.id)
                .where(PaymentTransaction.status == transaction.status)
                .where(PaymentTransaction.version == transaction.version)
                .where(PaymentTransaction.pending_operation.is_(None))
                .values(pending_operation=operation,
                        version=PaymentTransaction.version + 1,
                        updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            result = s.execute(statement)
            s.commit()
            if result.rowcount != 1:
                return None
            return s.get(PaymentTransaction, transaction.id)

    def release(self, transaction_id: str) -> Optional[PaymentTransaction]:
        """Libera el claim sin cambiar el estado (usado por la reconciliación)."""
        with DBSession(self.bind) as s:
            transaction = s.get(PaymentTransaction, transaction_id)
            if transaction is None:
                return None
            transaction.pending_operation = None
            transaction.updated_at = utcnow()
            s.add(transaction)
            s.commit()
            s.refresh(transaction)
            return transaction

    def find_stuck(self, cutoff: datetime) -> List[PaymentTransaction]:
        """Transacciones con una operación en curso más antigua que cutoff."""
        with DBSession(self.bind) as s:
            statement = (
                select(PaymentTransaction)
                .where(PaymentTransaction.pending_operation.is_not(None))
                .where(PaymentTransaction.updated_at < cutoff)
            )
            return list(s.exec(statement).all())


class AuditLogStore:
    """Acceso append-only a AuditLogEntry: no hay update ni delete."""
    def __init__(self, bind=None):
        self.bind = bind

    def save(self, entry: AuditLogEntry) -> AuditLogEntry:
        with DBSession(self.bind) as s:
            s.add(entry)
            s.commit()
            s.refresh(entry)
            return entry

    # find_by_transaction: Entradas de una transacción, más reciente primero.
    def find_by_transaction(self, transaction_id: str) -> List[AuditLogEntry]:
        with DBSession(self.bind) as s:
            statement = (
                select(AuditLogEntry)
                .where(AuditLogEntry.transaction_id == transaction_id)
                .order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.id.desc())
            )
            return list(s.exec(statement).all())

    def find_by_transaction_and_status(self, transaction_id: str, status: str) -> List[AuditLogEntry]:
        with DBSession(self.bind) as s:
            statement = (
                select(AuditLogEntry)
                .where(AuditLogEntry.transaction_id == transaction_id)
                .where(AuditLogEntry.status == status)
                .order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.id.desc())
            )
            return list(s.exec(statement).all())
