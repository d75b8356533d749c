"""Orquestador de pagos: máquina de estados de la transacción.

Flujo de cada operación:
  validar → elegir adaptador → reclamar la transacción (compare-and-set) →
  llamar al proveedor → persistir el nuevo estado → registrar auditoría.

Estados: PENDING → AUTHORIZED → CAPTURED → REFUNDED; FAILED es alcanzable
desde cualquier estado no terminal cuando el proveedor rechaza de forma
definitiva. Un timeout deja la transacción reclamada (pending_operation) hasta
que la reconciliación la resuelva. Cualquier otra excepción mientras la
transacción está reclamada la deja en FAILED y libera el claim.
"""

import json
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Optional

import structlog

from audit import AuditLog
from customers import CustomerDirectory
from errors import (
    AmbiguousOutcome,
    ConcurrentModification,
    InvalidStateTransition,
    NotFound,
    ProviderError,
    ProviderRejected,
)
from models import AuditLogEntry, PaymentStatus, PaymentTransaction, utcnow
from providers import ProviderRegistry
from schemas import PaymentRequest, PaymentResult, ProviderResult
from stores import TransactionStore
from validation import validate_payment_request, validate_refund_amount

logger = structlog.get_logger(__name__)

OP_AUTHORIZE = "authorize"
OP_CAPTURE = "capture"
OP_REFUND = "refund"

# Estado previo requerido por cada operación sobre una transacción existente.
EXPECTED_STATUS = {
    OP_CAPTURE: PaymentStatus.AUTHORIZED.value,
    OP_REFUND: PaymentStatus.CAPTURED.value,
}


class PaymentOrchestrator:
    """Coordina validación, adaptadores, persistencia y auditoría."""
    def __init__(self, registry: ProviderRegistry,
                 transactions: Optional[TransactionStore] = None,
                 audit: Optional[AuditLog] = None,
                 customers: Optional[CustomerDirectory] = None):
        self.registry = registry
        self.transactions = transactions or TransactionStore()
        self.audit = audit or AuditLog()
        self.customers = customers or CustomerDirectory()

    # ------------------------------------------------------------------
    def authorize(self, request: PaymentRequest) -> PaymentResult:
        """Autoriza un pago nuevo.

        La fila se materializa en PENDING antes de la llamada de red, así un
        fallo parcial queda visible en la auditoría.
        """
        request = validate_payment_request(request, self.customers.exists_by_external_reference)
        adapter = self.registry.resolve(request.provider)

        transaction = self.transactions.save(PaymentTransaction(
            provider=adapter.name,
            amount=request.amount,
            currency=request.currency,
            status=PaymentStatus.PENDING.value,
            payment_method=request.payment_method,
            description=request.description,
            customer_id=request.customer_id,
            metadata_json=request.metadata,
            pending_operation=OP_AUTHORIZE,
        ))
        self.audit.log_pending(transaction.id)
        log = logger.bind(transaction_id=transaction.id, provider=adapter.name, operation=OP_AUTHORIZE)

        try:
            result = adapter.authorize(request)
            duplicate = self.transactions.find_by_provider_transaction_id(result.provider_transaction_id)
            if duplicate is not None and duplicate.id != transaction.id:
                raise ProviderRejected(adapter.name, f"duplicate provider transaction id {result.provider_transaction_id}")
            transaction.provider_transaction_id = result.provider_transaction_id
            transaction.status = PaymentStatus.AUTHORIZED.value
            transaction.raw_response = _dump_raw(result)
            transaction.pending_operation = None
            transaction = self.transactions.save(transaction)
        except ProviderError as e:
            self._handle_provider_error(transaction, e, log)
            raise
        except Exception as e:
            self._handle_unexpected_error(transaction.id, e, log)
            raise

        self.audit.log_authorization(transaction.id)
        log.info("payment_authorized", provider_transaction_id=transaction.provider_transaction_id,
                 amount=str(transaction.amount), currency=transaction.currency)
        return self._to_result(transaction)

    def capture(self, transaction_id: str) -> PaymentResult:
        """Captura el monto total autorizado."""
        transaction, adapter = self._begin(transaction_id, OP_CAPTURE)
        log = logger.bind(transaction_id=transaction.id, provider=adapter.name, operation=OP_CAPTURE)
        try:
            result = adapter.capture(transaction.provider_transaction_id)
            transaction.status = PaymentStatus.CAPTURED.value
            transaction.provider_capture_id = result.capture_id
            transaction.raw_response = _dump_raw(result)
            transaction.pending_operation = None
            transaction = self.transactions.save(transaction)
        except ProviderError as e:
            self._handle_provider_error(transaction, e, log)
            raise
        except Exception as e:
            self._handle_unexpected_error(transaction.id, e, log)
            raise

        self.audit.log_capture(transaction.id)
        log.info("payment_captured", amount=str(result.amount))
        return self._to_result(transaction)

    def refund(self, transaction_id: str, amount) -> PaymentResult:
        """Reembolsa total o parcialmente; el resultado lleva el monto reembolsado.

        El reembolso se emite contra el ID de captura si el proveedor lo
        distingue; si no, contra el ID de la transacción en el proveedor.
        """
        transaction = self._load(transaction_id)
        self._require_status(transaction, OP_REFUND)
        amount = validate_refund_amount(amount, transaction.amount)
        transaction, adapter = self._begin(transaction_id, OP_REFUND, transaction)
        log = logger.bind(transaction_id=transaction.id, provider=adapter.name, operation=OP_REFUND)
        target = transaction.provider_capture_id or transaction.provider_transaction_id
        try:
            result = adapter.refund(target, amount, transaction.currency)
            transaction.status = PaymentStatus.REFUNDED.value
            transaction.refunded_amount = result.amount
            transaction.raw_response = _dump_raw(result)
            transaction.pending_operation = None
            transaction = self.transactions.save(transaction)
        except ProviderError as e:
            self._handle_provider_error(transaction, e, log)
            raise
        except Exception as e:
            self._handle_unexpected_error(transaction.id, e, log)
            raise

        self.audit.log_refund(transaction.id, result.amount)
        log.info("payment_refunded", amount=str(result.amount))
        return self._to_result(transaction, amount=result.amount)

    def get(self, transaction_id: str) -> PaymentResult:
        return self._to_result(self._load(transaction_id))

    def audit_trail(self, transaction_id: str, status: Optional[str] = None) -> List[AuditLogEntry]:
        self._load(transaction_id)
        if status:
            return self.audit.list_by_status(transaction_id, status)
        return self.audit.list_for_transaction(transaction_id)

    def reconcile_stuck(self, age_minutes: int = 15) -> List[Dict[str, str]]:
        """Resuelve operaciones cuyo resultado quedó ambiguo por más de `age_minutes`.

        Una autorización que sigue en PENDING se marca FAILED; un claim de
        captura o reembolso se libera para permitir reintentar.
        """
        cutoff = utcnow() - timedelta(minutes=age_minutes)
        actions = []
        for transaction in self.transactions.find_stuck(cutoff):
            operation = transaction.pending_operation
            if transaction.status == PaymentStatus.PENDING.value:
                transaction.status = PaymentStatus.FAILED.value
                transaction.error_message = "Authorization outcome not confirmed"
                transaction.pending_operation = None
                self.transactions.save(transaction)
                self.audit.log_failure(transaction.id, transaction.error_message)
                action = "FAILED"
            else:
                self.transactions.release(transaction.id)
                self.audit.record(transaction.id, transaction.status,
                                  f"Released unconfirmed {operation} after reconciliation timeout")
                action = "RELEASED"
            logger.warning("transaction_reconciled", transaction_id=transaction.id,
                           operation=operation, action=action)
            actions.append({"transaction_id": transaction.id, "operation": operation, "action": action})
        return actions

    # ------------------------------------------------------------------
    def _load(self, transaction_id: str) -> PaymentTransaction:
        transaction = self.transactions.find_by_id(transaction_id)
        if transaction is None:
            raise NotFound(transaction_id)
        return transaction

    def _require_status(self, transaction: PaymentTransaction, operation: str):
        if transaction.status != EXPECTED_STATUS[operation]:
            raise InvalidStateTransition(transaction.id, transaction.status, operation)
        if transaction.pending_operation is not None:
            raise ConcurrentModification(transaction.id)

    # _begin: Carga, verifica estado previo, elige adaptador y reclama la fila.
    def _begin(self, transaction_id: str, operation: str,
               transaction: Optional[PaymentTransaction] = None):
        transaction = transaction or self._load(transaction_id)
        self._require_status(transaction, operation)
        adapter = self.registry.resolve(transaction.provider)
        claimed = self.transactions.claim(transaction, operation)
        if claimed is None:
            logger.info("transaction_claim_lost", transaction_id=transaction.id, operation=operation)
            raise ConcurrentModification(transaction.id)
        return claimed, adapter

    def _handle_provider_error(self, transaction: PaymentTransaction, error: ProviderError, log):
        if isinstance(error, AmbiguousOutcome):
            # El claim queda tomado hasta la reconciliación.
            log.error("provider_outcome_ambiguous", cause=error.cause)
            self.audit.record(transaction.id, PaymentStatus.PENDING,
                              f"Outcome unknown, pending reconciliation: {error.cause}")
            return
        log.error("provider_rejected", cause=error.cause, status_code=error.status_code)
        transaction.status = PaymentStatus.FAILED.value
        transaction.error_message = error.cause
        transaction.pending_operation = None
        self.transactions.save(transaction)
        self.audit.log_failure(transaction.id, error.cause)

    # _handle_unexpected_error: Cualquier otra excepción con el claim tomado
    # deja la fila en FAILED y libera el claim. Se relee la fila porque la
    # copia en memoria puede tener cambios que no se pudieron persistir.
    def _handle_unexpected_error(self, transaction_id: str, error: Exception, log):
        log.exception("payment_operation_crashed", error_type=type(error).__name__)
        transaction = self.transactions.find_by_id(transaction_id)
        if transaction is None:
            return
        reason = f"Unexpected error: {type(error).__name__}"
        transaction.status = PaymentStatus.FAILED.value
        transaction.error_message = reason
        transaction.pending_operation = None
        self.transactions.save(transaction)
        self.audit.log_failure(transaction.id, reason)

    @staticmethod
    def _to_result(transaction: PaymentTransaction, amount: Optional[Decimal] = None) -> PaymentResult:
        return PaymentResult(
            id=transaction.id,
            provider=transaction.provider,
            provider_transaction_id=transaction.provider_transaction_id,
            amount=amount if amount is not None else transaction.amount,
            currency=transaction.currency,
            status=transaction.status,
            payment_method=transaction.payment_method,
            description=transaction.description,
            customer_id=transaction.customer_id,
            metadata=transaction.metadata_json,
            error_message=transaction.error_message,
            created_at=transaction.created_at,
            updated_at=transaction.updated_at,
        )


def _dump_raw(result: ProviderResult) -> str:
    return json.dumps(result.raw, default=str)
