"""Aplicación FastAPI principal con endpoints de autenticación, pagos y auditoría.

Cada endpoint delega en PaymentOrchestrator y traduce los errores de dominio
a respuestas HTTP con un motivo estable.
"""

from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

import structlog
from fastapi import FastAPI, Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from sqlmodel import select

from config import get_settings
from customers import CustomerDirectory
from database import init_db, DBSession
from errors import (
    AmbiguousOutcome,
    ConcurrentModification,
    InvalidStateTransition,
    NotFound,
    PaymentError,
    ProviderError,
)
from logging_config import setup_logging
from models import ApiClient
from orchestrator import PaymentOrchestrator
from providers import build_registry
from schemas import AuditEntryView, PaymentRequest, PaymentResult
from security import create_token, decode_token, hash_secret, parse_scopes, verify_secret

settings = get_settings()
app = FastAPI(title="Payment Orchestrator", version="0.1.0")
security = HTTPBearer()
logger = structlog.get_logger(__name__)

# ---------------------------- Schemas ----------------------------
class TokenPayload(BaseModel):
    """Credenciales client-credentials para obtener un JWT con scopes."""
    client_id: str
    client_secret: str

class CustomerPayload(BaseModel):
    external_id: str
    name: str
    email: str

class CardPayload(BaseModel):
    """Tarjeta tokenizada en el proveedor; nunca se recibe el PAN."""
    provider_card_id: str
    brand: str
    last_four_digits: str
    expiration_month: int
    expiration_year: int
    is_default: bool = False

# ------------------------- Dependencies --------------------------

@lru_cache
def get_orchestrator() -> PaymentOrchestrator:
    return PaymentOrchestrator(build_registry(settings))

@lru_cache
def get_customers() -> CustomerDirectory:
    return CustomerDirectory()

def get_current_scopes(credentials: HTTPAuthorizationCredentials = Depends(security)) -> List[str]:
    """Obtiene los scopes del token JWT o lanza 401."""
    data = decode_token(credentials.credentials)
    if not data:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return data.get('scope', '').split()

def require_scope(scope: str):
    """Genera dependencia que valida que el token tenga el scope requerido."""
    def checker(scopes: List[str] = Depends(get_current_scopes)):
        if scope not in scopes:
            raise HTTPException(status_code=403, detail="Forbidden: insufficient scope")
        return scopes
    return checker

# to_http_error: Traduce errores de dominio a HTTPException. El detalle de
# proveedor solo va a los logs.
def to_http_error(e: PaymentError) -> HTTPException:
    if isinstance(e, NotFound):
        return HTTPException(status_code=404, detail=e.reason)
    if isinstance(e, (InvalidStateTransition, ConcurrentModification)):
        return HTTPException(status_code=409, detail=e.reason)
    if isinstance(e, AmbiguousOutcome):
        return HTTPException(status_code=504, detail="Payment outcome unknown, pending reconciliation")
    if isinstance(e, ProviderError):
        return HTTPException(status_code=502, detail="Payment processing failed")
    return HTTPException(status_code=400, detail=e.reason)

# ------------------------- Startup Event -------------------------
@app.on_event("startup")
def on_startup():
    """Configura logging, crea tablas y registra clientes de API configurados."""
    setup_logging()
    init_db()
    with DBSession() as s:
        for c in settings.api_clients:
            existing = s.exec(select(ApiClient).where(ApiClient.client_id == c['client_id'])).first()
            if not existing:
                s.add(ApiClient(client_id=c['client_id'], secret_hash=hash_secret(c['secret']),
                                scopes=" ".join(parse_scopes(c['scopes']))))
        s.commit()
    logger.info("app_started", api_clients=len(settings.api_clients))

# --------------------------- Auth Routes -------------------------
@app.post('/auth/token')
def issue_token(payload: TokenPayload):
    """Autentica un cliente de API y devuelve un JWT con sus scopes."""
    with DBSession() as s:
        client = s.exec(select(ApiClient).where(ApiClient.client_id == payload.client_id)).first()
        if not client or not verify_secret(payload.client_secret, client.secret_hash):
            raise HTTPException(status_code=401, detail="Invalid credentials")
        token = create_token(client.client_id, client.scopes.split())
        return {"access_token": token, "token_type": "bearer", "scope": client.scopes}

# ------------------------- Payment Endpoints ---------------------
@app.post('/payments/authorize', response_model=PaymentResult)
def authorize(payload: PaymentRequest, _=Depends(require_scope('payments:write')),
              orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    """Autoriza un pago a través del proveedor indicado."""
    try:
        return orchestrator.authorize(payload)
    except PaymentError as e:
        raise to_http_error(e)

@app.post('/payments/capture/{transaction_id}', response_model=PaymentResult)
def capture(transaction_id: str, _=Depends(require_scope('payments:write')),
            orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    """Captura un pago previamente autorizado."""
    try:
        return orchestrator.capture(transaction_id)
    except PaymentError as e:
        raise to_http_error(e)

@app.post('/payments/refund/{transaction_id}', response_model=PaymentResult)
def refund(transaction_id: str, amount: Decimal, _=Depends(require_scope('payments:write')),
           orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    """Reembolsa un pago capturado por el monto indicado."""
    try:
        return orchestrator.refund(transaction_id, amount)
    except PaymentError as e:
        raise to_http_error(e)

@app.get('/payments/{transaction_id}', response_model=PaymentResult)
def get_payment(transaction_id: str, _=Depends(require_scope('payments:read')),
                orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    """Consulta el estado normalizado de un pago."""
    try:
        return orchestrator.get(transaction_id)
    except PaymentError as e:
        raise to_http_error(e)

# ------------------------- Audit Endpoints -----------------------
@app.get('/transaction-logs/transaction/{transaction_id}', response_model=List[AuditEntryView])
def transaction_logs(transaction_id: str, _=Depends(require_scope('transactions:read')),
                     orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    """Lista el log de auditoría de una transacción, más reciente primero."""
    try:
        return [AuditEntryView.model_validate(e, from_attributes=True)
                for e in orchestrator.audit_trail(transaction_id)]
    except PaymentError as e:
        raise to_http_error(e)

@app.get('/transaction-logs/transaction/{transaction_id}/status/{log_status}',
         response_model=List[AuditEntryView])
def transaction_logs_by_status(transaction_id: str, log_status: str,
                               _=Depends(require_scope('transactions:read')),
                               orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    try:
        return [AuditEntryView.model_validate(e, from_attributes=True)
                for e in orchestrator.audit_trail(transaction_id, log_status)]
    except PaymentError as e:
        raise to_http_error(e)

# ---------------------- Customers and Cards ----------------------
@app.post('/customers')
def create_customer(payload: CustomerPayload, _=Depends(require_scope('payments:write')),
                    customers: CustomerDirectory = Depends(get_customers)):
    try:
        c = customers.create_customer(payload.external_id, payload.name, payload.email)
    except PaymentError as e:
        raise to_http_error(e)
    return {"id": c.id, "external_id": c.external_id, "name": c.name, "email": c.email}

@app.post('/customers/{external_id}/cards')
def add_card(external_id: str, payload: CardPayload, _=Depends(require_scope('payments:write')),
             customers: CustomerDirectory = Depends(get_customers)):
    """Registra una tarjeta tokenizada validando expiración, marca y dígitos."""
    try:
        card = customers.add_card(external_id, **payload.model_dump())
    except PaymentError as e:
        raise to_http_error(e)
    return card.model_dump()

@app.get('/customers/{external_id}/cards')
def list_cards(external_id: str, _=Depends(require_scope('payments:read')),
               customers: CustomerDirectory = Depends(get_customers)):
    """Lista las tarjetas almacenadas de un cliente."""
    if customers.get_customer(external_id) is None:
        raise to_http_error(NotFound(external_id, kind="Customer"))
    return [card.model_dump() for card in customers.list_cards(external_id)]

@app.post('/cards/{card_id}/default')
def set_default_card(card_id: str, _=Depends(require_scope('payments:write')),
                     customers: CustomerDirectory = Depends(get_customers)):
    try:
        return customers.set_default_card(card_id).model_dump()
    except PaymentError as e:
        raise to_http_error(e)

# -------------------------- Admin --------------------------------
@app.post('/admin/reconcile')
def reconcile(age_minutes: Optional[int] = None, _=Depends(require_scope('admin')),
              orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    """Resuelve operaciones con resultado ambiguo más antiguas que el umbral."""
    actions = orchestrator.reconcile_stuck(age_minutes or settings.reconcile_age_minutes)
    return {"performed": actions}

# -------------------------- Utility ------------------------------
@app.get('/health')
def health(orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    """Verificación básica de salud y proveedores configurados."""
    return {
        "status": "ok",
        "providers_configured": orchestrator.registry.names(),
    }
