"""
Pytest configuration and fixtures.
"""
import os

os.environ.setdefault("TX_DB_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")

import uuid
from decimal import Decimal
from typing import Optional
from unittest.mock import MagicMock

import pytest
from sqlmodel import create_engine

from audit import AuditLog
from customers import CustomerDirectory
from database import init_db
from models import PaymentStatus, Provider
from orchestrator import PaymentOrchestrator
from providers import PaymentProvider, ProviderRegistry
from schemas import PaymentRequest, ProviderResult
from stores import AuditLogStore, TransactionStore


class FakeProvider(PaymentProvider):
    """Adaptador en memoria que cuenta llamadas y puede fallar a pedido."""

    def __init__(self, provider: Provider):
        self.provider = provider
        self.calls = {"authorize": 0, "capture": 0, "refund": 0}
        self.error: Optional[Exception] = None
        self.capture_hook = None
        self.authorize_id: Optional[str] = None
        self.capture_id: Optional[str] = None
        self.refund_targets = []

    def _maybe_fail(self):
        if self.error is not None:
            raise self.error

    def authorize(self, request: PaymentRequest) -> ProviderResult:
        self.calls["authorize"] += 1
        self._maybe_fail()
        return ProviderResult(
            provider=self.name,
            provider_transaction_id=self.authorize_id or f"{self.name}_{uuid.uuid4().hex[:12]}",
            amount=request.amount,
            currency=request.currency,
            status=PaymentStatus.AUTHORIZED.value,
            payment_method=request.payment_method,
            raw={"id": "auth"},
        )

    def capture(self, provider_transaction_id: str) -> ProviderResult:
        self.calls["capture"] += 1
        if self.capture_hook is not None:
            self.capture_hook()
        self._maybe_fail()
        return ProviderResult(
            provider=self.name,
            provider_transaction_id=provider_transaction_id,
            amount=Decimal("100.00"),
            currency="BRL",
            status=PaymentStatus.CAPTURED.value,
            capture_id=self.capture_id,
            raw={"id": provider_transaction_id, "captured": True},
        )

    def refund(self, provider_transaction_id: str, amount: Decimal, currency: Optional[str] = None) -> ProviderResult:
        self.calls["refund"] += 1
        self.refund_targets.append(provider_transaction_id)
        self._maybe_fail()
        return ProviderResult(
            provider=self.name,
            provider_transaction_id=f"re_{provider_transaction_id}",
            amount=amount,
            currency=currency or "BRL",
            status=PaymentStatus.REFUNDED.value,
            raw={"refunded": str(amount)},
        )


@pytest.fixture
def engine(tmp_path):
    """Motor SQLite en archivo temporal (soporta acceso desde varios hilos)."""
    eng = create_engine(f"sqlite:///{tmp_path / 'payments_test.db'}",
                        connect_args={"check_same_thread": False})
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def fake_providers():
    return {p: FakeProvider(p) for p in Provider}


@pytest.fixture
def customers(engine) -> CustomerDirectory:
    return CustomerDirectory(engine)


@pytest.fixture
def transactions(engine) -> TransactionStore:
    return TransactionStore(engine)


@pytest.fixture
def audit(engine) -> AuditLog:
    return AuditLog(AuditLogStore(engine))


@pytest.fixture
def orchestrator(fake_providers, transactions, audit, customers) -> PaymentOrchestrator:
    return PaymentOrchestrator(ProviderRegistry(fake_providers), transactions, audit, customers)


@pytest.fixture
def brl_request() -> PaymentRequest:
    return PaymentRequest(
        amount=Decimal("100.00"),
        currency="BRL",
        payment_method="card_4242",
        provider="cielo",
        description="Order 42",
        metadata='{"orderId": "42"}',
    )


def make_response(status_code: int = 200, body=None, text: Optional[str] = None) -> MagicMock:
    """Respuesta HTTP falsa compatible con requests.Response."""
    resp = MagicMock()
    resp.status_code = status_code
    if isinstance(body, Exception):
        resp.json.side_effect = body
    else:
        resp.json.return_value = body
    resp.text = text if text is not None else str(body)
    return resp
