"""
Tests for the payment orchestrator state machine.
"""
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from conftest import make_response
from database import DBSession
from errors import (
    AmbiguousOutcome,
    ConcurrentModification,
    InvalidStateTransition,
    NotFound,
    ProviderRejected,
    ValidationFailed,
)
from models import PaymentTransaction, Provider, utcnow
from orchestrator import PaymentOrchestrator
from providers import CieloProvider, ProviderRegistry


def all_transactions(engine):
    with DBSession(engine) as s:
        return list(s.exec(select(PaymentTransaction)).all())


def statuses(orchestrator, transaction_id):
    return [e.status for e in orchestrator.audit_trail(transaction_id)]


class TestLifecycle:

    def test_authorize_capture_refund(self, orchestrator, brl_request) -> None:
        """Escenario completo: 100.00 BRL por cielo, captura y reembolso parcial."""
        authorized = orchestrator.authorize(brl_request)
        assert authorized.status == "AUTHORIZED"
        assert authorized.provider == "cielo"
        assert authorized.provider_transaction_id
        assert authorized.amount == Decimal("100.00")
        assert authorized.description == "Order 42"
        assert authorized.metadata == '{"orderId": "42"}'

        captured = orchestrator.capture(authorized.id)
        assert captured.status == "CAPTURED"

        refunded = orchestrator.refund(authorized.id, Decimal("50.00"))
        assert refunded.status == "REFUNDED"
        assert refunded.amount == Decimal("50.00")

        # Una entrada por transición, más reciente primero.
        assert statuses(orchestrator, authorized.id) == ["REFUNDED", "CAPTURED", "AUTHORIZED", "PENDING"]
        for status in ("AUTHORIZED", "CAPTURED", "REFUNDED"):
            entries = orchestrator.audit_trail(authorized.id, status)
            assert len(entries) == 1
            assert entries[0].status == status

    def test_refund_keeps_original_amount_on_record(self, orchestrator, brl_request, transactions) -> None:
        tx = orchestrator.authorize(brl_request)
        orchestrator.capture(tx.id)
        orchestrator.refund(tx.id, Decimal("30.00"))

        stored = transactions.find_by_id(tx.id)
        assert stored.amount == Decimal("100.00")
        assert stored.refunded_amount == Decimal("30.00")
        assert orchestrator.get(tx.id).amount == Decimal("100.00")

    def test_provider_transaction_id_lookup(self, orchestrator, brl_request, transactions) -> None:
        tx = orchestrator.authorize(brl_request)
        found = transactions.find_by_provider_transaction_id(tx.provider_transaction_id)
        assert found.id == tx.id

    def test_get_is_pure_read(self, orchestrator, brl_request) -> None:
        tx = orchestrator.authorize(brl_request)
        first = orchestrator.get(tx.id).model_dump_json()
        second = orchestrator.get(tx.id).model_dump_json()
        assert first == second


class TestValidationGate:

    def test_incompatible_currency_never_reaches_adapter(self, orchestrator, brl_request, fake_providers, engine) -> None:
        request = brl_request.model_copy(update={"currency": "USD"})
        with pytest.raises(ValidationFailed, match="not supported by provider cielo"):
            orchestrator.authorize(request)
        assert fake_providers[Provider.CIELO].calls["authorize"] == 0
        assert all_transactions(engine) == []

    def test_prefix_mismatch_never_reaches_adapter(self, orchestrator, brl_request, fake_providers) -> None:
        request = brl_request.model_copy(update={"payment_method": "invalid_token"})
        with pytest.raises(ValidationFailed, match="must start with 'card_'"):
            orchestrator.authorize(request)
        assert fake_providers[Provider.CIELO].calls["authorize"] == 0

    def test_customer_must_exist(self, orchestrator, brl_request, customers) -> None:
        with pytest.raises(ValidationFailed, match="Customer not found"):
            orchestrator.authorize(brl_request.model_copy(update={"customer_id": "cus_1"}))

        customers.create_customer("cus_1", "Ana", "ana@example.com")
        result = orchestrator.authorize(brl_request.model_copy(update={"customer_id": "cus_1"}))
        assert result.customer_id == "cus_1"


class TestNotFound:

    @pytest.mark.parametrize("operation", ["capture", "get", "audit_trail"])
    def test_unknown_transaction(self, orchestrator, operation, engine) -> None:
        with pytest.raises(NotFound):
            getattr(orchestrator, operation)("missing-id")
        assert all_transactions(engine) == []

    def test_refund_unknown_transaction(self, orchestrator, engine) -> None:
        with pytest.raises(NotFound):
            orchestrator.refund("missing-id", Decimal("1.00"))
        assert all_transactions(engine) == []


class TestStateGuards:

    def test_capture_twice_rejected(self, orchestrator, brl_request, fake_providers) -> None:
        tx = orchestrator.authorize(brl_request)
        orchestrator.capture(tx.id)
        with pytest.raises(InvalidStateTransition):
            orchestrator.capture(tx.id)
        assert fake_providers[Provider.CIELO].calls["capture"] == 1

    def test_refund_requires_capture(self, orchestrator, brl_request, fake_providers) -> None:
        tx = orchestrator.authorize(brl_request)
        with pytest.raises(InvalidStateTransition, match="in status AUTHORIZED"):
            orchestrator.refund(tx.id, Decimal("10.00"))
        assert fake_providers[Provider.CIELO].calls["refund"] == 0

    def test_capture_after_refund_rejected(self, orchestrator, brl_request) -> None:
        tx = orchestrator.authorize(brl_request)
        orchestrator.capture(tx.id)
        orchestrator.refund(tx.id, Decimal("100.00"))
        with pytest.raises(InvalidStateTransition):
            orchestrator.capture(tx.id)

    def test_refund_above_amount_rejected(self, orchestrator, brl_request, fake_providers) -> None:
        tx = orchestrator.authorize(brl_request)
        orchestrator.capture(tx.id)
        with pytest.raises(ValidationFailed, match="exceeds transaction amount"):
            orchestrator.refund(tx.id, Decimal("100.01"))
        assert fake_providers[Provider.CIELO].calls["refund"] == 0


class TestProviderFailures:

    def test_rejected_authorization_is_persisted_as_failed(self, orchestrator, brl_request, fake_providers, engine) -> None:
        fake_providers[Provider.CIELO].error = ProviderRejected("cielo", "card declined")

        with pytest.raises(ProviderRejected):
            orchestrator.authorize(brl_request)

        [tx] = all_transactions(engine)
        assert tx.status == "FAILED"
        assert tx.error_message == "card declined"
        assert tx.pending_operation is None
        assert tx.provider_transaction_id is None
        assert statuses(orchestrator, tx.id) == ["FAILED", "PENDING"]
        assert "card declined" in orchestrator.audit_trail(tx.id, "FAILED")[0].message

    def test_rejected_capture_marks_failed(self, orchestrator, brl_request, fake_providers) -> None:
        tx = orchestrator.authorize(brl_request)
        fake_providers[Provider.CIELO].error = ProviderRejected("cielo", "expired authorization")

        with pytest.raises(ProviderRejected):
            orchestrator.capture(tx.id)

        stored = orchestrator.get(tx.id)
        assert stored.status == "FAILED"
        assert stored.error_message == "expired authorization"

    def test_ambiguous_authorization_stays_pending(self, orchestrator, brl_request, fake_providers, engine) -> None:
        fake_providers[Provider.CIELO].error = AmbiguousOutcome("cielo", "network failure: timeout")

        with pytest.raises(AmbiguousOutcome):
            orchestrator.authorize(brl_request)

        [tx] = all_transactions(engine)
        assert tx.status == "PENDING"
        assert tx.pending_operation == "authorize"

        actions = orchestrator.reconcile_stuck(age_minutes=0)
        assert actions == [{"transaction_id": tx.id, "operation": "authorize", "action": "FAILED"}]
        assert orchestrator.get(tx.id).status == "FAILED"
        assert statuses(orchestrator, tx.id)[0] == "FAILED"

    def test_ambiguous_capture_blocks_until_reconciled(self, orchestrator, brl_request, fake_providers) -> None:
        tx = orchestrator.authorize(brl_request)
        cielo = fake_providers[Provider.CIELO]
        cielo.error = AmbiguousOutcome("cielo", "network failure: timeout")

        with pytest.raises(AmbiguousOutcome):
            orchestrator.capture(tx.id)
        assert orchestrator.get(tx.id).status == "AUTHORIZED"

        cielo.error = None
        with pytest.raises(ConcurrentModification):
            orchestrator.capture(tx.id)

        actions = orchestrator.reconcile_stuck(age_minutes=0)
        assert actions[0]["action"] == "RELEASED"
        assert orchestrator.capture(tx.id).status == "CAPTURED"

    def test_reconcile_ignores_recent_claims(self, orchestrator, brl_request, fake_providers) -> None:
        fake_providers[Provider.CIELO].error = AmbiguousOutcome("cielo", "timeout")
        with pytest.raises(AmbiguousOutcome):
            orchestrator.authorize(brl_request)
        assert orchestrator.reconcile_stuck(age_minutes=60) == []


class TestConcurrency:

    def test_concurrent_captures_do_not_both_succeed(self, orchestrator, brl_request, fake_providers) -> None:
        tx = orchestrator.authorize(brl_request)
        cielo = fake_providers[Provider.CIELO]
        entered = threading.Event()
        release = threading.Event()

        def block():
            entered.set()
            release.wait(timeout=5)

        cielo.capture_hook = block
        outcome = {}

        def first_capture():
            try:
                outcome["first"] = orchestrator.capture(tx.id)
            except Exception as e:  # noqa: BLE001
                outcome["first"] = e

        worker = threading.Thread(target=first_capture)
        worker.start()
        assert entered.wait(timeout=5)

        cielo.capture_hook = None
        with pytest.raises(ConcurrentModification):
            orchestrator.capture(tx.id)

        release.set()
        worker.join(timeout=5)

        assert outcome["first"].status == "CAPTURED"
        assert cielo.calls["capture"] == 1
        assert len(orchestrator.audit_trail(tx.id, "CAPTURED")) == 1

    def test_stale_version_cannot_claim(self, orchestrator, brl_request, transactions) -> None:
        tx = orchestrator.authorize(brl_request)
        snapshot = transactions.find_by_id(tx.id)
        assert transactions.claim(snapshot, "capture") is not None
        transactions.release(tx.id)
        # La versión leída antes del primer claim ya no es válida.
        assert transactions.claim(snapshot, "capture") is None


class TestMalformedResponses:

    @pytest.fixture
    def session(self) -> MagicMock:
        return MagicMock(spec=requests.Session)

    @pytest.fixture
    def cielo_orchestrator(self, session, transactions, audit, customers) -> PaymentOrchestrator:
        cielo = CieloProvider("https://cielo.test", "mid", "mkey", session=session, timeout=1)
        return PaymentOrchestrator(ProviderRegistry({Provider.CIELO: cielo}), transactions, audit, customers)

    def test_wrong_shape_authorization_fails_cleanly(self, cielo_orchestrator, session, brl_request, engine) -> None:
        session.request.return_value = make_response(201, {"Payment": None})

        with pytest.raises(ProviderRejected):
            cielo_orchestrator.authorize(brl_request)

        [tx] = all_transactions(engine)
        assert tx.status == "FAILED"
        assert tx.pending_operation is None
        assert statuses(cielo_orchestrator, tx.id) == ["FAILED", "PENDING"]

    def test_unparseable_capture_releases_claim(self, cielo_orchestrator, session, brl_request) -> None:
        session.request.return_value = make_response(201, {"Payment": {"PaymentId": "pay-1", "Status": 1}})
        tx = cielo_orchestrator.authorize(brl_request)
        session.request.return_value = make_response(200, {"Payment": {"CapturedAmount": "abc"}})

        with pytest.raises(ProviderRejected):
            cielo_orchestrator.capture(tx.id)

        stored = cielo_orchestrator.get(tx.id)
        assert stored.status == "FAILED"
        assert cielo_orchestrator.transactions.find_by_id(tx.id).pending_operation is None
        assert statuses(cielo_orchestrator, tx.id)[0] == "FAILED"


class TestUnexpectedErrors:

    def test_crash_during_capture_marks_failed(self, orchestrator, brl_request, fake_providers, transactions) -> None:
        tx = orchestrator.authorize(brl_request)
        fake_providers[Provider.CIELO].error = RuntimeError("adapter bug")

        with pytest.raises(RuntimeError):
            orchestrator.capture(tx.id)

        stored = transactions.find_by_id(tx.id)
        assert stored.status == "FAILED"
        assert stored.pending_operation is None
        assert stored.error_message == "Unexpected error: RuntimeError"
        assert statuses(orchestrator, tx.id)[0] == "FAILED"

    def test_duplicate_provider_id_race_marks_failed(self, orchestrator, brl_request, fake_providers,
                                                      transactions, engine, monkeypatch) -> None:
        fake_providers[Provider.CIELO].authorize_id = "cielo_same"
        first = orchestrator.authorize(brl_request)
        # El chequeo previo no ve la otra fila: la unicidad la impone la base.
        monkeypatch.setattr(transactions, "find_by_provider_transaction_id", lambda _: None)

        with pytest.raises(IntegrityError):
            orchestrator.authorize(brl_request)

        [second] = [tx for tx in all_transactions(engine) if tx.id != first.id]
        assert second.status == "FAILED"
        assert second.pending_operation is None
        assert second.provider_transaction_id is None
        assert statuses(orchestrator, second.id) == ["FAILED", "PENDING"]
        assert orchestrator.get(first.id).status == "AUTHORIZED"


class TestCaptureReference:

    def test_refund_targets_capture_id(self, orchestrator, brl_request, fake_providers, transactions) -> None:
        cielo = fake_providers[Provider.CIELO]
        cielo.capture_id = "cap_1"
        tx = orchestrator.authorize(brl_request)
        orchestrator.capture(tx.id)
        orchestrator.refund(tx.id, Decimal("10.00"))

        assert transactions.find_by_id(tx.id).provider_capture_id == "cap_1"
        assert cielo.refund_targets == ["cap_1"]

    def test_refund_falls_back_to_provider_transaction_id(self, orchestrator, brl_request, fake_providers) -> None:
        tx = orchestrator.authorize(brl_request)
        orchestrator.capture(tx.id)
        orchestrator.refund(tx.id, Decimal("10.00"))
        assert fake_providers[Provider.CIELO].refund_targets == [tx.provider_transaction_id]


class TestTimestamps:

    def test_timestamps_are_utc_aware(self, orchestrator, brl_request, transactions) -> None:
        tx = orchestrator.authorize(brl_request)
        stored = transactions.find_by_id(tx.id)
        assert stored.created_at.utcoffset() == timedelta(0)
        assert stored.updated_at.utcoffset() == timedelta(0)
        assert orchestrator.audit_trail(tx.id)[0].created_at.utcoffset() == timedelta(0)

    def test_find_stuck_cutoff_in_any_zone(self, transactions) -> None:
        tx = transactions.save(PaymentTransaction(
            provider="cielo", amount=Decimal("10.00"), currency="BRL", payment_method="card_1",
            status="AUTHORIZED", pending_operation="capture"))
        sao_paulo = timezone(timedelta(hours=-3))

        later = datetime.now(sao_paulo) + timedelta(minutes=1)
        earlier = utcnow() - timedelta(minutes=1)

        assert [t.id for t in transactions.find_stuck(later)] == [tx.id]
        assert transactions.find_stuck(earlier) == []
