"""Adaptadores de proveedores de pago.

Cada adaptador traduce una petición normalizada (authorize / capture / refund)
al protocolo de su proveedor y la respuesta cruda de vuelta a ProviderResult.
Ningún adaptador reintenta: la política de fallos es del orquestador.

Normalización por proveedor:
  cielo:  montos enteros en centavos, solo BRL, headers MerchantId/MerchantKey.
  paypal: montos decimales como string, multi-moneda, bearer token OAuth2.
  stripe: SDK oficial, montos enteros en centavos, objetos charge/refund.
"""

import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, Mapping, Optional

import requests
import stripe
import structlog

from config import get_settings
from errors import AmbiguousOutcome, ProviderRejected, UnsupportedProvider
from models import PaymentStatus, Provider
from schemas import PaymentRequest, ProviderResult
from token_cache import TokenCache

logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")

# Errores que produce una respuesta JSON válida pero con forma inesperada.
MALFORMED_RESPONSE_ERRORS = (AttributeError, TypeError, ValueError, ArithmeticError, KeyError, IndexError)


# to_minor_units: Convierte a centavos truncando (amount × 100).
def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value(rounding=ROUND_DOWN))


def from_minor_units(value) -> Decimal:
    return (Decimal(int(value)) / 100).quantize(CENTS)


# to_major_string: Monto en unidades mayores con dos decimales ("100.00").
def to_major_string(amount: Decimal) -> str:
    return str(Decimal(amount).quantize(CENTS, rounding=ROUND_DOWN))


# _as_dict: Objetos del SDK de Stripe (StripeObject) a dict plano.
def _as_dict(obj) -> Dict[str, Any]:
    to_dict = getattr(obj, "to_dict", None)
    return to_dict() if callable(to_dict) else dict(obj)


class PaymentProvider(ABC):
    """Contrato común de los adaptadores.

    Subclases definen `provider` y los tres métodos de red. `_send` aplica el
    timeout acotado y clasifica las fallas en ProviderRejected (definitiva) o
    AmbiguousOutcome (timeout, corte de red o 5xx). Toda lectura del cuerpo
    de respuesta se hace dentro de `_parsing`, de modo que un cuerpo con forma
    inesperada también termina en ProviderRejected.
    """
    provider: Provider

    def __init__(self, session: Optional[requests.Session] = None, timeout: Optional[float] = None):
        self.session = session or requests.Session()
        self.timeout = timeout if timeout is not None else get_settings().request_timeout

    @property
    def name(self) -> str:
        return self.provider.value

    def supports(self, provider_name: Optional[str]) -> bool:
        return bool(provider_name) and provider_name.lower() == self.name

    @abstractmethod
    def authorize(self, request: PaymentRequest) -> ProviderResult:
        ...

    @abstractmethod
    def capture(self, provider_transaction_id: str) -> ProviderResult:
        ...

    @abstractmethod
    def refund(self, provider_transaction_id: str, amount: Decimal,
               currency: Optional[str] = None) -> ProviderResult:
        ...

    def _send(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        """Ejecuta la llamada HTTP y devuelve el cuerpo JSON como dict."""
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.Timeout, requests.ConnectionError) as e:
            logger.warning("provider_call_ambiguous", provider=self.name, method=method, url=url, error=str(e))
            raise AmbiguousOutcome(self.name, f"network failure: {e}")
        except requests.RequestException as e:
            logger.error("provider_call_failed", provider=self.name, method=method, url=url, error=str(e))
            raise ProviderRejected(self.name, str(e))

        if resp.status_code >= 500:
            logger.warning("provider_call_ambiguous", provider=self.name, method=method, url=url,
                           status_code=resp.status_code, body=resp.text[:500])
            raise AmbiguousOutcome(self.name, f"HTTP {resp.status_code}", status_code=resp.status_code)
        if not 200 <= resp.status_code < 300:
            logger.error("provider_call_failed", provider=self.name, method=method, url=url,
                         status_code=resp.status_code, body=resp.text[:500])
            raise ProviderRejected(self.name, f"HTTP {resp.status_code}", status_code=resp.status_code)
        try:
            data = resp.json()
        except ValueError:
            logger.error("provider_response_invalid", provider=self.name, url=url, body=resp.text[:500])
            raise ProviderRejected(self.name, "invalid JSON response", status_code=resp.status_code)
        if not isinstance(data, dict):
            raise ProviderRejected(self.name, "unexpected response shape", status_code=resp.status_code)
        return data

    @contextmanager
    def _parsing(self, operation: str):
        """Convierte errores al leer la respuesta en un rechazo definitivo."""
        try:
            yield
        except MALFORMED_RESPONSE_ERRORS as e:
            logger.error("provider_response_malformed", provider=self.name, operation=operation,
                         error=f"{type(e).__name__}: {e}")
            raise ProviderRejected(self.name, f"malformed {operation} response: {type(e).__name__}")

    def _require(self, data: Mapping[str, Any], *path):
        """Extrae un campo anidado o falla como respuesta malformada."""
        current: Any = data
        for key in path:
            try:
                current = current[key]
            except (KeyError, IndexError, TypeError):
                logger.error("provider_response_invalid", provider=self.name, missing=".".join(map(str, path)))
                raise ProviderRejected(self.name, f"missing field {'.'.join(map(str, path))}")
        if current is None:
            raise ProviderRejected(self.name, f"missing field {'.'.join(map(str, path))}")
        return current

    def _result(self, provider_transaction_id, amount, currency, status, payment_method=None,
                raw=None, capture_id=None):
        return ProviderResult(
            provider=self.name,
            provider_transaction_id=str(provider_transaction_id),
            amount=Decimal(amount).quantize(CENTS),
            currency=currency.upper(),
            status=status.value,
            payment_method=payment_method,
            capture_id=capture_id,
            raw=dict(raw or {}),
        )


class CieloProvider(PaymentProvider):
    """Gateway basado en centavos, solo BRL. El reembolso usa el endpoint void."""
    provider = Provider.CIELO
    # Payment.Status: 1 = autorizado, 2 = confirmado
    APPROVED_STATUSES = (1, 2)

    def __init__(self, api_url: str, merchant_id: str, merchant_key: str, **kwargs):
        super().__init__(**kwargs)
        self.api_url = api_url.rstrip('/')
        self.merchant_id = merchant_id
        self.merchant_key = merchant_key

    def _headers(self):
        return {
            "MerchantId": self.merchant_id,
            "MerchantKey": self.merchant_key,
            "Content-Type": "application/json",
        }

    def authorize(self, request: PaymentRequest) -> ProviderResult:
        payload = {
            "MerchantOrderId": request.customer_id or uuid.uuid4().hex,
            "Payment": {
                "Type": "CreditCard",
                "Amount": to_minor_units(request.amount),
                "Currency": request.currency,
                "Installments": 1,
                "CreditCard": {"CardToken": request.payment_method, "Brand": "Visa"},
                # Solo autorización; la captura se hace aparte.
                "Capture": False,
            },
        }
        data = self._send("POST", f"{self.api_url}/1/sales", json=payload, headers=self._headers())
        with self._parsing("authorize"):
            payment = self._require(data, "Payment")
            status = payment.get("Status")
            if status is not None and status not in self.APPROVED_STATUSES:
                message = payment.get("ReturnMessage", "authorization denied")
                logger.info("provider_authorization_denied", provider=self.name, status=status, message=message)
                raise ProviderRejected(self.name, f"authorization denied: {message}")
            payment_id = self._require(data, "Payment", "PaymentId")
            return self._result(payment_id, request.amount, request.currency,
                                PaymentStatus.AUTHORIZED, request.payment_method, data)

    def capture(self, provider_transaction_id: str) -> ProviderResult:
        data = self._send("PUT", f"{self.api_url}/1/sales/{provider_transaction_id}/capture",
                          headers=self._headers())
        with self._parsing("capture"):
            payment = data.get("Payment", data)
            captured = self._require(payment, "CapturedAmount")
            return self._result(provider_transaction_id, from_minor_units(captured), "BRL",
                                PaymentStatus.CAPTURED, raw=data)

    def refund(self, provider_transaction_id: str, amount: Decimal,
               currency: Optional[str] = None) -> ProviderResult:
        data = self._send("PUT", f"{self.api_url}/1/sales/{provider_transaction_id}/void",
                          params={"amount": to_minor_units(amount)}, headers=self._headers())
        with self._parsing("refund"):
            return self._result(provider_transaction_id, amount, "BRL", PaymentStatus.REFUNDED, raw=data)


class PayPalProvider(PaymentProvider):
    """Gateway en unidades mayores con bearer token OAuth2 (client credentials).

    La captura de una orden crea un objeto capture con su propio ID; el
    reembolso se emite contra ese ID, no contra la orden.
    """
    provider = Provider.PAYPAL

    def __init__(self, api_url: str, client_id: str, client_secret: str,
                 token_cache: Optional[TokenCache] = None, **kwargs):
        super().__init__(**kwargs)
        self.api_url = api_url.rstrip('/')
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_cache = token_cache or TokenCache(self.fetch_access_token)

    # fetch_access_token: Intercambio client-credentials; devuelve (token, expires_in).
    def fetch_access_token(self):
        data = self._send(
            "POST", f"{self.api_url}/v1/oauth2/token",
            auth=(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        with self._parsing("token"):
            token = self._require(data, "access_token")
            if not isinstance(token, str):
                raise ProviderRejected(self.name, "malformed token response")
            return token, data.get("expires_in")

    def _authorized_send(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        token = self.token_cache.get()
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        try:
            return self._send(method, url, headers=headers, **kwargs)
        except ProviderRejected as e:
            if e.status_code == 401:
                # Token revocado o vencido: la próxima llamada pide uno nuevo.
                self.token_cache.invalidate(token)
            raise

    def authorize(self, request: PaymentRequest) -> ProviderResult:
        purchase_unit: Dict[str, Any] = {
            "amount": {"currency_code": request.currency, "value": to_major_string(request.amount)},
        }
        if request.customer_id:
            purchase_unit["reference_id"] = request.customer_id
        payload = {
            "intent": "AUTHORIZE",
            "purchase_units": [purchase_unit],
            "payment_source": {"token": {"id": request.payment_method, "type": "PAYMENT_METHOD_TOKEN"}},
        }
        data = self._authorized_send("POST", f"{self.api_url}/v2/checkout/orders", json=payload)
        with self._parsing("authorize"):
            order_id = self._require(data, "id")
            return self._result(order_id, request.amount, request.currency,
                                PaymentStatus.AUTHORIZED, request.payment_method, data)

    def capture(self, provider_transaction_id: str) -> ProviderResult:
        data = self._authorized_send(
            "POST", f"{self.api_url}/v2/checkout/orders/{provider_transaction_id}/capture", json={})
        with self._parsing("capture"):
            unit = self._require(data, "purchase_units", 0)
            captures = (unit.get("payments") or {}).get("captures") or []
            if captures:
                capture = captures[0]
                capture_id = self._require(capture, "id")
                amount = capture.get("amount") or unit.get("amount")
            else:
                capture_id = None
                amount = unit.get("amount")
            if not amount:
                raise ProviderRejected(self.name, "missing field purchase_units.0.amount")
            return self._result(provider_transaction_id, Decimal(str(self._require(amount, "value"))),
                                self._require(amount, "currency_code"), PaymentStatus.CAPTURED,
                                raw=data, capture_id=capture_id)

    def refund(self, provider_transaction_id: str, amount: Decimal,
               currency: Optional[str] = None) -> ProviderResult:
        """`provider_transaction_id` es el ID de la captura."""
        currency = (currency or "BRL").upper()
        payload = {
            "amount": {"value": to_major_string(amount), "currency_code": currency},
            "note_to_payer": f"Refund for capture {provider_transaction_id}",
        }
        data = self._authorized_send(
            "POST", f"{self.api_url}/v2/payments/captures/{provider_transaction_id}/refund", json=payload)
        with self._parsing("refund"):
            refund_id = self._require(data, "id")
            return self._result(refund_id, amount, currency, PaymentStatus.REFUNDED, raw=data)


class StripeProvider(PaymentProvider):
    """Gateway de objetos charge vía SDK: autoriza con capture=False y captura después.

    La API key viaja en cada llamada. El SDK comparte a nivel de módulo el
    cliente HTTP (donde vive el timeout) y la URL base.
    """
    provider = Provider.STRIPE

    def __init__(self, api_key: str, api_base: Optional[str] = None, timeout: Optional[float] = None):
        self.api_key = api_key
        self.timeout = timeout if timeout is not None else get_settings().request_timeout
        stripe.default_http_client = stripe.RequestsClient(timeout=self.timeout)
        if api_base:
            stripe.api_base = api_base.rstrip('/')

    # _call: Ejecuta una operación del SDK clasificando sus errores.
    def _call(self, operation: str, func, *args, **params):
        try:
            result = func(*args, api_key=self.api_key, **params)
        except (stripe.APIConnectionError, stripe.APIError) as e:
            logger.warning("provider_call_ambiguous", provider=self.name, operation=operation,
                           error=str(e), status_code=e.http_status)
            raise AmbiguousOutcome(self.name, f"stripe {operation}: {e.user_message or e}",
                                   status_code=e.http_status)
        except stripe.StripeError as e:
            logger.error("provider_call_failed", provider=self.name, operation=operation,
                         error=str(e), code=getattr(e, "code", None), status_code=e.http_status)
            raise ProviderRejected(self.name, f"stripe {operation}: {e.user_message or e}",
                                   status_code=e.http_status)
        with self._parsing(operation):
            return _as_dict(result)

    def authorize(self, request: PaymentRequest) -> ProviderResult:
        params: Dict[str, Any] = {
            "amount": to_minor_units(request.amount),
            "currency": request.currency.lower(),
            "source": request.payment_method,
            "capture": False,
        }
        if request.description:
            params["description"] = request.description
        charge = self._call("authorize", stripe.Charge.create, **params)
        with self._parsing("authorize"):
            return self._result(self._require(charge, "id"), request.amount, request.currency,
                                PaymentStatus.AUTHORIZED, request.payment_method, charge)

    def capture(self, provider_transaction_id: str) -> ProviderResult:
        charge = self._call("capture", stripe.Charge.capture, provider_transaction_id)
        with self._parsing("capture"):
            source = charge.get("source") or {}
            return self._result(self._require(charge, "id"), from_minor_units(self._require(charge, "amount")),
                                self._require(charge, "currency"), PaymentStatus.CAPTURED,
                                source.get("id") if isinstance(source, Mapping) else None, charge)

    def refund(self, provider_transaction_id: str, amount: Decimal,
               currency: Optional[str] = None) -> ProviderResult:
        params: Dict[str, Any] = {"charge": provider_transaction_id}
        if amount is not None:
            params["amount"] = to_minor_units(amount)
        refund = self._call("refund", stripe.Refund.create, **params)
        with self._parsing("refund"):
            return self._result(self._require(refund, "id"), from_minor_units(self._require(refund, "amount")),
                                self._require(refund, "currency"), PaymentStatus.REFUNDED, raw=refund)


class ProviderRegistry:
    """Despacho fijo Provider → adaptador, resuelto al configurar la app."""
    def __init__(self, adapters: Dict[Provider, PaymentProvider]):
        for key, adapter in adapters.items():
            if not adapter.supports(key.value):
                raise ValueError(f"Adapter {adapter.name} registered under {key.value}")
        self._adapters = dict(adapters)

    def resolve(self, provider_name: Optional[str]) -> PaymentProvider:
        provider = Provider.parse(provider_name)
        if provider is None or provider not in self._adapters:
            raise UnsupportedProvider(provider_name)
        return self._adapters[provider]

    def names(self):
        return sorted(p.value for p in self._adapters)


# build_registry: Construye los tres adaptadores a partir de Settings.
def build_registry(settings=None, session: Optional[requests.Session] = None) -> ProviderRegistry:
    settings = settings or get_settings()
    session = session or requests.Session()
    common = {"session": session, "timeout": settings.request_timeout}
    return ProviderRegistry({
        Provider.CIELO: CieloProvider(settings.cielo_api_url, settings.cielo_merchant_id,
                                      settings.cielo_merchant_key, **common),
        Provider.PAYPAL: PayPalProvider(settings.paypal_api_url, settings.paypal_client_id,
                                        settings.paypal_client_secret, **common),
        Provider.STRIPE: StripeProvider(settings.stripe_api_key, settings.stripe_api_url,
                                        timeout=settings.request_timeout),
    })
