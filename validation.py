"""Motor de validación de negocio.

Reglas puras ejecutadas antes de invocar cualquier adaptador. Se evalúan en
orden fijo y la primera regla violada aborta con un motivo específico
(ValidationFailed). La única E/S es la comprobación de existencia del cliente,
que se inyecta como callable.
"""

from datetime import date
from decimal import Decimal, InvalidOperation
import calendar
import re
from typing import Callable, Dict, FrozenSet, Optional

import structlog

from errors import ValidationFailed
from models import Provider
from schemas import PaymentRequest

logger = structlog.get_logger(__name__)

SUPPORTED_CURRENCIES = ("BRL", "USD", "EUR", "GBP")
SUPPORTED_PROVIDERS = tuple(p.value for p in Provider)
SUPPORTED_BRANDS = ("VISA", "MASTERCARD", "AMEX", "ELO", "HIPERCARD")

MIN_AMOUNT = Decimal("0.01")
MAX_SCALE = 2
MAX_AMOUNT_BY_CURRENCY: Dict[str, Decimal] = {
    "BRL": Decimal("999999.99"),
    "USD": Decimal("999999.99"),
    "EUR": Decimal("999999.99"),
    "GBP": Decimal("999999.99"),
}

PROVIDER_CURRENCIES: Dict[Provider, FrozenSet[str]] = {
    Provider.STRIPE: frozenset(SUPPORTED_CURRENCIES),
    Provider.CIELO: frozenset({"BRL"}),
    Provider.PAYPAL: frozenset(SUPPORTED_CURRENCIES),
}

PAYMENT_METHOD_PREFIXES: Dict[Provider, tuple] = {
    Provider.STRIPE: ("tok_", "card_"),
    Provider.CIELO: ("card_",),
    Provider.PAYPAL: ("paypal_",),
}

MAX_CARD_YEARS_AHEAD = 20
_FOUR_DIGITS = re.compile(r"[0-9]{4}")


def decimal_scale(value: Decimal) -> int:
    """Número de casas decimales de un Decimal (0 para exponentes positivos)."""
    exponent = value.as_tuple().exponent
    if not isinstance(exponent, int):
        raise ValidationFailed("Amount must be a finite number")
    return max(0, -exponent)


def _as_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValidationFailed(f"Invalid amount: {value}")


# validate_amount: presencia y valor mínimo (una unidad menor).
def validate_amount(amount) -> Decimal:
    amount = _as_decimal(amount)
    if amount is None:
        raise ValidationFailed("Amount is required")
    if not amount.is_finite():
        raise ValidationFailed("Amount must be a finite number")
    if amount < MIN_AMOUNT:
        raise ValidationFailed(f"Amount must be at least {MIN_AMOUNT}")
    return amount


def validate_currency(currency: Optional[str]) -> str:
    if currency is None or not currency.strip():
        raise ValidationFailed("Currency is required")
    code = currency.strip().upper()
    if code not in SUPPORTED_CURRENCIES:
        raise ValidationFailed(
            f"Unsupported currency: {currency}. Supported currencies: {list(SUPPORTED_CURRENCIES)}"
        )
    return code


def validate_provider(provider: Optional[str]) -> Provider:
    if provider is None or not provider.strip():
        raise ValidationFailed("Provider is required")
    parsed = Provider.parse(provider)
    if parsed is None:
        raise ValidationFailed(
            f"Unsupported provider: {provider}. Supported providers: {list(SUPPORTED_PROVIDERS)}"
        )
    return parsed


def validate_provider_currency(provider: Provider, currency: str) -> None:
    if currency not in PROVIDER_CURRENCIES[provider]:
        raise ValidationFailed(f"Currency {currency} is not supported by provider {provider.value}")


def validate_amount_currency(amount: Decimal, currency: str) -> None:
    ceiling = MAX_AMOUNT_BY_CURRENCY[currency]
    if amount > ceiling:
        raise ValidationFailed(f"Amount cannot exceed {ceiling} for currency {currency}")
    if decimal_scale(amount) > MAX_SCALE:
        raise ValidationFailed(f"Amount cannot have more than {MAX_SCALE} decimal places")


def validate_payment_method(payment_method: Optional[str], provider: Provider) -> None:
    if payment_method is None or not payment_method.strip():
        raise ValidationFailed("Payment method is required")
    prefixes = PAYMENT_METHOD_PREFIXES[provider]
    if not payment_method.startswith(prefixes):
        quoted = " or ".join(f"'{p}'" for p in prefixes)
        raise ValidationFailed(f"{provider.value} token must start with {quoted}")


def validate_customer(customer_id: Optional[str], customer_exists: Callable[[str], bool]) -> None:
    if customer_id is not None and not customer_exists(customer_id):
        raise ValidationFailed(f"Customer not found: {customer_id}")


def validate_payment_request(request: PaymentRequest,
                             customer_exists: Callable[[str], bool]) -> PaymentRequest:
    """Ejecuta las reglas en orden y devuelve la petición normalizada.

    La petición devuelta lleva la moneda en mayúsculas y el proveedor en
    minúsculas; lanza ValidationFailed con la primera regla violada.
    """
    try:
        amount = validate_amount(request.amount)
        currency = validate_currency(request.currency)
        provider = validate_provider(request.provider)
        validate_provider_currency(provider, currency)
        validate_amount_currency(amount, currency)
        validate_payment_method(request.payment_method, provider)
        validate_customer(request.customer_id, customer_exists)
    except ValidationFailed as e:
        logger.info("validation_failed", reason=e.reason, provider=request.provider)
        raise
    return request.model_copy(update={
        "amount": amount,
        "currency": currency,
        "provider": provider.value,
    })


def validate_refund_amount(amount, captured_amount: Decimal) -> Decimal:
    """Valida el monto de un reembolso contra el monto de la transacción."""
    amount = validate_amount(amount)
    if decimal_scale(amount) > MAX_SCALE:
        raise ValidationFailed(f"Amount cannot have more than {MAX_SCALE} decimal places")
    if amount > captured_amount:
        raise ValidationFailed(f"Refund amount {amount} exceeds transaction amount {captured_amount}")
    return amount


# ------------------------- Tarjetas almacenadas -------------------------

def validate_card_expiration(month: Optional[int], year: Optional[int], today: Optional[date] = None) -> None:
    today = today or date.today()
    if month is None or month < 1 or month > 12:
        raise ValidationFailed("Expiration month must be between 1 and 12")
    if year is None:
        raise ValidationFailed("Expiration year is required")
    if year > today.year + MAX_CARD_YEARS_AHEAD:
        raise ValidationFailed("Expiration year must be valid")
    if year < 1:
        raise ValidationFailed("Card expired")
    # La tarjeta vale hasta el último día del mes de expiración.
    last_day = date(year, month, calendar.monthrange(year, month)[1])
    if last_day < today:
        raise ValidationFailed("Card expired")


def validate_card_brand(brand: Optional[str]) -> None:
    if brand is None or brand.upper() not in SUPPORTED_BRANDS:
        raise ValidationFailed(f"Unsupported brand: {brand}. Supported brands: {list(SUPPORTED_BRANDS)}")


def validate_last_four_digits(last_four: Optional[str]) -> None:
    if last_four is None or not _FOUR_DIGITS.fullmatch(last_four):
        raise ValidationFailed("Last four digits must be exactly 4 numbers")


def validate_credit_card(brand: Optional[str], last_four_digits: Optional[str],
                         expiration_month: Optional[int], expiration_year: Optional[int],
                         today: Optional[date] = None) -> None:
    validate_card_expiration(expiration_month, expiration_year, today)
    validate_card_brand(brand)
    validate_last_four_digits(last_four_digits)
