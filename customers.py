"""Directorio de clientes y tarjetas almacenadas.

CRUD mínimo que consume el orquestador: la comprobación de existencia de
cliente y la gestión de tarjetas con la regla de tarjeta por defecto única.
"""

from typing import List, Optional

import structlog
from sqlmodel import select

from database import DBSession
from errors import NotFound, ValidationFailed
from models import CreditCard, Customer, utcnow
from validation import validate_credit_card

logger = structlog.get_logger(__name__)


class CustomerDirectory:
    def __init__(self, bind=None):
        self.bind = bind

    # exists_by_external_reference: Usado por la regla 7 de validación.
    def exists_by_external_reference(self, external_id: str) -> bool:
        with DBSession(self.bind) as s:
            statement = select(Customer.id).where(Customer.external_id == external_id)
            return s.exec(statement).first() is not None

    def create_customer(self, external_id: str, name: str, email: str) -> Customer:
        with DBSession(self.bind) as s:
            existing = s.exec(select(Customer).where(
                (Customer.external_id == external_id) | (Customer.email == email))).first()
            if existing:
                raise ValidationFailed("Customer already exists")
            customer = Customer(external_id=external_id, name=name, email=email)
            s.add(customer)
            s.commit()
            s.refresh(customer)
            logger.info("customer_created", customer_id=customer.id, external_id=external_id)
            return customer

    def get_customer(self, external_id: str) -> Optional[Customer]:
        with DBSession(self.bind) as s:
            return s.exec(select(Customer).where(Customer.external_id == external_id)).first()

    def add_card(self, external_id: str, provider_card_id: str, brand: str, last_four_digits: str,
                 expiration_month: int, expiration_year: int, is_default: bool = False) -> CreditCard:
        """Registra una tarjeta validada. Si es default, desmarca las demás."""
        validate_credit_card(brand, last_four_digits, expiration_month, expiration_year)
        with DBSession(self.bind) as s:
            customer = s.exec(select(Customer).where(Customer.external_id == external_id)).first()
            if customer is None:
                raise ValidationFailed(f"Customer not found: {external_id}")
            duplicate = s.exec(select(CreditCard.id).where(CreditCard.provider_card_id == provider_card_id)).first()
            if duplicate is not None:
                raise ValidationFailed("Card already registered")
            if is_default:
                self._unset_default_cards(s, customer.id)
            card = CreditCard(
                customer_id=customer.id,
                provider_card_id=provider_card_id,
                brand=brand.upper(),
                last_four_digits=last_four_digits,
                expiration_month=expiration_month,
                expiration_year=expiration_year,
                is_default=is_default,
            )
            s.add(card)
            s.commit()
            s.refresh(card)
            logger.info("card_created", card_id=card.id, customer_id=customer.id, is_default=is_default)
            return card

    def set_default_card(self, card_id: str) -> CreditCard:
        with DBSession(self.bind) as s:
            card = s.get(CreditCard, card_id)
            if card is None:
                raise NotFound(card_id, kind="Card")
            self._unset_default_cards(s, card.customer_id)
            card.is_default = True
            card.updated_at = utcnow()
            s.add(card)
            s.commit()
            s.refresh(card)
            logger.info("card_set_default", card_id=card.id, customer_id=card.customer_id)
            return card

    def list_cards(self, external_id: str) -> List[CreditCard]:
        with DBSession(self.bind) as s:
            statement = (
                select(CreditCard)
                .join(Customer, Customer.id == CreditCard.customer_id)
                .where(Customer.external_id == external_id)
            )
            return list(s.exec(statement).all())

    # _unset_default_cards: Mantiene a lo sumo una tarjeta por defecto por cliente.
    @staticmethod
    def _unset_default_cards(s, customer_id: str):
        statement = select(CreditCard).where(CreditCard.customer_id == customer_id,
                                             CreditCard.is_default == True)  # noqa: E712
        for card in s.exec(statement).all():
            card.is_default = False
            card.updated_at = utcnow()
            s.add(card)
