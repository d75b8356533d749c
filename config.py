"""Módulo de configuración del orquestador de pagos.

Proporciona lectura de variables de entorno: base de datos, JWT, timeouts de
red y credenciales de cada proveedor externo (Cielo, PayPal, Stripe).

Formato esperado en API_CLIENTS:
  "client_id|secret|scope scope,..." donde scope ∈ {payments:write,
  payments:read, transactions:read, admin}.
"""

import os
import json
from pathlib import Path
from functools import lru_cache
from typing import List, Dict
from dotenv import load_dotenv

# parse_api_clients: Convierte la cadena cruda de clientes en una lista
# de diccionarios con client_id, secret y scopes.
def parse_api_clients(raw: str) -> List[Dict[str, str]]:
    clients: List[Dict[str, str]] = []
    if not raw:
        return clients
    for item in raw.split(','):
        parts = item.split('|')
        if len(parts) >= 3:
            clients.append({
                'client_id': parts[0].strip(),
                'secret': parts[1].strip(),
                'scopes': parts[2].strip()
            })
    return clients

def load_api_clients_from_file(path: Path) -> List[Dict[str, str]]:
    if not path.exists():
        return []
    try:
        data = json.loads(path.read_text(encoding='utf-8'))
    except (OSError, ValueError):
        return []
    result: List[Dict[str, str]] = []
    for item in data:
        if all(k in item for k in ('client_id', 'secret', 'scopes')):
            result.append({
                'client_id': str(item['client_id']).strip(),
                'secret': str(item['secret']).strip(),
                'scopes': str(item['scopes']).strip(),
            })
    return result

# get_settings: Devuelve (cacheado) la instancia única de Settings.
@lru_cache
def get_settings():
    return Settings()

class Settings:
    """Agrupa todos los parámetros de configuración usados en la aplicación.

    Se inicializa leyendo variables de entorno. Incluye timeouts, credenciales
    de proveedores y clientes de la API.
    """
    def __init__(self):
        # Cargar .env local (aislado al directorio del módulo)
        base_dir = Path(__file__).resolve().parent
        load_dotenv(base_dir / '.env')

        default_db_path = base_dir / 'payments.db'
        self.database_url = os.getenv('TX_DB_URL', f"sqlite:///{default_db_path}")
        self.jwt_secret = os.getenv('JWT_SECRET', 'dev-secret-change')
        self.jwt_algorithm = os.getenv('JWT_ALG', 'HS256')
        self.jwt_exp_minutes = int(os.getenv('JWT_EXP_MIN', '60'))
        self.app_env = os.getenv('APP_ENV', 'development')
        self.log_level = os.getenv('LOG_LEVEL', 'INFO').upper()

        # Parámetros de red: toda llamada a proveedor usa este timeout.
        self.request_timeout = float(os.getenv('REQUEST_TIMEOUT', '10'))
        self.reconcile_age_minutes = int(os.getenv('RECONCILE_AGE_MIN', '15'))

        # Cielo
        self.cielo_api_url = os.getenv('CIELO_API_URL', 'https://apisandbox.cieloecommerce.cielo.com.br')
        self.cielo_merchant_id = os.getenv('CIELO_MERCHANT_ID', '')
        self.cielo_merchant_key = os.getenv('CIELO_MERCHANT_KEY', '')

        # PayPal
        self.paypal_api_url = os.getenv('PAYPAL_API_URL', 'https://api-m.sandbox.paypal.com')
        self.paypal_client_id = os.getenv('PAYPAL_CLIENT_ID', '')
        self.paypal_client_secret = os.getenv('PAYPAL_CLIENT_SECRET', '')

        # Stripe
        self.stripe_api_url = os.getenv('STRIPE_API_URL', 'https://api.stripe.com')
        self.stripe_api_key = os.getenv('STRIPE_API_KEY', '')

        clients = parse_api_clients(os.getenv('API_CLIENTS', ''))
        if not clients:
            # Intentar cargar archivo JSON local si no hay env var.
            clients = load_api_clients_from_file(base_dir / 'api_clients.json')
        self.api_clients = clients
