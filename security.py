"""Funciones de seguridad: hashing de secretos de clientes y manejo de JWT.

Se utiliza bcrypt vía passlib para almacenar secretos y PyJWT para tokens con
scopes (payments:write, payments:read, transactions:read, admin).
"""

from datetime import datetime, timedelta, timezone
from typing import Iterable, List
from passlib.context import CryptContext
import jwt
from config import get_settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
settings = get_settings()

SCOPES = ("payments:write", "payments:read", "transactions:read", "admin")

# hash_secret: Genera hash bcrypt de un secreto en texto plano.
def hash_secret(secret: str) -> str:
    # Truncar a 72 bytes para compatibilidad bcrypt
    secret_bytes = secret.encode('utf-8')[:72]
    return pwd_context.hash(secret_bytes.decode('utf-8', errors='ignore'))

# verify_secret: Verifica si el secreto suministrado coincide con el hash.
def verify_secret(secret: str, secret_hash: str) -> bool:
    secret_bytes = secret.encode('utf-8')[:72]
    return pwd_context.verify(secret_bytes.decode('utf-8', errors='ignore'), secret_hash)

def parse_scopes(raw: str) -> List[str]:
    return [s for s in raw.replace(',', ' ').split() if s in SCOPES]

# create_token: Crea un JWT con sujeto y scopes, expirando en minutos configurados.
def create_token(sub: str, scopes: Iterable[str]):
    exp = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_exp_minutes)
    payload = {"sub": sub, "scope": " ".join(scopes), "exp": exp}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)

# decode_token: Decodifica el JWT y retorna payload o None si inválido/expirado.
def decode_token(token: str):
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError:
        return None
