"""Caché de bearer tokens con expiración y refresco single-flight.

Se inyecta en el adaptador que lo necesita (PayPal). Solo un hilo ejecuta el
fetch a la vez; los demás esperan el lock y reutilizan el token recién
obtenido.
"""

import threading
import time
from typing import Callable, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)

# fetcher devuelve (access_token, expires_in_seconds | None)
TokenFetcher = Callable[[], Tuple[str, Optional[float]]]


class TokenCache:
    """Guarda un token y lo renueva cuando expira o se invalida."""
    def __init__(self, fetcher: TokenFetcher, skew_seconds: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self._fetcher = fetcher
        self._skew = skew_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._expires_at: Optional[float] = None

    def _current(self) -> Optional[str]:
        """Token vigente o None. Lee token y expiración una sola vez."""
        token, expires_at = self._token, self._expires_at
        if token is None:
            return None
        if expires_at is not None and self._clock() >= expires_at:
            return None
        return token

    def get(self) -> str:
        token = self._current()
        if token is not None:
            return token
        with self._lock:
            # Otro hilo pudo renovarlo mientras esperábamos el lock.
            token = self._current()
            if token is not None:
                return token
            token, expires_in = self._fetcher()
            self._token = token
            if expires_in is None:
                self._expires_at = None
            else:
                self._expires_at = self._clock() + max(0.0, float(expires_in) - self._skew)
            logger.info("token_refreshed", expires_in=expires_in)
            return token

    def invalidate(self, token: Optional[str] = None) -> None:
        """Descarta el token (solo si coincide con `token`, cuando se indica)."""
        with self._lock:
            if token is None or token == self._token:
                self._token = None
                self._expires_at = None
