"""Módulo de acceso a la base de datos.

Define el motor y utilidades de sesión usadas por los stores de transacciones,
auditoría y clientes.
"""

from sqlmodel import SQLModel, create_engine, Session
from config import get_settings

settings = get_settings()

# SQLite necesita compartir conexiones entre hilos del threadpool de FastAPI.
_connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}
engine = create_engine(settings.database_url, echo=False, connect_args=_connect_args)

# init_db: Crea todas las tablas definidas en los modelos si no existen.
def init_db(bind=None):
    SQLModel.metadata.create_all(bind or engine)

class DBSession:
    """Context manager para manejar sesiones.

    Al salir del contexto realiza rollback si hubo excepción y cierra la sesión.
    Acepta un motor alternativo (p.ej. SQLite en memoria para tests).
    """
    def __init__(self, bind=None):
        self.bind = bind or engine

    def __enter__(self):
        self.session = Session(self.bind)
        return self.session

    def __exit__(self, exc_type, exc, tb):
        if exc:
            self.session.rollback()
        self.session.close()
