"""Módulo de acceso a la base de datos.

Define el motor, utilidades de sesión y la escritura compare-and-set sobre
columnas de estado que usan la cola de transacciones y el libro de órdenes.
"""

from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session

from config import get_settings

settings = get_settings()


# make_engine: Crea un motor; SQLite se comparte entre los hilos del relay y el poller.
def make_engine(url: str, in_memory: bool = False):
    if url.startswith('sqlite'):
        kwargs = {'connect_args': {'check_same_thread': False}}
        if in_memory:
            kwargs['poolclass'] = StaticPool
        return create_engine(url, echo=False, **kwargs)
    return create_engine(url, echo=False, pool_pre_ping=True)


engine = make_engine(settings.database_url)


# init_db: Crea todas las tablas definidas en los modelos si no existen.
def init_db(bind=None):
    SQLModel.metadata.create_all(bind or engine)


class DBSession:
    """Context manager para manejar sesiones.

    Al salir del contexto realiza rollback si hubo excepción y cierra la sesión.
    """
    def __init__(self, bind=None):
        self.bind = bind or engine

    def __enter__(self):
        self.session = Session(self.bind, expire_on_commit=False)
        return self.session

    def __exit__(self, exc_type, exc, tb):
        if exc:
            self.session.rollback()
        self.session.close()


# compare_and_set: UPDATE condicionado al estado leído previamente.
# Retorna True si la fila cambió; False si otro escritor se adelantó.
def compare_and_set(session: Session, model, key_column, key: Any,
                    expected_status: str, values: Dict[str, Any],
                    status_column: Optional[Any] = None) -> bool:
    status_column = status_column if status_column is not None else model.status
    statement = (
        update(model)
        .where(key_column == key)
        .where(status_column == expected_status)
        .values(**values)
    )
    result = session.execute(statement)
    return result.rowcount == 1
