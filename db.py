import logging
import os
import time
from typing import Callable
from sqlmodel import SQLModel, Session, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

import models  # noqa: F401  registra le tabelle nel metadata

logger = logging.getLogger(__name__)

# Stringa di connessione dalla variabile d'ambiente; in locale si usa SQLite.
DATABASE_URL = os.getenv("DATABASE_URL") or "sqlite:///app.db"


def make_engine(url: str) -> Engine:
    """
    Crea l'engine per lo store delle partite.

    - SQLite (sviluppo locale): check_same_thread=False perché il loop del
      cronometro e le route FastAPI usano la stessa connessione da thread diversi.
    - Postgres (produzione): pool piccolo con pre-ping e riciclo ogni 30 minuti,
      adatto a un database serverless che può "addormentarsi".
    """
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            pool_pre_ping=True,
        )
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=5,
        pool_recycle=1800,
    )


engine = make_engine(DATABASE_URL)


def get_session():
    with Session(engine) as session:
        yield session


def with_retry(fn: Callable, retries: int = 5, delay: float = 2.0):
    """
    Esegue fn con più tentativi in caso di errori operativi di connessione,
    con attesa crescente tra un tentativo e l'altro.
    """
    for i in range(retries):
        try:
            return fn()
        except OperationalError:
            if i == retries - 1:
                raise
            logger.warning("Database non raggiungibile, tentativo %d/%d", i + 1, retries)
            time.sleep(delay * (i + 1))


def init_db(target: Engine = None, lazy: bool = True):
    """
    Crea le tabelle (definite in models.py) se non esistono già.

    - lazy=True (default): non fa nulla; lo schema si crea dall'endpoint
      /admin/init-db, così l'avvio non fallisce se il database non è pronto.
    - lazy=False: crea le tabelle subito, con with_retry.
    """
    target = target if target is not None else engine

    def _create():
        SQLModel.metadata.create_all(target)

    if lazy:
        return
    with_retry(_create)
