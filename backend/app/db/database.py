"""
Configuración de base de datos PostgreSQL.
La escritura de un cambio de estado y su historial ocurre en una sola transacción.
"""
from sqlalchemy import create_engine
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker
from ..core.config import settings


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}, "echo": settings.DEBUG}
    return {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
        "echo": settings.DEBUG,
    }


# Motor con pool de conexiones
engine = create_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

# Sesión de base de datos
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine
)

# Base para modelos declarativos
Base = declarative_base()


def get_db():
    """
    Dependency para obtener sesión de base de datos.
    Garantiza cierre correcto de conexión.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Inicializa las tablas de la base de datos."""
    from ..models import models  # noqa: F401  registra las tablas en Base.metadata
    Base.metadata.create_all(bind=engine)
