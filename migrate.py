#!/usr/bin/env python3
"""
Script para crear o inspeccionar el esquema de la base de datos.
"""
import sys
import logging

from sqlalchemy import inspect

from billing.database.database import sync_engine, Base
from billing.core.config import settings

# Registrar todos los modelos en Base.metadata
import billing.modules.company.models
import billing.modules.clients.models
import billing.modules.sequences.models
import billing.modules.documents.models
import billing.modules.signatures.models

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger("migrate")


def create_tables():
    """Crear tablas faltantes (no altera las existentes)."""
    Base.metadata.create_all(bind=sync_engine)
    logger.info("Tablas creadas exitosamente")


def drop_tables():
    """Eliminar todas las tablas del modelo."""
    if settings.ENVIRONMENT == "production":
        logger.error("drop no está permitido en producción")
        sys.exit(1)
    Base.metadata.drop_all(bind=sync_engine)
    logger.info("Tablas eliminadas")


def show_tables():
    """Mostrar tablas del modelo y si existen en la base."""
    existing = set(inspect(sync_engine).get_table_names())
    for table in Base.metadata.sorted_tables:
        mark = "ok" if table.name in existing else "faltante"
        print(f"  {table.name:<24} {mark}")


if __name__ == "__main__":
    actions = {"create": create_tables, "drop": drop_tables, "tables": show_tables}

    if len(sys.argv) < 2 or sys.argv[1] not in actions:
        print("Uso:")
        print("  python migrate.py create   # Crear tablas faltantes")
        print("  python migrate.py drop     # Eliminar tablas (no en producción)")
        print("  python migrate.py tables   # Ver estado de las tablas")
        sys.exit(1)

    actions[sys.argv[1]]()
