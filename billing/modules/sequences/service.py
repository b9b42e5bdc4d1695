"""
Asignación de números correlativos por serie.

El contador se incrementa en una transacción propia, corta y separada de la
que persiste el documento: el número queda confirmado antes de devolverse, de
modo que dos llamadas concurrentes nunca obtienen el mismo valor. Si la
escritura posterior del documento falla queda un hueco en la serie, nunca un
duplicado.
"""
from typing import Callable, Optional
from uuid import UUID
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from billing.common.exceptions import SequenceConflictError, ValidationError
from billing.modules.sequences.models import DocumentType, SeriesCounter

logger = logging.getLogger(__name__)

# Intentos internos ante la creación concurrente del mismo contador
_CREATE_RACE_ATTEMPTS = 3


def format_document_number(series: str, number: int) -> str:
    """F001 + 42 -> 'F001-00000042'"""
    return f"{series}-{number:08d}"


class SequenceAllocator:
    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    @classmethod
    def for_session(cls, db: Session) -> "SequenceAllocator":
        """Allocator sobre el mismo engine que la sesión del request, con conexión propia"""
        return cls(sessionmaker(bind=db.get_bind(), autoflush=False, expire_on_commit=False))

    def next_number(self, company_id: UUID, document_type: DocumentType, series: str) -> int:
        """
        Reservar el siguiente número de la serie.

        Raises:
            SequenceConflictError: la actualización del contador no pudo
                confirmarse (bloqueo, timeout). No se entrega ningún número y
                el llamador debe reintentar la asignación completa.
            ValidationError: la serie existe pero está desactivada.
        """
        for attempt in range(_CREATE_RACE_ATTEMPTS):
            with self.session_factory() as session:
                try:
                    number = self._increment(session, company_id, document_type, series)
                    if number is not None:
                        session.commit()
                        logger.info(f"Allocated {document_type.value} {series}-{number} for company {company_id}")
                        return number
                    session.rollback()

                    existing = self._find_counter(session, company_id, document_type, series)
                    if existing is not None:
                        if not existing.is_active:
                            raise ValidationError.for_field(
                                "series", f"La serie {series} está desactivada para {document_type.value}"
                            )
                        # Creado por otra transacción entre el UPDATE y la consulta
                        continue

                    session.add(SeriesCounter(
                        tenant_id=company_id,
                        document_type=document_type,
                        series=series,
                        last_number=1,
                        is_active=True
                    ))
                    session.commit()
                    logger.info(f"Created counter {document_type.value}/{series} for company {company_id}")
                    return 1

                except IntegrityError:
                    session.rollback()
                    logger.info(
                        f"Counter {document_type.value}/{series} created concurrently, "
                        f"retrying increment (attempt {attempt + 1})"
                    )
                except DBAPIError as e:
                    session.rollback()
                    logger.warning(f"Sequence allocation failed for {document_type.value}/{series}: {e}")
                    raise SequenceConflictError(
                        "No se pudo reservar el número de documento, reintente la operación",
                        series=series
                    ) from e

        raise SequenceConflictError(
            "No se pudo reservar el número de documento, reintente la operación",
            series=series
        )

    def peek_next_number(self, company_id: UUID, document_type: DocumentType, series: str) -> int:
        """Vista previa del siguiente número; no reserva nada"""
        with self.session_factory() as session:
            counter = self._find_counter(session, company_id, document_type, series)
            return (counter.last_number if counter else 0) + 1

    def _increment(self, session: Session, company_id: UUID, document_type: DocumentType,
                   series: str) -> Optional[int]:
        # UPDATE primero: toma el bloqueo de fila antes de leer el valor
        result = session.execute(
            update(SeriesCounter)
            .where(
                SeriesCounter.tenant_id == company_id,
                SeriesCounter.document_type == document_type,
                SeriesCounter.series == series,
                SeriesCounter.is_active == True
            )
            .values(last_number=SeriesCounter.last_number + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None
        return session.execute(
            select(SeriesCounter.last_number).where(
                SeriesCounter.tenant_id == company_id,
                SeriesCounter.document_type == document_type,
                SeriesCounter.series == series
            )
        ).scalar_one()

    def _find_counter(self, session: Session, company_id: UUID, document_type: DocumentType,
                      series: str) -> Optional[SeriesCounter]:
        return session.query(SeriesCounter).filter(
            SeriesCounter.tenant_id == company_id,
            SeriesCounter.document_type == document_type,
            SeriesCounter.series == series
        ).first()
