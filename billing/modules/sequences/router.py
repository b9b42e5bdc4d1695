from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Optional

from billing.database.database import get_db
from billing.modules.auth.dependencies import AuthContextDep
from billing.modules.company.service import CompanyService
from billing.modules.sequences.models import DocumentType
from billing.modules.sequences.schemas import DocumentTypeParam, NextDocumentNumber
from billing.modules.sequences.service import SequenceAllocator, format_document_number

sequences_router = APIRouter(prefix="/sequences", tags=["Sequences"])


@sequences_router.get("/next", response_model=NextDocumentNumber)
def get_next_document_number(
    auth_context: AuthContextDep,
    document_type: DocumentTypeParam = Query(..., description="invoice o quote"),
    series: Optional[str] = Query(None, description="Serie; por defecto la de la empresa"),
    db: Session = Depends(get_db)
):
    """
    Obtener el siguiente número de una serie.

    Útil para mostrar el número antes de crear el documento; no lo reserva,
    el número definitivo se asigna al crear.
    """
    company = CompanyService(db).get_company(auth_context.tenant_id)
    model_type = DocumentType(document_type.value)
    if not series:
        series = company.invoice_series if model_type == DocumentType.INVOICE else company.quote_series
    next_number = SequenceAllocator.for_session(db).peek_next_number(company.id, model_type, series)
    return NextDocumentNumber(
        document_type=document_type,
        series=series,
        next_number=next_number,
        formatted=format_document_number(series, next_number)
    )
