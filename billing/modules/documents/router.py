from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List, Optional, Union
from uuid import UUID

from billing.database.database import get_db
from billing.modules.auth.dependencies import AuthContextDep
from billing.modules.documents.schemas import (
    DocumentCreate, DocumentUpdate, InvoiceOut, QuoteOut, PaymentCreate, PaymentOut,
    InvoiceVoidRequest, InvoiceDatesUpdate, QuoteStatusChange, DocumentEmailRequest, DocumentEmailResult
)
from billing.modules.documents.models import Quote
from billing.modules.documents.service import DocumentService
from billing.modules.sequences.models import DocumentType
from billing.modules.sequences.schemas import DocumentTypeParam

DocumentOut = Union[InvoiceOut, QuoteOut]

# Operaciones comunes a facturas y proformas
documents_router = APIRouter(prefix="/documents", tags=["Documents"])
# Operaciones propias de cada tipo
invoices_router = APIRouter(prefix="/invoices", tags=["Invoices"])
quotes_router = APIRouter(prefix="/quotes", tags=["Quotes"])


def to_document_out(document) -> DocumentOut:
    if isinstance(document, Quote):
        return QuoteOut.model_validate(document)
    return InvoiceOut.model_validate(document)


def send_email_result(recipient: str, queued: bool) -> DocumentEmailResult:
    message = "Email encolado para envío" if queued else "No se pudo encolar el email, intente nuevamente"
    return DocumentEmailResult(message=message, recipient=recipient, email_queued=queued)


@documents_router.post("/{document_type}", response_model=DocumentOut, status_code=status.HTTP_201_CREATED)
def create_document(
    document_type: DocumentTypeParam,
    data: DocumentCreate,
    auth_context: AuthContextDep,
    db: Session = Depends(get_db)
):
    """
    Crear factura o proforma.

    El número se asigna automáticamente en la serie indicada (o la serie por
    defecto de la empresa). Los montos se calculan a partir de las líneas.
    """
    service = DocumentService(db)
    document = service.create_document(
        DocumentType(document_type.value), data, auth_context.tenant_id, auth_context.user_id
    )
    return to_document_out(document)


@documents_router.get("/{document_type}/{document_id}", response_model=DocumentOut)
def get_document(
    document_type: DocumentTypeParam,
    document_id: UUID,
    auth_context: AuthContextDep,
    db: Session = Depends(get_db)
):
    """Obtener documento con líneas y, para facturas, pagos"""
    service = DocumentService(db)
    document = service.get_document(DocumentType(document_type.value), document_id, auth_context.tenant_id)
    return to_document_out(document)


@documents_router.put("/{document_type}/{document_id}", response_model=DocumentOut)
def update_document(
    document_type: DocumentTypeParam,
    document_id: UUID,
    data: DocumentUpdate,
    auth_context: AuthContextDep,
    db: Session = Depends(get_db)
):
    """
    Actualizar documento.

    Si se envían items reemplazan por completo a las líneas actuales y los
    montos se recalculan con la tasa del documento.
    """
    service = DocumentService(db)
    document = service.update_document(
        DocumentType(document_type.value), document_id, data, auth_context.tenant_id
    )
    return to_document_out(document)


@invoices_router.post("/{invoice_id}/void", response_model=InvoiceOut)
def void_invoice(
    invoice_id: UUID,
    auth_context: AuthContextDep,
    data: Optional[InvoiceVoidRequest] = None,
    db: Session = Depends(get_db)
):
    """Anular una factura emitida"""
    service = DocumentService(db)
    return service.void_invoice(invoice_id, auth_context.tenant_id, data.reason if data else None)


@invoices_router.post("/{invoice_id}/payments", response_model=PaymentOut, status_code=status.HTTP_201_CREATED)
def add_payment(
    invoice_id: UUID,
    payment_data: PaymentCreate,
    auth_context: AuthContextDep,
    db: Session = Depends(get_db)
):
    """
    Registrar un pago para una factura

    El monto no puede exceder el saldo pendiente. Cuando se completa el total
    la factura pasa a pagada.
    """
    service = DocumentService(db)
    return service.register_payment(invoice_id, payment_data, auth_context.tenant_id, auth_context.user_id)


@invoices_router.get("/{invoice_id}/payments", response_model=List[PaymentOut])
def get_invoice_payments(
    invoice_id: UUID,
    auth_context: AuthContextDep,
    db: Session = Depends(get_db)
):
    """Obtener todos los pagos de una factura"""
    service = DocumentService(db)
    return service.list_payments(invoice_id, auth_context.tenant_id)


@quotes_router.post("/{quote_id}/status", response_model=QuoteOut)
def change_quote_status(
    quote_id: UUID,
    data: QuoteStatusChange,
    auth_context: AuthContextDep,
    db: Session = Depends(get_db)
):
    """Aprobar, rechazar o reabrir una proforma"""
    service = DocumentService(db)
    return service.change_quote_status(quote_id, data.to_model(), auth_context.tenant_id)


@quotes_router.delete("/{quote_id}")
def delete_quote(
    quote_id: UUID,
    auth_context: AuthContextDep,
    db: Session = Depends(get_db)
):
    """Eliminar una proforma (no permitido si ya fue facturada)"""
    service = DocumentService(db)
    service.delete_quote(quote_id, auth_context.tenant_id)
    return {"message": "Proforma eliminada exitosamente"}


@quotes_router.post("/{quote_id}/convert", response_model=InvoiceOut, status_code=status.HTTP_201_CREATED)
def convert_quote_to_invoice(
    quote_id: UUID,
    auth_context: AuthContextDep,
    db: Session = Depends(get_db)
):
    """
    Convertir proforma en factura.

    La factura copia líneas y totales de la proforma y toma número de la
    serie de facturas de la empresa.
    """
    service = DocumentService(db)
    return service.convert_quote_to_invoice(quote_id, auth_context.tenant_id, auth_context.user_id)


@invoices_router.put("/{invoice_id}/dates", response_model=InvoiceOut)
def update_invoice_dates(
    invoice_id: UUID,
    data: InvoiceDatesUpdate,
    auth_context: AuthContextDep,
    db: Session = Depends(get_db)
):
    """
    Corregir fechas de emisión y vencimiento.

    Permitido también en facturas pagadas; las anuladas no se modifican.
    """
    service = DocumentService(db)
    return service.update_invoice_dates(invoice_id, data, auth_context.tenant_id)


@invoices_router.post("/{invoice_id}/send-email", response_model=DocumentEmailResult)
def send_invoice_email(
    invoice_id: UUID,
    auth_context: AuthContextDep,
    data: Optional[DocumentEmailRequest] = None,
    db: Session = Depends(get_db)
):
    """Enviar la factura por correo (por defecto al email del cliente)"""
    service = DocumentService(db)
    recipient, queued = service.send_document_email(
        DocumentType.INVOICE, invoice_id, data or DocumentEmailRequest(), auth_context.tenant_id
    )
    return send_email_result(recipient, queued)


@quotes_router.post("/{quote_id}/send-email", response_model=DocumentEmailResult)
def send_quote_email(
    quote_id: UUID,
    auth_context: AuthContextDep,
    data: Optional[DocumentEmailRequest] = None,
    db: Session = Depends(get_db)
):
    """Enviar la proforma por correo (por defecto al email del cliente)"""
    service = DocumentService(db)
    recipient, queued = service.send_document_email(
        DocumentType.QUOTE, quote_id, data or DocumentEmailRequest(), auth_context.tenant_id
    )
    return send_email_result(recipient, queued)
