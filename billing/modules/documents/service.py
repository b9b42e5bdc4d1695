"""
Ciclo de vida de facturas y proformas.

Orquesta el cálculo de montos, la asignación de número correlativo y la
persistencia atómica de documento + líneas. Los cambios de estado pasan por
las tablas de ``transitions``.
"""
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.exc import IntegrityError
from decimal import Decimal
from typing import List, Optional, Tuple, Type, Union
from uuid import UUID
from datetime import date
import logging

from billing.core.config import settings
from billing.common.exceptions import (
    ConflictError, NotFoundError, SequenceConflictError, StateError, ValidationError
)
from billing.common.utils import today
from billing.modules.clients.service import ClientValidator
from billing.modules.company.service import CompanyService
from billing.modules.documents.models import (
    Invoice, InvoiceLineItem, Quote, QuoteLineItem, Payment,
    InvoiceStatus, QuoteStatus
)
from billing.modules.documents.schemas import (
    DocumentCreate, DocumentEmailRequest, DocumentUpdate, InvoiceDatesUpdate, PaymentCreate
)
from billing.modules.email.tasks import queue_email, send_invoice_email_task, send_quote_email_task
from billing.modules.documents.transitions import (
    INVOICE_TRANSITIONS, QUOTE_TRANSITIONS, INVOICE_EDITABLE, QUOTE_EDITABLE, ensure_transition
)
from billing.modules.sequences.models import DocumentType
from billing.modules.sequences.service import SequenceAllocator
from billing.modules.signatures.models import SignatureRequestStatus
from billing.modules.taxes.calculator import compute_document_totals
from billing.modules.taxes.schemas import DocumentTotals

logger = logging.getLogger(__name__)

Document = Union[Invoice, Quote]

_MODELS = {
    DocumentType.INVOICE: (Invoice, InvoiceLineItem),
    DocumentType.QUOTE: (Quote, QuoteLineItem),
}
_LABELS = {
    DocumentType.INVOICE: "Factura",
    DocumentType.QUOTE: "Proforma",
}


class DocumentService:
    def __init__(self, db: Session, allocator: Optional[SequenceAllocator] = None):
        self.db = db
        self.allocator = allocator or SequenceAllocator.for_session(db)

    # --- Lectura ---

    def get_document(self, document_type: DocumentType, document_id: UUID, company_id: UUID,
                     lock: bool = False) -> Document:
        """Obtener documento por ID con sus líneas (y pagos si es factura)"""
        model, _ = _MODELS[document_type]
        options = [selectinload(model.line_items)]
        if model is Invoice:
            options.append(selectinload(Invoice.payments))
        query = self.db.query(model).options(*options).filter(
            model.id == document_id,
            model.tenant_id == company_id
        )
        if lock:
            query = query.with_for_update()
        document = query.first()
        if not document:
            raise NotFoundError(f"{_LABELS[document_type]} no encontrada")
        return document

    def get_invoice(self, invoice_id: UUID, company_id: UUID, lock: bool = False) -> Invoice:
        return self.get_document(DocumentType.INVOICE, invoice_id, company_id, lock=lock)

    def get_quote(self, quote_id: UUID, company_id: UUID, lock: bool = False) -> Quote:
        return self.get_document(DocumentType.QUOTE, quote_id, company_id, lock=lock)

    def list_payments(self, invoice_id: UUID, company_id: UUID) -> List[Payment]:
        """Obtener pagos de una factura"""
        invoice = self.get_invoice(invoice_id, company_id)
        return list(invoice.payments)

    def send_document_email(self, document_type: DocumentType, document_id: UUID,
                            data: DocumentEmailRequest, company_id: UUID) -> Tuple[str, bool]:
        """
        Encolar el envío del documento por correo.

        El destinatario por defecto es el correo del cliente. Si el broker no
        responde el documento no cambia y se informa que no se encoló.

        Returns:
            (destinatario, email_encolado)
        """
        document = self.get_document(document_type, document_id, company_id)
        client = document.client
        recipient = data.to or client.email
        if not recipient:
            raise ValidationError.for_field("to", "El email del destinatario es requerido")

        company = CompanyService(self.db).get_company(company_id)
        context = {
            "to": recipient,
            "subject": data.subject,
            "message": data.message,
            "locale": data.locale,
            "document_number": document.document_number,
            "company_name": company.name,
            "company_tax_id": company.tax_id,
            "company_email": company.email,
            "client_name": client.name,
            "client_document_type": client.document_type,
            "client_document_number": client.document_number,
            "issue_date": document.issue_date.isoformat(),
            "total": str(document.total),
            "currency": document.currency,
        }
        if document_type == DocumentType.INVOICE:
            context["due_date"] = document.due_date.isoformat() if document.due_date else None
            task = send_invoice_email_task
        else:
            context["valid_until"] = document.valid_until.isoformat() if document.valid_until else None
            task = send_quote_email_task

        queued = queue_email(task, context, f"{document_type.value} {document.document_number}")
        return recipient, queued

    # --- Creación y edición ---

    def create_document(self, document_type: DocumentType, data: DocumentCreate,
                        company_id: UUID, user_id: Optional[str] = None) -> Document:
        """
        Crear factura o proforma.

        Valida, calcula montos, reserva el número y persiste documento y
        líneas en una sola transacción. El número se reserva en la
        transacción propia del allocator, nunca junto con la escritura del
        documento.
        """
        company = CompanyService(self.db).get_company(company_id)
        ClientValidator(self.db).require_client(data.client_id, company.id)

        tax_rate = data.tax_rate if data.tax_rate is not None else company.tax_rate
        series = data.series or self._default_series(company, document_type)
        totals = compute_document_totals(data.items, tax_rate)

        number = self._allocate_number(company.id, document_type, series)

        model, line_model = _MODELS[document_type]
        fields = dict(
            tenant_id=company.id,
            client_id=data.client_id,
            series=series,
            number=number,
            issue_date=data.issue_date,
            currency=data.currency or company.currency,
            exchange_rate=data.exchange_rate,
            notes=data.notes,
            created_by=user_id,
        )
        if document_type == DocumentType.INVOICE:
            fields.update(status=InvoiceStatus.ISSUED, due_date=data.due_date)
        else:
            fields.update(status=QuoteStatus.PENDING, valid_until=data.valid_until, terms=data.terms)

        document = model(**fields)
        self._apply_totals(document, totals)
        document.line_items = self._build_lines(line_model, totals)
        self.db.add(document)

        self._commit(f"{document_type.value} {series}-{number}")
        self.db.refresh(document)
        logger.info(
            f"Created {document_type.value} {document.document_number} for company {company.id} "
            f"(total={document.total})"
        )
        return document

    def update_document(self, document_type: DocumentType, document_id: UUID, data: DocumentUpdate,
                        company_id: UUID) -> Document:
        """
        Actualizar documento reemplazando las líneas completas.

        Facturas: solo en estado emitida. Proformas: mientras no estén
        facturadas ni vencidas.
        """
        document = self.get_document(document_type, document_id, company_id, lock=True)
        self._ensure_editable(document_type, document)

        changes = data.model_dump(exclude_unset=True, exclude={"items"})

        if changes.get("client_id"):
            ClientValidator(self.db).require_client(changes["client_id"], company_id)
            document.client_id = changes["client_id"]
        if changes.get("issue_date"):
            document.issue_date = changes["issue_date"]
        if "notes" in changes:
            document.notes = changes["notes"]
        if "exchange_rate" in changes:
            document.exchange_rate = changes["exchange_rate"]
        if document_type == DocumentType.INVOICE:
            if "due_date" in changes:
                document.due_date = changes["due_date"]
            if document.due_date and document.due_date < document.issue_date:
                raise ValidationError.for_field(
                    "due_date", "La fecha de vencimiento no puede ser anterior a la fecha de emisión"
                )
        else:
            if "valid_until" in changes:
                document.valid_until = changes["valid_until"]
            if "terms" in changes:
                document.terms = changes["terms"]
            if document.valid_until and document.valid_until < document.issue_date:
                raise ValidationError.for_field(
                    "valid_until", "La fecha de validez no puede ser anterior a la fecha de emisión"
                )

        new_rate = changes.get("tax_rate")
        if data.items is not None or new_rate is not None:
            rate = new_rate if new_rate is not None else document.tax_rate
            items = data.items if data.items is not None else list(document.line_items)
            totals = compute_document_totals(items, rate)

            if document_type == DocumentType.INVOICE and totals.total < document.paid_amount:
                raise ValidationError.for_field(
                    "items",
                    f"El nuevo total ({totals.total}) es menor a lo ya pagado ({document.paid_amount})"
                )

            _, line_model = _MODELS[document_type]
            document.line_items = self._build_lines(line_model, totals)
            self._apply_totals(document, totals)

        self._commit(f"{document_type.value} {document.document_number}")
        self.db.refresh(document)
        logger.info(f"Updated {document_type.value} {document.document_number} (total={document.total})")
        return document

    # --- Facturas ---

    def void_invoice(self, invoice_id: UUID, company_id: UUID, reason: Optional[str] = None) -> Invoice:
        """Anular factura emitida"""
        invoice = self.get_invoice(invoice_id, company_id, lock=True)

        if invoice.status == InvoiceStatus.VOID:
            raise StateError("La factura ya está anulada", current_state=invoice.status)
        ensure_transition(INVOICE_TRANSITIONS, invoice.status, InvoiceStatus.VOID, "la factura")

        old_status = invoice.status
        invoice.status = InvoiceStatus.VOID
        if reason:
            invoice.notes = f"{invoice.notes}\n\n[ANULADA] {reason}" if invoice.notes else f"[ANULADA] {reason}"

        self._commit(f"void invoice {invoice.document_number}")
        self.db.refresh(invoice)
        logger.info(f"Invoice {invoice.document_number} status changed from {old_status} to {invoice.status}")
        return invoice

    def update_invoice_dates(self, invoice_id: UUID, data: InvoiceDatesUpdate, company_id: UUID) -> Invoice:
        """Corregir fechas de emisión y vencimiento sin tocar líneas ni montos"""
        invoice = self.get_invoice(invoice_id, company_id, lock=True)
        if invoice.status == InvoiceStatus.VOID:
            raise StateError("No se pueden editar facturas anuladas", current_state=invoice.status)

        invoice.issue_date = data.issue_date
        invoice.due_date = data.due_date

        self._commit(f"dates of invoice {invoice.document_number}")
        self.db.refresh(invoice)
        logger.info(f"Invoice {invoice.document_number} dates updated ({invoice.issue_date} / {invoice.due_date})")
        return invoice

    def register_payment(self, invoice_id: UUID, data: PaymentCreate, company_id: UUID,
                         user_id: Optional[str] = None) -> Payment:
        """
        Registrar un pago.

        La factura se bloquea durante la operación para que dos pagos
        concurrentes no superen el total. Cuando lo pagado alcanza el total
        la factura pasa a pagada.
        """
        invoice = self.get_invoice(invoice_id, company_id, lock=True)

        if invoice.status == InvoiceStatus.VOID:
            raise StateError("No se pueden registrar pagos en facturas anuladas", current_state=invoice.status)

        paid_amount = invoice.paid_amount
        balance = invoice.total - paid_amount
        if data.amount > balance:
            raise ValidationError.for_field(
                "amount", f"El monto {data.amount} excede el saldo pendiente ({balance:.2f})"
            )

        payment = Payment(
            tenant_id=invoice.tenant_id,
            amount=data.amount,
            method=data.method,
            reference=data.reference,
            payment_date=data.payment_date,
            notes=data.notes,
            created_by=user_id
        )
        invoice.payments.append(payment)

        if paid_amount + data.amount >= invoice.total:
            ensure_transition(INVOICE_TRANSITIONS, invoice.status, InvoiceStatus.PAID, "la factura")
            invoice.status = InvoiceStatus.PAID

        self._commit(f"payment on invoice {invoice.document_number}")
        self.db.refresh(payment)
        logger.info(
            f"Payment {payment.amount} registered on invoice {invoice.document_number} "
            f"(status={invoice.status.value})"
        )
        return payment

    # --- Proformas ---

    def change_quote_status(self, quote_id: UUID, target: QuoteStatus, company_id: UUID) -> Quote:
        """Aprobar, rechazar o reabrir una proforma"""
        quote = self.get_quote(quote_id, company_id, lock=True)
        current = self._sync_quote_expiry(quote)
        ensure_transition(QUOTE_TRANSITIONS, current, target, "la proforma")

        quote.status = target
        self._commit(f"quote {quote.document_number} -> {target.value}")
        self.db.refresh(quote)
        logger.info(f"Quote {quote.document_number} status changed from {current.value} to {target.value}")
        return quote

    def delete_quote(self, quote_id: UUID, company_id: UUID) -> None:
        """
        Eliminar proforma no facturada.

        Las solicitudes de firma sin firmar se eliminan con ella; una proforma
        con firma registrada no se puede eliminar.
        """
        quote = self.get_quote(quote_id, company_id, lock=True)
        if quote.status == QuoteStatus.INVOICED:
            raise StateError("No se pueden eliminar proformas ya facturadas", current_state=quote.status)
        if any(request.status == SignatureRequestStatus.SIGNED for request in quote.signature_requests):
            raise StateError(
                "No se pueden eliminar proformas firmadas por el cliente",
                current_state=SignatureRequestStatus.SIGNED
            )

        number = quote.document_number
        self.db.delete(quote)
        self._commit(f"delete quote {number}")
        logger.info(f"Quote {number} deleted")

    def convert_quote_to_invoice(self, quote_id: UUID, company_id: UUID,
                                 user_id: Optional[str] = None) -> Invoice:
        """
        Convertir proforma en factura.

        Copia totales y líneas tal cual (sin recalcular), asigna número en la
        serie de facturas de la empresa y marca la proforma como facturada.
        Factura nueva y cambio de estado se confirman juntos.
        """
        quote = self.get_quote(quote_id, company_id, lock=True)
        current = quote.effective_status
        if current == QuoteStatus.INVOICED:
            raise StateError("Esta proforma ya fue facturada", current_state=current)
        ensure_transition(QUOTE_TRANSITIONS, current, QuoteStatus.INVOICED, "la proforma")

        company = CompanyService(self.db).get_company(company_id)
        series = company.invoice_series
        number = self._allocate_number(company.id, DocumentType.INVOICE, series)

        invoice = Invoice(
            tenant_id=company.id,
            client_id=quote.client_id,
            series=series,
            number=number,
            issue_date=today(),
            currency=quote.currency,
            exchange_rate=quote.exchange_rate,
            notes=quote.notes,
            created_by=user_id,
            status=InvoiceStatus.ISSUED,
            tax_rate=quote.tax_rate,
            subtotal=quote.subtotal,
            discount=quote.discount,
            tax=quote.tax,
            total=quote.total,
            source_quote_id=quote.id,
        )
        invoice.line_items = [
            InvoiceLineItem(
                position=line.position,
                product_id=line.product_id,
                description=line.description,
                unit=line.unit,
                quantity=line.quantity,
                unit_price=line.unit_price,
                discount=line.discount,
                subtotal=line.subtotal,
                tax=line.tax,
                total=line.total,
            )
            for line in quote.line_items
        ]
        quote.status = QuoteStatus.INVOICED
        self.db.add(invoice)

        self._commit(f"convert quote {quote.document_number}")
        self.db.refresh(invoice)
        logger.info(f"Quote {quote.document_number} converted to invoice {invoice.document_number}")
        return invoice

    def expire_overdue_quotes(self, as_of: Optional[date] = None) -> int:
        """Persistir el vencimiento de proformas pendientes (barrido periódico)"""
        as_of = as_of or today()
        count = self.db.query(Quote).filter(
            Quote.status == QuoteStatus.PENDING,
            Quote.valid_until.isnot(None),
            Quote.valid_until < as_of
        ).update({Quote.status: QuoteStatus.EXPIRED}, synchronize_session=False)
        self.db.commit()
        if count:
            logger.info(f"Expired {count} quotes past validity as of {as_of}")
        return count

    # --- Helpers ---

    def _allocate_number(self, company_id: UUID, document_type: DocumentType, series: str) -> int:
        attempts = max(1, settings.SEQUENCE_ALLOCATION_RETRIES)
        for attempt in range(1, attempts + 1):
            try:
                return self.allocator.next_number(company_id, document_type, series)
            except SequenceConflictError:
                if attempt == attempts:
                    raise
                logger.warning(
                    f"Sequence conflict on {document_type.value}/{series}, retrying ({attempt}/{attempts})"
                )

    def _commit(self, what: str) -> None:
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            logger.warning(f"Integrity error on {what}: {e.orig}")
            raise ConflictError(
                "Ya existe un documento con este número de serie y correlativo"
            ) from e
        except Exception:
            self.db.rollback()
            logger.error(f"Error persisting {what}", exc_info=True)
            raise

    def _ensure_editable(self, document_type: DocumentType, document: Document) -> None:
        if document_type == DocumentType.INVOICE:
            if document.status not in INVOICE_EDITABLE:
                raise StateError(
                    'Solo se pueden editar facturas en estado "emitida"', current_state=document.status
                )
            return
        current = self._sync_quote_expiry(document)
        if current not in QUOTE_EDITABLE:
            raise StateError(
                f"No se pueden editar proformas en estado '{current.value}'", current_state=current
            )

    def _sync_quote_expiry(self, quote: Quote) -> QuoteStatus:
        """Persistir el vencimiento detectado en lectura y devolver el estado efectivo"""
        current = quote.effective_status
        if current != quote.status:
            ensure_transition(QUOTE_TRANSITIONS, quote.status, current, "la proforma")
            quote.status = current
            self._commit(f"expire quote {quote.document_number}")
            logger.info(f"Quote {quote.document_number} expired (valid until {quote.valid_until})")
        return current

    @staticmethod
    def _default_series(company, document_type: DocumentType) -> str:
        if document_type == DocumentType.INVOICE:
            return company.invoice_series
        return company.quote_series

    @staticmethod
    def _apply_totals(document: Document, totals: DocumentTotals) -> None:
        document.tax_rate = totals.tax_rate
        document.subtotal = totals.subtotal
        document.discount = totals.discount
        document.tax = totals.tax
        document.total = totals.total

    @staticmethod
    def _build_lines(line_model: Type, totals: DocumentTotals) -> list:
        return [
            line_model(
                position=line.position,
                product_id=line.product_id,
                description=line.description,
                unit=line.unit or "UND",
                quantity=line.quantity,
                unit_price=line.unit_price,
                discount=line.discount,
                subtotal=line.subtotal,
                tax=line.tax,
                total=line.total,
            )
            for line in totals.lines
        ]
