from billing.database.database import Base
from billing.common.mixins import TenantMixin, TimestampMixin
from billing.common.utils import today
from billing.modules.sequences.service import format_document_number
from sqlalchemy import Column, Integer, String, ForeignKey, Numeric, Enum, Date, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship, declared_attr
from datetime import date
from decimal import Decimal
from uuid import uuid4
import enum


class InvoiceStatus(enum.Enum):
    ISSUED = "issued"    # Emitida, pendiente de pago
    PAID = "paid"        # Pagada completamente
    VOID = "void"        # Anulada


class QuoteStatus(enum.Enum):
    PENDING = "pending"      # Enviada, esperando respuesta
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"      # Venció la fecha de validez
    INVOICED = "invoiced"    # Convertida a factura (terminal)


class PaymentMethod(enum.Enum):
    CASH = "cash"           # Efectivo
    TRANSFER = "transfer"   # Transferencia
    CARD = "card"           # Tarjeta
    WALLET = "wallet"       # Billetera digital (Yape, Plin)
    OTHER = "other"


# Estado derivado en lectura, nunca persistido
OVERDUE = "overdue"


class DocumentMixin(TenantMixin, TimestampMixin):
    """Columnas comunes a facturas y proformas"""

    id = Column(Uuid, primary_key=True, default=uuid4)
    series = Column(String(10), nullable=False)
    number = Column(Integer, nullable=False)

    issue_date = Column(Date, nullable=False, default=date.today)
    currency = Column(String(3), nullable=False)
    exchange_rate = Column(Numeric(10, 4), nullable=True)  # Tipo de cambio a moneda local, si aplica
    notes = Column(Text, nullable=True)
    created_by = Column(String(128), nullable=True)  # sub del proveedor de identidad

    # Totals (calculated, never hand-entered)
    tax_rate = Column(Numeric(5, 2), nullable=False)
    subtotal = Column(Numeric(15, 2), nullable=False, default=0)
    discount = Column(Numeric(15, 2), nullable=False, default=0)
    tax = Column(Numeric(15, 2), nullable=False, default=0)
    total = Column(Numeric(15, 2), nullable=False, default=0)

    @declared_attr
    def client_id(cls):
        return Column(Uuid, ForeignKey("clients.id"), nullable=False)

    @property
    def document_number(self) -> str:
        return format_document_number(self.series, self.number)


class LineItemMixin:
    """Columnas comunes a las líneas de factura y proforma"""

    id = Column(Uuid, primary_key=True, default=uuid4)
    position = Column(Integer, nullable=False)  # Orden de presentación, desde 0
    product_id = Column(Uuid, nullable=True)    # Referencia opcional al catálogo
    description = Column(String(500), nullable=False)
    unit = Column(String(10), nullable=False, default="UND")

    quantity = Column(Numeric(12, 3), nullable=False)
    unit_price = Column(Numeric(15, 2), nullable=False)
    discount = Column(Numeric(15, 2), nullable=False, default=0)  # Monto fijo
    subtotal = Column(Numeric(15, 2), nullable=False)  # quantity * unit_price - discount
    tax = Column(Numeric(15, 2), nullable=False)
    total = Column(Numeric(15, 2), nullable=False)


class Invoice(Base, DocumentMixin):
    __tablename__ = "invoices"

    status = Column(Enum(InvoiceStatus), nullable=False, default=InvoiceStatus.ISSUED)
    due_date = Column(Date, nullable=True)
    # Proforma de origen cuando la factura nace de una conversión
    source_quote_id = Column(Uuid, ForeignKey("quotes.id"), nullable=True, unique=True)

    client = relationship("Client")
    line_items = relationship(
        "InvoiceLineItem", back_populates="invoice",
        cascade="all, delete-orphan", order_by="InvoiceLineItem.position"
    )
    payments = relationship("Payment", back_populates="invoice", cascade="all, delete-orphan",
                            order_by="Payment.created_at")
    source_quote = relationship("Quote", back_populates="converted_invoice")

    __table_args__ = (
        UniqueConstraint("tenant_id", "series", "number", name="uq_invoice_tenant_series_number"),
    )

    @property
    def paid_amount(self) -> Decimal:
        """Calcular monto pagado"""
        return sum((payment.amount for payment in self.payments), Decimal('0.00'))

    @property
    def balance_due(self) -> Decimal:
        """Calcular saldo pendiente"""
        return self.total - self.paid_amount

    @property
    def display_status(self) -> str:
        if self.status == InvoiceStatus.ISSUED and self.due_date and self.due_date < today():
            return OVERDUE
        return self.status.value


class InvoiceLineItem(Base, LineItemMixin):
    __tablename__ = "invoice_line_items"

    invoice_id = Column(Uuid, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)

    invoice = relationship("Invoice", back_populates="line_items")


class Quote(Base, DocumentMixin):
    __tablename__ = "quotes"

    status = Column(Enum(QuoteStatus), nullable=False, default=QuoteStatus.PENDING)
    valid_until = Column(Date, nullable=True)
    terms = Column(Text, nullable=True)  # Condiciones comerciales

    client = relationship("Client")
    line_items = relationship(
        "QuoteLineItem", back_populates="quote",
        cascade="all, delete-orphan", order_by="QuoteLineItem.position"
    )
    converted_invoice = relationship("Invoice", back_populates="source_quote", uselist=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "series", "number", name="uq_quote_tenant_series_number"),
    )

    @property
    def is_past_validity(self) -> bool:
        return self.valid_until is not None and self.valid_until < today()

    @property
    def effective_status(self) -> QuoteStatus:
        """Estado considerando el vencimiento aunque el barrido aún no lo haya persistido"""
        if self.status == QuoteStatus.PENDING and self.is_past_validity:
            return QuoteStatus.EXPIRED
        return self.status

    @property
    def display_status(self) -> str:
        return self.effective_status.value

    @property
    def converted_invoice_id(self):
        return self.converted_invoice.id if self.converted_invoice else None


class QuoteLineItem(Base, LineItemMixin):
    __tablename__ = "quote_line_items"

    quote_id = Column(Uuid, ForeignKey("quotes.id", ondelete="CASCADE"), nullable=False, index=True)

    quote = relationship("Quote", back_populates="line_items")


class Payment(Base, TenantMixin, TimestampMixin):
    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid4)
    invoice_id = Column(Uuid, ForeignKey("invoices.id"), nullable=False, index=True)

    amount = Column(Numeric(15, 2), nullable=False)
    method = Column(Enum(PaymentMethod), nullable=False)
    reference = Column(String(100), nullable=True)  # Número de operación, voucher, etc.
    payment_date = Column(Date, nullable=False, default=date.today)
    notes = Column(Text, nullable=True)
    created_by = Column(String(128), nullable=True)

    invoice = relationship("Invoice", back_populates="payments")
