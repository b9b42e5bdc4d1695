from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator
from decimal import Decimal
from typing import Optional, List, Literal
from uuid import UUID
from datetime import date, datetime

from billing.modules.documents.models import InvoiceStatus, QuoteStatus, PaymentMethod


# Line Item Schemas
class LineItemCreate(BaseModel):
    description: str = Field(..., min_length=1, max_length=500)
    product_id: Optional[UUID] = None
    unit: str = Field("UND", max_length=10)
    quantity: Decimal = Field(..., gt=0, max_digits=12, decimal_places=3, description="Cantidad debe ser mayor a 0")
    unit_price: Decimal = Field(..., gt=0, max_digits=15, decimal_places=2, description="Precio unitario sin impuestos, mayor a 0")
    discount: Decimal = Field(Decimal("0"), ge=0, max_digits=15, decimal_places=2, description="Descuento en monto fijo")


class LineItemOut(BaseModel):
    id: UUID
    position: int
    product_id: Optional[UUID] = None
    description: str
    unit: str
    quantity: Decimal
    unit_price: Decimal
    discount: Decimal
    subtotal: Decimal
    tax: Decimal
    total: Decimal

    class Config:
        from_attributes = True


# Document Schemas
class DocumentCreate(BaseModel):
    client_id: UUID
    issue_date: date = Field(default_factory=date.today)
    due_date: Optional[date] = None       # Solo facturas
    valid_until: Optional[date] = None    # Solo proformas
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    exchange_rate: Optional[Decimal] = Field(None, gt=0, max_digits=10, decimal_places=4)
    tax_rate: Optional[Decimal] = Field(None, ge=0, le=100, decimal_places=2, description="Sobrescribe la tasa de la empresa")
    series: Optional[str] = Field(None, min_length=1, max_length=10)
    notes: Optional[str] = None
    terms: Optional[str] = None
    items: List[LineItemCreate] = Field(..., min_length=1, description="Debe incluir al menos un item")

    @model_validator(mode='after')
    def validate_dates(self):
        if self.due_date and self.due_date < self.issue_date:
            raise ValueError('La fecha de vencimiento no puede ser anterior a la fecha de emisión')
        if self.valid_until and self.valid_until < self.issue_date:
            raise ValueError('La fecha de validez no puede ser anterior a la fecha de emisión')
        return self


class DocumentUpdate(BaseModel):
    client_id: Optional[UUID] = None
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    valid_until: Optional[date] = None
    tax_rate: Optional[Decimal] = Field(None, ge=0, le=100, decimal_places=2)
    exchange_rate: Optional[Decimal] = Field(None, gt=0, max_digits=10, decimal_places=4)
    notes: Optional[str] = None
    terms: Optional[str] = None
    items: Optional[List[LineItemCreate]] = None

    @field_validator('items')
    @classmethod
    def validate_items(cls, v):
        if v is not None and len(v) == 0:
            raise ValueError('Debe incluir al menos un item')
        return v


class DocumentOutBase(BaseModel):
    id: UUID
    series: str
    number: int
    document_number: str
    client_id: UUID
    display_status: str
    issue_date: date
    currency: str
    exchange_rate: Optional[Decimal] = None
    tax_rate: Decimal
    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal
    notes: Optional[str] = None
    line_items: List[LineItemOut]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


# Payment Schemas
class PaymentCreate(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2, description="Monto debe ser mayor a 0")
    method: PaymentMethod
    reference: Optional[str] = Field(None, max_length=100)
    payment_date: date = Field(default_factory=date.today)
    notes: Optional[str] = None


class PaymentOut(BaseModel):
    id: UUID
    invoice_id: UUID
    amount: Decimal
    method: PaymentMethod
    reference: Optional[str] = None
    payment_date: date
    notes: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class InvoiceOut(DocumentOutBase):
    document_type: Literal["invoice"] = "invoice"
    status: InvoiceStatus
    due_date: Optional[date] = None
    source_quote_id: Optional[UUID] = None
    paid_amount: Decimal
    balance_due: Decimal
    payments: List[PaymentOut] = []


class QuoteOut(DocumentOutBase):
    document_type: Literal["quote"] = "quote"
    status: QuoteStatus
    valid_until: Optional[date] = None
    terms: Optional[str] = None
    converted_invoice_id: Optional[UUID] = None


class InvoiceVoidRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class QuoteStatusChange(BaseModel):
    status: Literal["pending", "approved", "rejected"]

    def to_model(self) -> QuoteStatus:
        return QuoteStatus(self.status)


class InvoiceDatesUpdate(BaseModel):
    """Corrección de fechas; permitida en facturas pagadas, no en anuladas"""
    issue_date: date
    due_date: Optional[date] = None

    @model_validator(mode='after')
    def validate_dates(self):
        if self.due_date and self.due_date < self.issue_date:
            raise ValueError('La fecha de vencimiento no puede ser anterior a la fecha de emisión')
        return self


class DocumentEmailRequest(BaseModel):
    to: Optional[EmailStr] = Field(None, description="Por defecto el correo del cliente")
    subject: Optional[str] = Field(None, max_length=200)
    message: Optional[str] = Field(None, max_length=5000)
    locale: Literal["es", "en"] = "es"


class DocumentEmailResult(BaseModel):
    message: str
    recipient: str
    email_queued: bool
