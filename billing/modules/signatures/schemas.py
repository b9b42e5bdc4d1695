from pydantic import BaseModel, EmailStr, Field, field_validator
from decimal import Decimal
from typing import Optional, List
from uuid import UUID
from datetime import date, datetime

from billing.modules.documents.schemas import LineItemOut
from billing.modules.sequences.schemas import DocumentTypeParam
from billing.modules.sequences.models import DocumentType
from billing.modules.signatures.models import SignatureRequestStatus


class SignatureRequestCreate(BaseModel):
    document_type: DocumentTypeParam
    document_id: UUID
    signer_email: EmailStr
    signer_name: Optional[str] = Field(None, max_length=255)
    send_email: bool = True


class SignatureRequestOut(BaseModel):
    id: UUID
    token: str
    status: SignatureRequestStatus
    expires_at: datetime
    signing_url: str
    email_queued: bool = False


class SignatureEmailResult(BaseModel):
    message: str
    email_queued: bool
    sent_at: Optional[datetime] = None


class SignatureSubmit(BaseModel):
    token: str = Field(..., min_length=1, max_length=64)
    signature_image: str = Field(..., description="Imagen de la firma como data URL (data:image/png;base64,...)")
    signed_pdf: Optional[str] = Field(None, description="PDF firmado como data URL")
    consent_given: bool
    consent_text: Optional[str] = None
    ip_address: Optional[str] = Field(None, max_length=45)
    user_agent: Optional[str] = None
    device_type: Optional[str] = Field(None, max_length=20)

    @field_validator('signature_image')
    @classmethod
    def validate_signature_image(cls, v):
        if not v.startswith('data:image/'):
            raise ValueError('La firma debe enviarse como imagen en formato data URL')
        return v

    @field_validator('signed_pdf')
    @classmethod
    def validate_signed_pdf(cls, v):
        if v is not None and not v.startswith('data:application/pdf'):
            raise ValueError('El PDF firmado debe enviarse en formato data URL')
        return v


class SignatureSubmitResult(BaseModel):
    id: UUID
    signed_at: datetime
    signature_image_url: str
    signed_pdf_url: Optional[str] = None

    class Config:
        from_attributes = True


# Vista del documento para el firmante
class SignerCompany(BaseModel):
    name: str
    tax_id: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    logo_url: Optional[str] = None

    class Config:
        from_attributes = True


class SignerClient(BaseModel):
    name: str
    document_type: Optional[str] = None
    document_number: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None

    class Config:
        from_attributes = True


class SignerDocument(BaseModel):
    id: UUID
    document_number: str
    display_status: str
    issue_date: date
    due_date: Optional[date] = None
    valid_until: Optional[date] = None
    currency: str
    tax_rate: Decimal
    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal
    notes: Optional[str] = None
    terms: Optional[str] = None
    client: SignerClient
    line_items: List[LineItemOut]

    class Config:
        from_attributes = True


class SignerRequestInfo(BaseModel):
    id: UUID
    document_type: DocumentType
    signer_email: str
    signer_name: Optional[str] = None
    status: SignatureRequestStatus
    expires_at: datetime
    viewed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SignatureValidation(BaseModel):
    request: SignerRequestInfo
    company: SignerCompany
    document: SignerDocument
    consent_text: str


class SignatureSummary(BaseModel):
    id: UUID
    signer_name: str
    signed_at: datetime
    signed_pdf_url: Optional[str] = None

    class Config:
        from_attributes = True


class SignatureStatusOut(BaseModel):
    status: SignatureRequestStatus
    expires_at: datetime
    viewed_at: Optional[datetime] = None
    signature: Optional[SignatureSummary] = None
