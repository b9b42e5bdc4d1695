from billing.database.database import Base
from billing.common.mixins import TenantMixin, TimestampMixin
from billing.common.utils import as_utc, utcnow
from billing.modules.sequences.models import DocumentType
from sqlalchemy import Column, String, ForeignKey, Enum, DateTime, Boolean, Text, CheckConstraint, Uuid
from sqlalchemy.orm import relationship, backref
from uuid import uuid4
import enum


class SignatureRequestStatus(enum.Enum):
    PENDING = "pending"
    SIGNED = "signed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class SignatureRequest(Base, TenantMixin, TimestampMixin):
    """Solicitud de firma de una factura o proforma; el token es la credencial del firmante"""
    __tablename__ = "signature_requests"

    id = Column(Uuid, primary_key=True, default=uuid4)
    token = Column(String(64), nullable=False, unique=True, index=True)
    document_type = Column(Enum(DocumentType), nullable=False)
    invoice_id = Column(Uuid, ForeignKey("invoices.id"), nullable=True, index=True)
    quote_id = Column(Uuid, ForeignKey("quotes.id"), nullable=True, index=True)

    signer_email = Column(String(255), nullable=False)
    signer_name = Column(String(255), nullable=True)
    status = Column(Enum(SignatureRequestStatus), nullable=False, default=SignatureRequestStatus.PENDING)

    expires_at = Column(DateTime(timezone=True), nullable=False)
    viewed_at = Column(DateTime(timezone=True), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    requested_by = Column(String(128), nullable=True)

    invoice = relationship(
        "Invoice", backref=backref("signature_requests", cascade="all, delete-orphan")
    )
    quote = relationship(
        "Quote", backref=backref("signature_requests", cascade="all, delete-orphan")
    )
    signature = relationship(
        "Signature", back_populates="signature_request", uselist=False, cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint(
            "(invoice_id IS NOT NULL AND quote_id IS NULL) OR (invoice_id IS NULL AND quote_id IS NOT NULL)",
            name="ck_signature_request_single_document"
        ),
    )

    @property
    def document(self):
        return self.invoice if self.document_type == DocumentType.INVOICE else self.quote

    @property
    def is_past_expiry(self) -> bool:
        return utcnow() > as_utc(self.expires_at)

    @property
    def effective_status(self) -> SignatureRequestStatus:
        """Estado considerando la expiración aunque aún no se haya persistido"""
        if self.status == SignatureRequestStatus.PENDING and self.is_past_expiry:
            return SignatureRequestStatus.EXPIRED
        return self.status


class Signature(Base):
    __tablename__ = "signatures"

    id = Column(Uuid, primary_key=True, default=uuid4)
    signature_request_id = Column(
        Uuid, ForeignKey("signature_requests.id", ondelete="CASCADE"), nullable=False, unique=True
    )

    signature_image_url = Column(Text, nullable=False)   # URL en MinIO o data URL
    signed_pdf_url = Column(Text, nullable=True)
    signer_name = Column(String(255), nullable=False)
    signer_email = Column(String(255), nullable=False)

    consent_given = Column(Boolean, nullable=False)
    consent_text = Column(Text, nullable=False)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    device_type = Column(String(20), nullable=True)
    signed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    signature_request = relationship("SignatureRequest", back_populates="signature")
