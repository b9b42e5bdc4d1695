from billing.database.database import Base
from billing.common.mixins import TenantMixin, TimestampMixin
from sqlalchemy import Column, Integer, String, Boolean, Enum, UniqueConstraint, Uuid
from uuid import uuid4
import enum


class DocumentType(enum.Enum):
    INVOICE = "invoice"  # Factura
    QUOTE = "quote"      # Proforma / cotización


class SeriesCounter(Base, TenantMixin, TimestampMixin):
    """Contador de numeración por (empresa, tipo de documento, serie)"""
    __tablename__ = "series_counters"

    id = Column(Uuid, primary_key=True, default=uuid4)
    document_type = Column(Enum(DocumentType), nullable=False)
    series = Column(String(10), nullable=False)  # Ej: "F001", "P001"
    last_number = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "document_type", "series", name="uq_counter_tenant_type_series"),
    )
