from billing.database.database import Base
from billing.core.config import settings
from sqlalchemy import Column, String, Boolean, DateTime, Numeric, Uuid
from sqlalchemy.sql import func
import uuid


class Company(Base):
    """Empresa: frontera de tenant y fuente de los valores por defecto de facturación"""
    __tablename__ = "companies"

    id = Column(Uuid, primary_key=True, index=True, default=uuid.uuid4)
    # Sujeto (sub) del proveedor de identidad dueño de la empresa
    owner_id = Column(String(128), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    tax_id = Column(String(50), nullable=True)  # RUC / NIT
    email = Column(String(100), nullable=True)
    address = Column(String, nullable=True)
    logo_url = Column(String, nullable=True)

    tax_rate = Column(Numeric(5, 2), nullable=False, default=settings.DEFAULT_TAX_RATE)
    currency = Column(String(3), nullable=False, default=settings.DEFAULT_CURRENCY)
    invoice_series = Column(String(10), nullable=False, default=settings.DEFAULT_INVOICE_SERIES)
    quote_series = Column(String(10), nullable=False, default=settings.DEFAULT_QUOTE_SERIES)

    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
