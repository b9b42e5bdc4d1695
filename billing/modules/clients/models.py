from billing.database.database import Base
from billing.common.mixins import TenantMixin, TimestampMixin
from sqlalchemy import Column, String, Boolean, Uuid
from uuid import uuid4


class Client(Base, TenantMixin, TimestampMixin):
    """Cliente de la empresa. El CRUD vive fuera del núcleo de facturación."""
    __tablename__ = "clients"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(200), nullable=False)  # Razón social o nombre
    document_type = Column(String(10), nullable=True)  # RUC, DNI, ...
    document_number = Column(String(20), nullable=True)
    email = Column(String(100), nullable=True)
    address = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
