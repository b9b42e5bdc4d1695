from pydantic import BaseModel, Field
from decimal import Decimal
from typing import Optional
from uuid import UUID


class CompanyOut(BaseModel):
    id: UUID
    name: str
    tax_id: Optional[str] = None
    email: Optional[str] = None
    tax_rate: Decimal
    currency: str
    invoice_series: str
    quote_series: str

    class Config:
        from_attributes = True


class BillingSettingsUpdate(BaseModel):
    tax_rate: Optional[Decimal] = Field(None, ge=0, le=100, decimal_places=2, description="Porcentaje, ej. 18")
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    invoice_series: Optional[str] = Field(None, min_length=1, max_length=10)
    quote_series: Optional[str] = Field(None, min_length=1, max_length=10)
