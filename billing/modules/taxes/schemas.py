from pydantic import BaseModel
from decimal import Decimal
from typing import List, Optional
from uuid import UUID


class ComputedLine(BaseModel):
    """Línea con sus montos ya calculados y redondeados"""
    position: int
    description: Optional[str] = None
    product_id: Optional[UUID] = None
    unit: Optional[str] = None
    quantity: Decimal
    unit_price: Decimal
    discount: Decimal
    subtotal: Decimal  # Base imponible: cantidad * precio - descuento
    tax: Decimal
    total: Decimal


class DocumentTotals(BaseModel):
    lines: List[ComputedLine]
    tax_rate: Decimal
    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal
