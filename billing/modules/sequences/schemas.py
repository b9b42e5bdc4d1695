from pydantic import BaseModel
from enum import Enum


class DocumentTypeParam(str, Enum):
    INVOICE = "invoice"
    QUOTE = "quote"


class NextDocumentNumber(BaseModel):
    document_type: DocumentTypeParam
    series: str
    next_number: int
    formatted: str
