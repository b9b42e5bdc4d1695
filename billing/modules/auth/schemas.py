from pydantic import BaseModel
from typing import Optional
from uuid import UUID


class AuthContext(BaseModel):
    """Identidad validada por el proveedor externo más el tenant resuelto"""
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    tenant_id: UUID
