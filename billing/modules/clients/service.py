from sqlalchemy.orm import Session
from uuid import UUID

from billing.common.exceptions import ValidationError
from billing.modules.clients.models import Client


class ClientValidator:
    """Helper to validate that a client belongs to the current tenant"""
    def __init__(self, db: Session):
        self.db = db

    def require_client(self, client_id: UUID, tenant_id: UUID) -> Client:
        client = self.db.query(Client).filter(
            Client.id == client_id,
            Client.tenant_id == tenant_id,
            Client.is_active == True
        ).first()
        if not client:
            raise ValidationError.for_field(
                "client_id", "El cliente especificado no existe o no pertenece a esta empresa"
            )
        return client
