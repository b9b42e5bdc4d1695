from sqlalchemy.orm import Session
from uuid import UUID
import logging

from billing.common.exceptions import NotFoundError
from billing.modules.company.models import Company
from billing.modules.company.schemas import BillingSettingsUpdate

logger = logging.getLogger(__name__)


class CompanyService:
    def __init__(self, db: Session):
        self.db = db

    def get_company(self, company_id: UUID) -> Company:
        company = self.db.query(Company).filter(
            Company.id == company_id,
            Company.is_active == True
        ).first()
        if not company:
            raise NotFoundError("Empresa no encontrada")
        return company

    def update_billing_settings(self, company_id: UUID, data: BillingSettingsUpdate) -> Company:
        """Actualizar tasa de impuesto, moneda y series por defecto"""
        company = self.get_company(company_id)
        changes = data.model_dump(exclude_unset=True)
        for field, value in changes.items():
            setattr(company, field, value)
        self.db.commit()
        self.db.refresh(company)
        logger.info(f"Billing settings updated for company {company_id}: {sorted(changes)}")
        return company
