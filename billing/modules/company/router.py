from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from billing.database.database import get_db
from billing.modules.auth.dependencies import AuthContextDep
from billing.modules.company.schemas import CompanyOut, BillingSettingsUpdate
from billing.modules.company.service import CompanyService

company_router = APIRouter(prefix="/company", tags=["Companies"])


@company_router.get("/", response_model=CompanyOut)
def get_current_company(auth_context: AuthContextDep, db: Session = Depends(get_db)):
    """Empresa del contexto actual con su configuración de facturación"""
    return CompanyService(db).get_company(auth_context.tenant_id)


@company_router.patch("/billing-settings", response_model=CompanyOut)
def update_billing_settings(
    data: BillingSettingsUpdate,
    auth_context: AuthContextDep,
    db: Session = Depends(get_db)
):
    """
    Actualizar tasa de impuesto, moneda y series por defecto.

    Los documentos ya emitidos conservan la tasa y serie con las que se crearon.
    """
    return CompanyService(db).update_billing_settings(auth_context.tenant_id, data)
