from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from billing.core.config import settings
from billing.database.database import get_db
from billing.modules.auth.dependencies import AuthContextDep
from billing.modules.signatures.schemas import (
    SignatureRequestCreate, SignatureRequestOut, SignatureEmailResult, SignatureSubmit,
    SignatureSubmitResult, SignatureValidation, SignerRequestInfo, SignerCompany, SignerDocument,
    SignatureStatusOut, SignatureSummary
)
from billing.modules.signatures.service import SignatureService

signatures_router = APIRouter(prefix="/signatures", tags=["Signatures"])


def signing_path(token: str) -> str:
    return f"/sign/{token}"


# --- Empresa (requiere autenticación y X-Company-ID) ---

@signatures_router.post("/request", response_model=SignatureRequestOut, status_code=status.HTTP_201_CREATED)
def request_signature(
    data: SignatureRequestCreate,
    auth_context: AuthContextDep,
    db: Session = Depends(get_db)
):
    """
    Solicitar la firma de una factura o proforma.

    Devuelve el token y la ruta de firma. Si send_email es verdadero se encola
    la invitación; un fallo al encolar no anula la solicitud.
    """
    service = SignatureService(db)
    request, email_queued = service.request_signature(data, auth_context.tenant_id, auth_context.user_id)
    return SignatureRequestOut(
        id=request.id,
        token=request.token,
        status=request.status,
        expires_at=request.expires_at,
        signing_url=signing_path(request.token),
        email_queued=email_queued
    )


@signatures_router.post("/{token}/send-email", response_model=SignatureEmailResult)
def resend_signature_email(
    token: str,
    auth_context: AuthContextDep,
    db: Session = Depends(get_db)
):
    """Reenviar la invitación de firma al firmante"""
    service = SignatureService(db)
    request, email_queued = service.resend_request_email(token, auth_context.tenant_id)
    message = "Correo de firma encolado" if email_queued else "No se pudo encolar el correo, intente nuevamente"
    return SignatureEmailResult(message=message, email_queued=email_queued, sent_at=request.sent_at)


@signatures_router.post("/{token}/cancel", response_model=SignatureStatusOut)
def cancel_signature_request(
    token: str,
    auth_context: AuthContextDep,
    db: Session = Depends(get_db)
):
    """Cancelar una solicitud de firma pendiente"""
    service = SignatureService(db)
    request = service.cancel_request(token, auth_context.tenant_id)
    return SignatureStatusOut(status=request.status, expires_at=request.expires_at, viewed_at=request.viewed_at)


# --- Firmante (público, el token es la credencial) ---

@signatures_router.get("/validate/{token}", response_model=SignatureValidation)
def validate_signature_token(token: str, db: Session = Depends(get_db)):
    """
    Validar token y obtener el documento a firmar.

    Errores: 404 token desconocido, 400 ya firmado, 410 vencido o cancelado.
    """
    service = SignatureService(db)
    request, company, document = service.validate_token(token)
    return SignatureValidation(
        request=SignerRequestInfo.model_validate(request),
        company=SignerCompany.model_validate(company),
        document=SignerDocument.model_validate(document),
        consent_text=settings.SIGNATURE_DEFAULT_CONSENT_TEXT
    )


@signatures_router.post("/submit", response_model=SignatureSubmitResult)
def submit_signature(data: SignatureSubmit, http_request: Request, db: Session = Depends(get_db)):
    """Registrar la firma del documento"""
    service = SignatureService(db)
    signature = service.submit_signature(
        data,
        ip_address=http_request.client.host if http_request.client else None,
        user_agent=http_request.headers.get("user-agent")
    )
    return signature


@signatures_router.get("/status/{token}", response_model=SignatureStatusOut)
def get_signature_status(token: str, db: Session = Depends(get_db)):
    """Consultar estado de la solicitud (no modifica nada)"""
    service = SignatureService(db)
    request = service.get_status(token)
    return SignatureStatusOut(
        status=request.effective_status,
        expires_at=request.expires_at,
        viewed_at=request.viewed_at,
        signature=SignatureSummary.model_validate(request.signature) if request.signature else None
    )
