"""
Flujo de firma electrónica de facturas y proformas.

PENDING -> SIGNED | EXPIRED | CANCELLED; todos salvo PENDING son finales.
El token (64 hex) es la única credencial del firmante. Los correos se
encolan después del commit y su fallo nunca revierte el estado guardado.
"""
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.exc import IntegrityError
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple
from uuid import UUID
import logging
import secrets

from billing.core.config import settings
from billing.common.exceptions import (
    AlreadySignedError, CancelledError, ExpiredError, NotFoundError, ValidationError
)
from billing.common.utils import utcnow
from billing.modules.company.models import Company
from billing.modules.company.service import CompanyService
from billing.modules.documents.service import DocumentService
from billing.modules.email.tasks import (
    queue_email, send_signature_request_email_task, send_signature_confirmation_email_task
)
from billing.modules.sequences.models import DocumentType
from billing.modules.signatures.models import Signature, SignatureRequest, SignatureRequestStatus
from billing.modules.signatures.schemas import SignatureRequestCreate, SignatureSubmit
from billing.modules.signatures.storage import SignatureArtifactStore

logger = logging.getLogger(__name__)


def detect_device_type(user_agent: Optional[str]) -> Optional[str]:
    if not user_agent:
        return None
    ua = user_agent.lower()
    if "ipad" in ua or "tablet" in ua:
        return "tablet"
    if "mobi" in ua or "android" in ua or "iphone" in ua:
        return "mobile"
    return "desktop"


class SignatureService:
    def __init__(self, db: Session, artifact_store: Optional[SignatureArtifactStore] = None):
        self.db = db
        self.artifact_store = artifact_store or SignatureArtifactStore()

    # --- Lado autenticado (empresa) ---

    def request_signature(self, data: SignatureRequestCreate, company_id: UUID,
                          user_id: Optional[str] = None) -> Tuple[SignatureRequest, bool]:
        """
        Crear solicitud de firma para un documento de la empresa.

        Returns:
            (solicitud, email_encolado)
        """
        document_type = DocumentType(data.document_type.value)
        document = DocumentService(self.db).get_document(document_type, data.document_id, company_id)

        now = utcnow()
        request = SignatureRequest(
            tenant_id=company_id,
            token=secrets.token_hex(32),
            document_type=document_type,
            invoice_id=document.id if document_type == DocumentType.INVOICE else None,
            quote_id=document.id if document_type == DocumentType.QUOTE else None,
            signer_email=data.signer_email,
            signer_name=data.signer_name,
            status=SignatureRequestStatus.PENDING,
            expires_at=now + timedelta(days=settings.SIGNATURE_REQUEST_TTL_DAYS),
            sent_at=now if data.send_email else None,
            requested_by=user_id
        )
        self.db.add(request)
        self._commit(f"signature request for {document.document_number}")
        self.db.refresh(request)
        logger.info(
            f"Signature request {request.id} created for {document_type.value} {document.document_number} "
            f"(signer={request.signer_email}, expires_at={request.expires_at})"
        )

        email_queued = False
        if data.send_email:
            email_queued = self._queue_request_email(request)
        return request, email_queued

    def resend_request_email(self, token: str, company_id: UUID) -> Tuple[SignatureRequest, bool]:
        """Reenviar la invitación; solo para solicitudes pendientes y vigentes"""
        request = self._get_by_token(token, company_id=company_id)
        self._ensure_pending(request)

        email_queued = self._queue_request_email(request)
        if email_queued:
            request.sent_at = utcnow()
            self._commit(f"resend signature request {request.id}")
            self.db.refresh(request)
        return request, email_queued

    def cancel_request(self, token: str, company_id: UUID) -> SignatureRequest:
        """Cancelar solicitud pendiente"""
        request = self._get_by_token(token, company_id=company_id, lock=True)
        self._ensure_pending(request)

        request.status = SignatureRequestStatus.CANCELLED
        self._commit(f"cancel signature request {request.id}")
        self.db.refresh(request)
        logger.info(f"Signature request {request.id} cancelled")
        return request

    # --- Lado público (firmante) ---

    def validate_token(self, token: str) -> Tuple[SignatureRequest, Company, Any]:
        """
        Validar token y devolver lo necesario para mostrar el documento.

        Marca viewed_at la primera vez. Un token vencido que seguía pendiente
        queda persistido como EXPIRED.
        """
        request = self._get_by_token(token)
        self._ensure_pending(request)

        if request.viewed_at is None:
            request.viewed_at = utcnow()
            self._commit(f"view signature request {request.id}")
            self.db.refresh(request)
            logger.info(f"Signature request {request.id} viewed for the first time")

        company = CompanyService(self.db).get_company(request.tenant_id)
        return request, company, request.document

    def submit_signature(self, data: SignatureSubmit, ip_address: Optional[str] = None,
                         user_agent: Optional[str] = None) -> Signature:
        """
        Registrar la firma.

        La solicitud se bloquea durante la operación; la firma y el cambio a
        SIGNED se confirman juntos. Un segundo envío obtiene AlreadySignedError.
        """
        request = self._get_by_token(data.token, lock=True)
        self._ensure_pending(request)

        if not data.consent_given:
            raise ValidationError.for_field(
                "consent_given", "Debe aceptar el consentimiento para firmar electrónicamente"
            )

        document = request.document
        image_url = self.artifact_store.store_signature_image(
            request.tenant_id, request.token, data.signature_image
        )
        signed_pdf_url = None
        if data.signed_pdf:
            signed_pdf_url = self.artifact_store.store_signed_pdf(
                request.tenant_id, document.document_number, data.signed_pdf
            )

        user_agent = data.user_agent or user_agent
        signature = Signature(
            signature_request_id=request.id,
            signature_image_url=image_url,
            signed_pdf_url=signed_pdf_url,
            signer_name=request.signer_name or request.signer_email,
            signer_email=request.signer_email,
            consent_given=True,
            consent_text=data.consent_text or settings.SIGNATURE_DEFAULT_CONSENT_TEXT,
            ip_address=data.ip_address or ip_address,
            user_agent=user_agent,
            device_type=data.device_type or detect_device_type(user_agent),
            signed_at=utcnow()
        )
        request.status = SignatureRequestStatus.SIGNED
        self.db.add(signature)

        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            existing = self.db.query(Signature).filter(Signature.signature_request_id == request.id).first()
            logger.info(f"Concurrent signature submit rejected for request {request.id}")
            raise AlreadySignedError(signed_at=existing.signed_at if existing else None) from e
        except Exception:
            self.db.rollback()
            logger.error(f"Error persisting signature for request {request.id}", exc_info=True)
            raise

        self.db.refresh(signature)
        logger.info(
            f"Document {document.document_number} signed by {signature.signer_email} "
            f"(request {request.id})"
        )
        self._queue_confirmation_email(request, signature)
        return signature

    def get_status(self, token: str) -> SignatureRequest:
        """Estado de la solicitud. Solo lectura: la expiración se calcula, no se guarda"""
        return self._get_by_token(token)

    def expire_stale_requests(self, as_of: Optional[datetime] = None) -> int:
        """Barrido periódico: pendientes con expires_at vencido pasan a EXPIRED"""
        as_of = as_of or utcnow()
        count = self.db.query(SignatureRequest).filter(
            SignatureRequest.status == SignatureRequestStatus.PENDING,
            SignatureRequest.expires_at < as_of
        ).update({SignatureRequest.status: SignatureRequestStatus.EXPIRED}, synchronize_session=False)
        self.db.commit()
        if count:
            logger.info(f"Expired {count} signature requests as of {as_of}")
        return count

    # --- Helpers ---

    def _get_by_token(self, token: str, company_id: Optional[UUID] = None,
                      lock: bool = False) -> SignatureRequest:
        query = self.db.query(SignatureRequest).options(
            selectinload(SignatureRequest.signature)
        ).filter(SignatureRequest.token == token)
        if company_id is not None:
            query = query.filter(SignatureRequest.tenant_id == company_id)
        if lock:
            query = query.with_for_update()
        request = query.first()
        if not request:
            raise NotFoundError("Solicitud de firma no válida")
        return request

    def _ensure_pending(self, request: SignatureRequest) -> None:
        if request.status == SignatureRequestStatus.SIGNED:
            raise AlreadySignedError(signed_at=request.signature.signed_at if request.signature else None)
        if request.status == SignatureRequestStatus.CANCELLED:
            raise CancelledError()
        if request.status == SignatureRequestStatus.EXPIRED:
            raise ExpiredError()
        if request.is_past_expiry:
            request.status = SignatureRequestStatus.EXPIRED
            self._commit(f"expire signature request {request.id}")
            logger.info(f"Signature request {request.id} expired (expires_at={request.expires_at})")
            raise ExpiredError()

    def _commit(self, what: str) -> None:
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.error(f"Error persisting {what}", exc_info=True)
            raise

    def _email_context(self, request: SignatureRequest) -> Dict[str, Any]:
        document = request.document
        company = self.db.get(Company, request.tenant_id)
        return {
            "signer_email": request.signer_email,
            "signer_name": request.signer_name,
            "token": request.token,
            "document_type": request.document_type.value,
            "document_number": document.document_number,
            "company_name": company.name if company else "",
            "company_email": company.email if company else None,
            "total": str(document.total),
            "currency": document.currency,
            "expires_at": request.expires_at.isoformat(),
        }

    def _queue_request_email(self, request: SignatureRequest) -> bool:
        return self._dispatch(send_signature_request_email_task, self._email_context(request), request)

    def _queue_confirmation_email(self, request: SignatureRequest, signature: Signature) -> bool:
        context = self._email_context(request)
        context.update(
            signer_name=signature.signer_name,
            signed_at=signature.signed_at.isoformat(),
            signed_pdf_url=signature.signed_pdf_url,
        )
        return self._dispatch(send_signature_confirmation_email_task, context, request)

    @staticmethod
    def _dispatch(task, context: Dict[str, Any], request: SignatureRequest) -> bool:
        return queue_email(task, context, f"signature request {request.id}")
