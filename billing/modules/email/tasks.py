"""
Tareas asíncronas de Celery para el envío de correos: documentos y firma electrónica.
"""
import logging
from typing import Dict, Any
from kombu.exceptions import OperationalError
from billing.core.celery import celery_app
from billing.modules.email.service import email_service

logger = logging.getLogger(__name__)


def queue_email(task, context: Dict[str, Any], reference: str) -> bool:
    """
    Encolar una tarea de correo.

    Si el broker no responde se registra el error y se devuelve False; el
    estado ya guardado por quien llama no se revierte.
    """
    try:
        task.delay(context)
    except (OperationalError, OSError) as e:
        logger.error(f"Could not queue {task.name} for {reference}: {e}")
        return False
    logger.info(f"Queued {task.name} for {reference}")
    return True


@celery_app.task(bind=True, max_retries=3)
def send_invoice_email_task(self, context: Dict[str, Any]):
    """
    Enviar una factura por correo.
    """
    try:
        email_service.send_invoice(context)
        logger.info(f"Invoice email sent to {context['to']} ({context['document_number']})")
        return {"status": "success", "email": context["to"]}

    except Exception as exc:
        logger.error(f"Invoice email failed: {str(exc)}")
        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc, countdown=60 * (2 ** self.request.retries))
        return {"status": "failed", "error": str(exc), "email": context["to"]}


@celery_app.task(bind=True, max_retries=3)
def send_quote_email_task(self, context: Dict[str, Any]):
    """
    Enviar una proforma por correo.
    """
    try:
        email_service.send_quote(context)
        logger.info(f"Quote email sent to {context['to']} ({context['document_number']})")
        return {"status": "success", "email": context["to"]}

    except Exception as exc:
        logger.error(f"Quote email failed: {str(exc)}")
        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc, countdown=60 * (2 ** self.request.retries))
        return {"status": "failed", "error": str(exc), "email": context["to"]}


@celery_app.task(bind=True, max_retries=3)
def send_signature_request_email_task(self, context: Dict[str, Any]):
    """
    Enviar invitación a firmar un documento.
    """
    try:
        email_service.send_signature_request(context)
        logger.info(f"Signature request email sent to {context['signer_email']} ({context['document_number']})")
        return {"status": "success", "email": context["signer_email"]}

    except Exception as exc:
        logger.error(f"Signature request email failed: {str(exc)}")

        # Retry with exponential backoff
        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc, countdown=60 * (2 ** self.request.retries))

        return {"status": "failed", "error": str(exc), "email": context["signer_email"]}


@celery_app.task(bind=True, max_retries=3)
def send_signature_confirmation_email_task(self, context: Dict[str, Any]):
    """
    Confirmar la firma al firmante y avisar a la empresa.
    """
    try:
        email_service.send_signature_confirmation(context)
        logger.info(f"Signature confirmation email sent for {context['document_number']}")
        return {"status": "success", "email": context["signer_email"]}

    except Exception as exc:
        logger.error(f"Signature confirmation email failed: {str(exc)}")
        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc, countdown=60 * (2 ** self.request.retries))
        return {"status": "failed", "error": str(exc), "email": context["signer_email"]}
