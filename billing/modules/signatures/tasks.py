"""
Background tasks for signatures module
"""
from billing.core.celery import celery_app
from billing.database.database import SessionLocal
from billing.modules.signatures.service import SignatureService
import logging

logger = logging.getLogger(__name__)


@celery_app.task(bind=True)
def expire_signature_requests(self):
    """
    Periodic task: solicitudes pendientes con expires_at vencido pasan a EXPIRED
    """
    logger.info("Starting signature request expiry sweep")
    db = SessionLocal()
    try:
        count = SignatureService(db).expire_stale_requests()
        logger.info(f"Signature request expiry sweep completed ({count} expired)")
        return {"status": "completed", "expired": count}
    except Exception as e:
        logger.error(f"Signature request expiry sweep failed: {str(e)}")
        raise
    finally:
        db.close()
