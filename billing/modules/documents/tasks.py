"""
Background tasks for documents module
"""
from billing.core.celery import celery_app
from billing.database.database import SessionLocal
from billing.modules.documents.service import DocumentService
import logging

logger = logging.getLogger(__name__)


@celery_app.task(bind=True)
def expire_quotes(self):
    """
    Periodic task: proformas pendientes con fecha de validez vencida pasan a vencidas
    """
    logger.info("Starting quote expiry sweep")
    db = SessionLocal()
    try:
        count = DocumentService(db).expire_overdue_quotes()
        logger.info(f"Quote expiry sweep completed ({count} expired)")
        return {"status": "completed", "expired": count}
    except Exception as e:
        logger.error(f"Quote expiry sweep failed: {str(e)}")
        raise
    finally:
        db.close()
