from stoodio.core.celery_config import celery_app
from stoodio.core.config import settings
from stoodio.database.db import SessionLocal
from stoodio.services.events import dispatch_pending_events, log_delivery


@celery_app.task(bind=True)
def dispatch_outbox_task(self) -> int:
    """Deliver queued booking/wallet events to the notification sink."""
    db = SessionLocal()
    try:
        return dispatch_pending_events(db, log_delivery, limit=settings.OUTBOX_BATCH_SIZE)
    finally:
        db.close()
