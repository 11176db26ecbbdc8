from typing import Optional
import logging
from fastapi import APIRouter, Body, Depends
from sqlalchemy.orm import Session

from .. import crud, schemas, security, models
from ..compliance_logger import compliance_logger
from ..database import get_db
from ..security import Principal
from ..services.notification_queue import NotificationQueue, get_notification_queue

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["Admin"],
    dependencies=[Depends(security.require_operator)],
)


@router.post("/queue/process", response_model=schemas.QueueProcessResponse)
async def process_notification_queue(
    body: Optional[schemas.QueueProcessRequest] = Body(None),
    db: Session = Depends(get_db),
    principal: Principal = Depends(security.require_operator),
    queue: NotificationQueue = Depends(get_notification_queue),
):
    """
    Deliver one batch of due notification jobs.
    """
    batch_size = body.batch_size if body else queue.settings.queue_batch_size
    result = await queue.process_batch(db, batch_size)
    if result.exhausted:
        queue.enqueue_system_alert(
            db, "Notifications failed permanently",
            f"{len(result.exhausted)} notification job(s) exhausted their retries",
            data={"jobIds": result.exhausted},
        )
    compliance_logger.log_event(
        models.AuditAction.QUEUE_PROCESSED,
        actor_id=principal.subject,
        actor_type=principal.role,
        category='QUEUE',
        details=f"processed={result.processed} succeeded={result.succeeded} failed={result.failed}",
    )
    return schemas.QueueProcessResponse(**result.to_dict())


@router.get("/queue/stats")
def get_queue_stats(
    db: Session = Depends(get_db),
    queue: NotificationQueue = Depends(get_notification_queue),
):
    return queue.get_stats(db)


@router.post("/queue/cleanup", response_model=schemas.QueueCleanupResponse)
def cleanup_notification_queue(
    body: Optional[schemas.QueueCleanupRequest] = Body(None),
    db: Session = Depends(get_db),
    principal: Principal = Depends(security.require_operator),
    queue: NotificationQueue = Depends(get_notification_queue),
):
    older_than_hours = body.older_than_hours if body else 24
    deleted = queue.cleanup(db, older_than_hours)
    compliance_logger.log_event(
        models.AuditAction.QUEUE_CLEANUP,
        actor_id=principal.subject,
        actor_type=principal.role,
        category='QUEUE',
        details=f"Deleted {deleted} finished jobs older than {older_than_hours}h",
    )
    return schemas.QueueCleanupResponse(deleted_count=deleted)


@router.post("/grants/sweep", response_model=schemas.GrantSweepResponse)
def sweep_grants(
    body: Optional[schemas.GrantSweepRequest] = Body(None),
    db: Session = Depends(get_db),
    queue: NotificationQueue = Depends(get_notification_queue),
):
    """
    Materialise EXPIRED on overdue grants and queue expiry reminders.
    """
    window = body.reminder_window_hours if body else 2
    expired = crud.expire_overdue_grants(db, queue=queue)
    reminded = crud.send_expiry_reminders(db, window, queue=queue)
    return schemas.GrantSweepResponse(expired=expired, reminded=reminded)
