"""Database-backed notification queue with at-least-once delivery.

There is no background worker. Jobs sit in ``notification_jobs`` until some
caller runs :meth:`NotificationQueue.process_batch`; each selected job is
claimed with a conditional UPDATE, delivered through a
:class:`NotificationDispatcher` and then marked COMPLETED, RETRYING (with
exponential back-off) or FAILED.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models
from ..config import Settings, get_settings
from ..database import utcnow
from ..errors import QueueDeliveryError, ValidationError
from .email_service import AlertEmailService
from .push_service import PushService

logger = structlog.get_logger(__name__)

ELIGIBLE_STATUSES = (models.NotificationJobStatus.PENDING, models.NotificationJobStatus.RETRYING)
FINISHED_STATUSES = (models.NotificationJobStatus.COMPLETED, models.NotificationJobStatus.FAILED)

STATUS_MESSAGES = {
    "approved": "Your healthcare access request has been approved",
    "denied": "Your healthcare access request has been denied",
    "revoked": "Healthcare access has been revoked",
    "expired": "Healthcare access has expired",
}


@dataclass
class BatchResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    # Ids of non-alert jobs that ended FAILED in this batch
    exhausted: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors": list(self.errors),
        }


class NotificationDispatcher:
    """Routes a job to its delivery channel(s) by type."""

    def __init__(self, push: Optional[PushService] = None, email: Optional[AlertEmailService] = None):
        self.push = push or PushService()
        self.email = email or AlertEmailService()

    async def deliver(self, job: models.NotificationJob) -> None:
        job_type = models.NotificationJobType(job.type)
        payload = job.payload or {}

        if job_type in (models.NotificationJobType.AUTHORIZATION_REQUEST,
                        models.NotificationJobType.STATUS_UPDATE,
                        models.NotificationJobType.REMINDER):
            priority = "high" if (job.priority or 0) >= models.JobPriority.HIGH else "normal"
            await self.push.send(job.device_tokens, payload, priority=priority)
            return

        if job_type == models.NotificationJobType.SYSTEM_ALERT:
            await self.push.send(job.device_tokens, payload, priority="high")
            if self.email.enabled:
                await self.email.send_system_alert(payload.get("title", "System alert"),
                                                   payload.get("body", ""), payload.get("data"))
            return

        raise QueueDeliveryError(f"Unknown notification type: {job.type}")


class NotificationQueue:
    def __init__(self, dispatcher: Optional[NotificationDispatcher] = None,
                 settings: Optional[Settings] = None, clock: Callable[[], datetime] = utcnow):
        self.settings = settings or get_settings()
        self._dispatcher = dispatcher
        self.clock = clock

    @property
    def dispatcher(self) -> NotificationDispatcher:
        # Built lazily so enqueue-only callers never construct delivery clients
        if self._dispatcher is None:
            self._dispatcher = NotificationDispatcher()
        return self._dispatcher

    # ==================== Enqueue ====================

    def enqueue(
        self,
        db: Session,
        job_type: models.NotificationJobType,
        recipient_id: int,
        payload: Dict[str, Any],
        *,
        priority: int = models.JobPriority.NORMAL,
        max_retries: Optional[int] = None,
        delay_seconds: int = 0,
        expires_in_hours: Optional[float] = None,
        device_tokens: Optional[List[str]] = None,
        recipient_type: str = "patient",
        commit: bool = True,
    ) -> models.NotificationJob:
        """Insert a PENDING job.

        With ``commit=False`` the job is only flushed, so the caller can commit
        it in the same transaction as the change that triggered it.
        """
        if max_retries is None:
            max_retries = self.settings.queue_default_max_retries
        if expires_in_hours is None:
            expires_in_hours = self.settings.queue_default_expires_hours
        if not 0 <= max_retries <= 10:
            raise ValidationError("maxRetries must be between 0 and 10")
        if delay_seconds < 0:
            raise ValidationError("delaySeconds cannot be negative")
        if expires_in_hours <= 0:
            raise ValidationError("expiresInHours must be positive")
        if not payload or not payload.get("title") or not payload.get("body"):
            raise ValidationError("Notification payload requires title and body")

        now = self.clock()
        job = models.NotificationJob(
            type=models.NotificationJobType(job_type),
            status=models.NotificationJobStatus.PENDING,
            priority=int(priority),
            recipient_id=recipient_id,
            recipient_type=recipient_type,
            device_tokens=list(device_tokens or []),
            payload=payload,
            retry_count=0,
            max_retries=max_retries,
            scheduled_at=now + timedelta(seconds=delay_seconds),
            expires_at=now + timedelta(hours=expires_in_hours),
            error_history=[],
            created_at=now,
            updated_at=now,
        )
        db.add(job)
        if commit:
            db.commit()
            db.refresh(job)
        else:
            db.flush()
        logger.info("job_enqueued", job_id=job.id, type=job.type.value, priority=job.priority,
                    recipient_id=recipient_id)
        return job

    def enqueue_authorization_request(self, db: Session, recipient_id: int, grant_id: int,
                                      organization_name: str, practitioner_name: Optional[str] = None,
                                      is_urgent: bool = False, device_tokens: Optional[List[str]] = None,
                                      commit: bool = True) -> models.NotificationJob:
        suffix = f" for Dr. {practitioner_name}" if practitioner_name else ""
        payload = {
            "title": "Healthcare Access Request",
            "body": f"{organization_name} is requesting access to your medical records{suffix}",
            "icon": "/icons/health-request.png",
            "badge": "/icons/badge.png",
            "data": {"type": "authorization_request", "grantId": grant_id, "urgent": is_urgent},
            "actions": [
                {"action": "approve", "title": "Approve", "icon": "/icons/approve.png"},
                {"action": "deny", "title": "Deny", "icon": "/icons/deny.png"},
                {"action": "view", "title": "View Details", "icon": "/icons/view.png"},
            ],
        }
        return self.enqueue(
            db, models.NotificationJobType.AUTHORIZATION_REQUEST, recipient_id, payload,
            priority=models.JobPriority.URGENT if is_urgent else models.JobPriority.HIGH,
            expires_in_hours=48,
            device_tokens=device_tokens,
            commit=commit,
        )

    def enqueue_status_update(self, db: Session, recipient_id: int, grant_id: int, status: str,
                              device_tokens: Optional[List[str]] = None,
                              commit: bool = True) -> models.NotificationJob:
        if status not in STATUS_MESSAGES:
            raise ValidationError(f"Unknown status update '{status}'")
        payload = {
            "title": "Access Status Update",
            "body": STATUS_MESSAGES[status],
            "icon": "/icons/status-update.png",
            "data": {"type": "status_update", "grantId": grant_id, "status": status},
        }
        return self.enqueue(
            db, models.NotificationJobType.STATUS_UPDATE, recipient_id, payload,
            priority=models.JobPriority.NORMAL,
            expires_in_hours=24,
            device_tokens=device_tokens,
            commit=commit,
        )

    def enqueue_expiry_reminder(self, db: Session, recipient_id: int, grant_id: int,
                                organization_name: str, expires_at: datetime,
                                device_tokens: Optional[List[str]] = None,
                                commit: bool = True) -> models.NotificationJob:
        payload = {
            "title": "Access Expiring Soon",
            "body": f"Access granted to {organization_name} expires at {expires_at.strftime('%Y-%m-%d %H:%M UTC')}",
            "icon": "/icons/reminder.png",
            "data": {"type": "expiry_reminder", "grantId": grant_id, "expiresAt": expires_at.isoformat()},
        }
        # Pointless once the grant has expired
        remaining_hours = max((expires_at - self.clock()).total_seconds() / 3600, 0.1)
        return self.enqueue(
            db, models.NotificationJobType.REMINDER, recipient_id, payload,
            priority=models.JobPriority.NORMAL,
            expires_in_hours=remaining_hours,
            device_tokens=device_tokens,
            commit=commit,
        )

    def enqueue_system_alert(self, db: Session, title: str, body: str,
                             data: Optional[Dict[str, Any]] = None, recipient_id: int = 0,
                             commit: bool = True) -> models.NotificationJob:
        payload = {"title": title, "body": body, "data": data or {}}
        return self.enqueue(
            db, models.NotificationJobType.SYSTEM_ALERT, recipient_id, payload,
            priority=models.JobPriority.URGENT,
            recipient_type="operator",
            commit=commit,
        )

    # ==================== Selection & state changes ====================

    def get_pending_jobs(self, db: Session, limit: int = 10,
                         now: Optional[datetime] = None) -> List[models.NotificationJob]:
        now = now or self.clock()
        return (
            db.query(models.NotificationJob)
            .filter(
                models.NotificationJob.status.in_(ELIGIBLE_STATUSES),
                models.NotificationJob.scheduled_at <= now,
                or_(models.NotificationJob.next_retry_at.is_(None),
                    models.NotificationJob.next_retry_at <= now),
                or_(models.NotificationJob.expires_at.is_(None),
                    models.NotificationJob.expires_at > now),
            )
            .order_by(models.NotificationJob.priority.desc(),
                      models.NotificationJob.scheduled_at.asc(),
                      models.NotificationJob.id.asc())
            .limit(limit)
            .all()
        )

    def claim(self, db: Session, job: models.NotificationJob, now: datetime) -> bool:
        """Move the job to PROCESSING unless another batch got there first."""
        claimed = (
            db.query(models.NotificationJob)
            .filter(models.NotificationJob.id == job.id,
                    models.NotificationJob.status.in_(ELIGIBLE_STATUSES))
            .update({
                models.NotificationJob.status: models.NotificationJobStatus.PROCESSING,
                models.NotificationJob.started_at: now,
                models.NotificationJob.updated_at: now,
            }, synchronize_session=False)
        )
        db.commit()
        if claimed != 1:
            return False
        db.refresh(job)
        return True

    def mark_completed(self, db: Session, job: models.NotificationJob, now: datetime) -> None:
        job.status = models.NotificationJobStatus.COMPLETED
        job.completed_at = now
        job.updated_at = now
        db.commit()

    def backoff_seconds(self, retry_count: int) -> int:
        return min(2 ** retry_count, self.settings.queue_max_backoff_seconds)

    def mark_failed(self, db: Session, job: models.NotificationJob, error: str, now: datetime) -> None:
        history = list(job.error_history or [])
        history.append({"timestamp": now.isoformat(), "error": error, "attempt": job.retry_count + 1})
        # Reassign: in-place mutation of a JSON column is not tracked
        job.error_history = history
        job.last_error = error
        job.updated_at = now

        if job.retry_count < job.max_retries:
            job.status = models.NotificationJobStatus.RETRYING
            job.next_retry_at = now + timedelta(seconds=self.backoff_seconds(job.retry_count))
            job.retry_count = job.retry_count + 1
        else:
            job.status = models.NotificationJobStatus.FAILED
            job.completed_at = now
        db.commit()

    # ==================== Processing ====================

    async def process_batch(self, db: Session, limit: Optional[int] = None) -> BatchResult:
        """Deliver up to ``limit`` due jobs. Job failures are recorded, never raised."""
        limit = limit or self.settings.queue_batch_size
        if not 1 <= limit <= self.settings.queue_max_batch_size:
            raise ValidationError(f"batchSize must be between 1 and {self.settings.queue_max_batch_size}")

        result = BatchResult()
        try:
            jobs = self.get_pending_jobs(db, limit, now=self.clock())
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("queue_fetch_failed", error=str(e))
            result.errors.append(f"Fetching due jobs: {e.__class__.__name__}: {e}")
            return result
        if not jobs:
            logger.info("queue_empty")
            return result

        for job in jobs:
            job_id = job.id
            try:
                await self._process_job(db, job, result)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error("job_bookkeeping_failed", job_id=job_id, error=str(e))
                result.errors.append(f"Job {job_id}: {e.__class__.__name__}: {e}")

        logger.info("queue_batch_complete", **result.to_dict())
        return result

    async def _process_job(self, db: Session, job: models.NotificationJob, result: BatchResult) -> None:
        if not self.claim(db, job, self.clock()):
            logger.info("job_claim_lost", job_id=job.id)
            return
        result.processed += 1
        try:
            await asyncio.wait_for(self.dispatcher.deliver(job),
                                   timeout=self.settings.delivery_timeout_seconds)
        except asyncio.TimeoutError:
            self._record_failure(db, job, "Delivery timed out", result)
        except QueueDeliveryError as e:
            self._record_failure(db, job, e.message, result)
        except Exception as e:
            logger.exception("job_delivery_crashed", job_id=job.id)
            self._record_failure(db, job, str(e) or e.__class__.__name__, result)
        else:
            self.mark_completed(db, job, self.clock())
            result.succeeded += 1
            logger.info("job_completed", job_id=job.id, type=job.type.value)

    def _record_failure(self, db: Session, job: models.NotificationJob, error: str, result: BatchResult) -> None:
        self.mark_failed(db, job, error, self.clock())
        result.failed += 1
        result.errors.append(f"Job {job.id}: {error}")
        if job.status == models.NotificationJobStatus.FAILED and job.type != models.NotificationJobType.SYSTEM_ALERT:
            result.exhausted.append(job.id)
        logger.warning("job_failed", job_id=job.id, error=error, status=job.status.value,
                       retry_count=job.retry_count)

    # ==================== Maintenance ====================

    def cleanup(self, db: Session, older_than_hours: int = 24) -> int:
        """Delete COMPLETED and FAILED jobs finished before the cutoff."""
        cutoff = self.clock() - timedelta(hours=older_than_hours)
        deleted = (
            db.query(models.NotificationJob)
            .filter(models.NotificationJob.status.in_(FINISHED_STATUSES),
                    models.NotificationJob.completed_at < cutoff)
            .delete(synchronize_session=False)
        )
        db.commit()
        logger.info("queue_cleanup", deleted=deleted, older_than_hours=older_than_hours)
        return deleted

    def get_stats(self, db: Session) -> Dict[str, int]:
        rows = (
            db.query(models.NotificationJob.status, func.count(models.NotificationJob.id))
            .group_by(models.NotificationJob.status)
            .all()
        )
        stats = {status.value: 0 for status in models.NotificationJobStatus}
        for status, count in rows:
            stats[models.NotificationJobStatus(status).value] = count
        stats["total"] = sum(stats.values())
        return stats


@lru_cache()
def get_notification_queue() -> NotificationQueue:
    """Shared queue for the API layer; tests override this dependency."""
    return NotificationQueue()
