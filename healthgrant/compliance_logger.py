from datetime import datetime, timezone
from typing import Optional, Any, Dict, Callable
import logging
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from .database import SessionLocal
from . import models


class ComplianceLogger:
	"""Writes grant lifecycle and token events to the AuditLog table.

	Each event uses its own session so an audit row survives (or fails)
	independently of the caller's transaction. A failed write is logged and
	never propagates into the primary operation.
	"""

	def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
		self.session_factory = session_factory
		self.logger = logging.getLogger('healthgrant.audit')

	def log_event(
		self,
		action: models.AuditAction,
		actor_id: Optional[str] = None,
		actor_type: Optional[str] = None,
		category: str = 'GENERAL',
		details: Optional[str] = None,
		severity: str = 'INFO',
		resource_type: Optional[str] = None,
		resource_id: Optional[int] = None,
		old_values: Optional[Dict[str, Any]] = None,
		new_values: Optional[Dict[str, Any]] = None,
		ip_address: Optional[str] = None,
		user_agent: Optional[str] = None,
		**_: Any
	) -> bool:
		"""Store one audit row. Returns False when the write failed."""
		try:
			action_enum = models.AuditAction(action)
		except ValueError:
			self.logger.error(f"Unknown audit action {action!r}, event dropped")
			return False

		db = self.session_factory()
		try:
			db_log = models.AuditLog(
				actor_id=str(actor_id) if actor_id is not None else 'system',
				actor_type=actor_type or 'system',
				action=action_enum,
				category=category or 'GENERAL',
				severity=severity or 'INFO',
				resource_type=resource_type,
				resource_id=resource_id,
				details=details,
				old_values=old_values,
				new_values=new_values,
				ip_address=ip_address,
				user_agent=user_agent,
				timestamp=datetime.now(timezone.utc),
			)
			db.add(db_log)
			db.commit()
			return True
		except SQLAlchemyError as e:
			db.rollback()
			self.logger.error(f"Failed to save audit log to DB: {e}")
			return False
		finally:
			db.close()

	def log_grant_event(
		self,
		action: models.AuditAction,
		grant: models.AuthorizationGrant,
		actor_id: Optional[str] = None,
		actor_type: Optional[str] = None,
		previous_status: Optional[str] = None,
		reason: Optional[str] = None,
		**kwargs: Any
	) -> bool:
		"""Audit a grant state change with before/after status."""
		new_status = grant.status.value if hasattr(grant.status, 'value') else grant.status
		details = f"Grant {grant.id} for patient {grant.subject_id} / organization {grant.organization_id}"
		if reason:
			details = f"{details}: {reason}"
		return self.log_event(
			action=action,
			actor_id=actor_id,
			actor_type=actor_type,
			category='AUTHORIZATION',
			details=details,
			resource_type='authorization_grant',
			resource_id=grant.id,
			old_values={'status': previous_status} if previous_status else None,
			new_values={'status': new_status},
			**kwargs
		)

	def log_security_event(
		self,
		action: models.AuditAction,
		details: str,
		severity: str = 'WARN',
		**kwargs: Any
	) -> bool:
		"""Audit a rejected token or a denied request."""
		return self.log_event(
			action=action,
			category='SECURITY',
			details=details,
			severity=severity,
			**kwargs
		)


# Shared instance used by the routers
compliance_logger = ComplianceLogger()
