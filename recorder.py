import json
from typing import Any, Optional
from sqlalchemy import func, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from clock import Clock, utcnow
from database import insert_ignore
from logging_config import logger
from models import AnalyticsDaily, AuditLog, Shortcut, WebhookExecution

EXECUTION_STATUSES = ("success", "failed", "pending", "unauthorized")


def analytics_update(webhook_id: str, day, success: bool, response_time_ms: float):
    """UPDATE folding one execution into a day's row.

    The average must be assigned before trigger_count: MySQL evaluates SET
    left to right and would otherwise divide by the already incremented count.
    SQLite and PostgreSQL read the pre-update row for every assignment.
    """
    counter = AnalyticsDaily.success_count if success else AnalyticsDaily.failure_count
    return (
        update(AnalyticsDaily)
        .where(AnalyticsDaily.webhook_id == webhook_id, AnalyticsDaily.date == day)
        .ordered_values(
            (
                AnalyticsDaily.avg_response_time_ms,
                (func.coalesce(AnalyticsDaily.avg_response_time_ms, 0.0) * AnalyticsDaily.trigger_count
                 + float(response_time_ms))
                / (AnalyticsDaily.trigger_count + 1),
            ),
            (AnalyticsDaily.trigger_count, AnalyticsDaily.trigger_count + 1),
            (counter, counter + 1),
        )
        .execution_options(synchronize_session=False)
    )


class ExecutionRecorder:
    """Writes the durable trail of every trigger attempt.

    ``record`` and ``update_analytics`` leave committing to the caller so an
    execution row and its counters land together. ``audit`` commits on its
    own and never raises.
    """

    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    def record(
        self,
        shortcut: Shortcut,
        status: str,
        payload: Any = None,
        error_message: Optional[str] = None,
        notification_id: Optional[str] = None,
        external_id: Optional[str] = None,
        response_time_ms: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        triggered_by: Optional[str] = None,
        api_key_id: Optional[str] = None,
    ) -> WebhookExecution:
        if status not in EXECUTION_STATUSES:
            raise ValueError(f"Unknown execution status: {status}")

        now = self.clock()
        execution = WebhookExecution(
            webhook_id=shortcut.webhook_id,
            shortcut_id=shortcut.shortcut_id,
            device_id=shortcut.device_id,
            user_id=shortcut.user_id,
            triggered_by=triggered_by,
            payload=json.dumps(payload) if payload is not None else None,
            status=status,
            error_message=error_message,
            notification_id=notification_id,
            external_id=external_id,
            executed_at=now,
            response_time_ms=response_time_ms,
            ip_address=ip_address,
            user_agent=user_agent,
            api_key_id=api_key_id,
        )
        self.db.add(execution)

        if status == "success":
            self._count_trigger(shortcut, now)
        return execution

    def _count_trigger(self, shortcut: Shortcut, now) -> None:
        # Conditional increment: a concurrent trigger cannot carry the count past max_uses
        result = self.db.execute(
            update(Shortcut)
            .where(
                Shortcut.id == shortcut.id,
                or_(Shortcut.max_uses.is_(None), Shortcut.trigger_count < Shortcut.max_uses),
            )
            .values(trigger_count=Shortcut.trigger_count + 1, last_triggered=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning(f"Usage cap reached concurrently for webhook {shortcut.webhook_id[:8]}...")
        self.db.expire(shortcut, ["trigger_count", "last_triggered"])

    def update_analytics(self, webhook_id: str, success: bool, response_time_ms: float) -> None:
        """Fold one execution into today's running totals."""
        day = self.clock().date()
        insert_ignore(
            self.db,
            AnalyticsDaily,
            {"webhook_id": webhook_id, "date": day, "trigger_count": 0, "success_count": 0, "failure_count": 0},
            ["webhook_id", "date"],
        )
        self.db.execute(analytics_update(webhook_id, day, success, response_time_ms))

    def record_unauthorized(
        self,
        shortcut: Shortcut,
        reason: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Execution row and counter for a rejected attempt on an existing webhook."""
        self.record(
            shortcut,
            "unauthorized",
            error_message=reason,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        day = self.clock().date()
        insert_ignore(
            self.db,
            AnalyticsDaily,
            {"webhook_id": shortcut.webhook_id, "date": day, "trigger_count": 0, "success_count": 0,
             "failure_count": 0, "unauthorized_count": 0},
            ["webhook_id", "date"],
        )
        self.db.execute(
            update(AnalyticsDaily)
            .where(AnalyticsDaily.webhook_id == shortcut.webhook_id, AnalyticsDaily.date == day)
            .values(unauthorized_count=AnalyticsDaily.unauthorized_count + 1)
            .execution_options(synchronize_session=False)
        )

    def audit(
        self,
        user_id: Optional[str],
        action: str,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[AuditLog]:
        entry = AuditLog(
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details or {},
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=self.clock(),
        )
        try:
            self.db.add(entry)
            self.db.commit()
            return entry
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to write audit entry {action} for {resource_type}:{resource_id}: {e}")
            return None
