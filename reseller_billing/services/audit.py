"""
Audit / Event Sink
==================

Fire-and-forget writers for ``audit_logs`` and ``reseller_config_events``.
Each record is written in its own short session so a failure here never
rolls back, or blocks, the billing transaction that triggered it. Failures
are logged and dropped.
"""

import logging
from typing import Any, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from reseller_billing.core.database import get_session_context
from reseller_billing.models.audit import AuditLog, ResellerConfigEvent

logger = logging.getLogger(__name__)


class AuditSink:
    def __init__(self, engine: Optional[Engine] = None) -> None:
        self._engine = engine

    def record_event(self, config_id: int, type: str, meta: Optional[dict[str, Any]] = None) -> None:
        try:
            with get_session_context(self._engine) as session:
                session.add(ResellerConfigEvent(reseller_config_id=config_id, type=type, meta=meta or {}))
                session.commit()
        except SQLAlchemyError as exc:
            logger.warning("config_event_write_failed config_id=%s type=%s error=%s", config_id, type, exc)

    def record_audit(
        self,
        action: str,
        target_type: str,
        target_id: Optional[int],
        reason: Optional[str] = None,
        meta: Optional[dict[str, Any]] = None,
    ) -> None:
        try:
            with get_session_context(self._engine) as session:
                session.add(
                    AuditLog(
                        action=action,
                        target_type=target_type,
                        target_id=target_id,
                        reason=reason,
                        meta=meta or {},
                    )
                )
                session.commit()
        except SQLAlchemyError as exc:
            logger.warning(
                "audit_write_failed action=%s target=%s:%s error=%s",
                action, target_type, target_id, exc,
            )
