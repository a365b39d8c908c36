"""
Snapshot Store
==============

Append-only access to ``reseller_usage_snapshots``. Only reads and
appends are exposed. Appends are flushed into the caller's session and
committed by the caller, so a snapshot lands in the same transaction as
the wallet debit it accounts for.

Concurrent appends for one reseller are serialized by the caller.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlmodel import Session, col, select

from reseller_billing.models.reseller import utcnow
from reseller_billing.models.usage import ResellerUsageSnapshot, SnapshotMeta

logger = logging.getLogger(__name__)


class SnapshotStore:
    def latest(self, session: Session, reseller_id: int) -> Optional[ResellerUsageSnapshot]:
        """Most recent snapshot by measurement time, or None on the first cycle."""
        stmt = (
            select(ResellerUsageSnapshot)
            .where(ResellerUsageSnapshot.reseller_id == reseller_id)
            .order_by(col(ResellerUsageSnapshot.measured_at).desc(), col(ResellerUsageSnapshot.id).desc())
            .limit(1)
        )
        return session.exec(stmt).first()

    def latest_cycle_charge(self, session: Session, reseller_id: int) -> Optional[ResellerUsageSnapshot]:
        """Most recent snapshot written by a periodic charging pass."""
        stmt = (
            select(ResellerUsageSnapshot)
            .where(ResellerUsageSnapshot.reseller_id == reseller_id)
            .where(col(ResellerUsageSnapshot.cycle_marker).is_not(None))
            .order_by(col(ResellerUsageSnapshot.measured_at).desc(), col(ResellerUsageSnapshot.id).desc())
            .limit(1)
        )
        return session.exec(stmt).first()

    def has_cycle(self, session: Session, reseller_id: int, cycle_marker: str) -> bool:
        stmt = (
            select(ResellerUsageSnapshot.id)
            .where(ResellerUsageSnapshot.reseller_id == reseller_id)
            .where(ResellerUsageSnapshot.cycle_marker == cycle_marker)
        )
        return session.exec(stmt).first() is not None

    def append(
        self,
        session: Session,
        reseller_id: int,
        total_bytes: int,
        meta: SnapshotMeta,
        cycle_marker: Optional[str] = None,
        measured_at: Optional[datetime] = None,
    ) -> ResellerUsageSnapshot:
        """Add a new immutable snapshot and flush it. The caller commits."""
        snapshot = ResellerUsageSnapshot(
            reseller_id=reseller_id,
            total_bytes=total_bytes,
            measured_at=measured_at or utcnow(),
            cycle_marker=cycle_marker,
            meta=meta.model_dump(mode="json", exclude_none=True),
        )
        session.add(snapshot)
        session.flush()
        logger.debug(
            "usage_snapshot_appended reseller_id=%s total_bytes=%d cycle=%s",
            reseller_id, total_bytes, cycle_marker,
        )
        return snapshot
