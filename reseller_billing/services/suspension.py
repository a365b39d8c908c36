"""
Suspension Controller
=====================

PURPOSE:
    Moves resellers in and out of suspended states and hands the bulk
    config work to the ConfigReconciler.

STATE MACHINE (wallet and traffic are independent axes):
    active -> suspended_wallet    balance <= suspension threshold
    active -> suspended_traffic   usage >= quota + grace, or window expired
    active -> suspended           manual
    suspended_* -> active         reactivate(), when eligible again

    Entering a suspended state persists the status, writes an audit record
    and disables every active config tagged with the cycle marker and the
    reason. Leaving it re-enables only configs flagged for that same reason.
    Suspending a reseller already in the target state changes nothing,
    except that configs a failed earlier disable pass left active are
    disabled on the next cycle.

CONFIGURATION:
    suspension_threshold, traffic_grace_percent, traffic_grace_bytes come
    from the injected BillingConfig.
"""

import logging
from datetime import datetime, time, timezone
from typing import Optional

from sqlalchemy.engine import Engine

from reseller_billing.config import BillingConfig
from reseller_billing.core.database import get_session_context
from reseller_billing.core.errors import ResellerNotFoundError
from reseller_billing.models.reseller import (
    STATUS_FOR_REASON,
    Reseller,
    ResellerStatus,
    SuspensionReason,
    as_utc,
    utcnow,
)
from reseller_billing.services.audit import AuditSink
from reseller_billing.services.config_reconciler import ConfigReconciler, ReenableSummary
from reseller_billing.services.usage_aggregator import UsageAggregator

logger = logging.getLogger(__name__)

QUOTA_EXHAUSTED = "reseller_quota_exhausted"
WINDOW_EXPIRED = "reseller_window_expired"


def cycle_marker_for(reference_time: Optional[datetime] = None) -> str:
    """Minute-truncated UTC ISO timestamp identifying one scheduler tick."""
    ref = reference_time or utcnow()
    if ref.tzinfo is None:
        ref = ref.replace(tzinfo=timezone.utc)
    return ref.astimezone(timezone.utc).replace(second=0, microsecond=0).isoformat()


def traffic_limit_with_grace(limit_bytes: int, grace_percent: float, grace_bytes: int) -> int:
    return limit_bytes + max(int(limit_bytes * (grace_percent / 100)), grace_bytes)


def is_window_valid(reseller: Reseller, now: Optional[datetime] = None) -> bool:
    """No end date means unlimited. Otherwise valid from start until the start of the end day."""
    ends_at = as_utc(reseller.window_ends_at)
    if ends_at is None:
        return True
    starts_at = as_utc(reseller.window_starts_at)
    if starts_at is None:
        return False
    now = as_utc(now) or utcnow()
    end_of_window = datetime.combine(ends_at.date(), time.min, tzinfo=ends_at.tzinfo)
    return starts_at <= now < end_of_window


class SuspensionController:
    def __init__(
        self,
        config: BillingConfig,
        reconciler: ConfigReconciler,
        audit: Optional[AuditSink] = None,
        aggregator: Optional[UsageAggregator] = None,
        engine: Optional[Engine] = None,
    ):
        self.config = config
        self.reconciler = reconciler
        self.audit = audit or AuditSink(engine)
        self.aggregator = aggregator or UsageAggregator()
        self._engine = engine

    # ------------------------------------------------------------------
    # Wallet axis
    # ------------------------------------------------------------------

    def should_suspend_wallet(self, reseller: Reseller, balance: Optional[int] = None) -> bool:
        balance = reseller.wallet_balance if balance is None else balance
        return (
            balance <= self.config.suspension_threshold
            and reseller.status != ResellerStatus.SUSPENDED_WALLET.value
        )

    def is_wallet_eligible(self, reseller: Reseller) -> bool:
        return reseller.wallet_balance > self.config.suspension_threshold

    # ------------------------------------------------------------------
    # Traffic axis
    # ------------------------------------------------------------------

    def traffic_exceeded(self, reseller: Reseller) -> bool:
        limit = traffic_limit_with_grace(
            reseller.traffic_total_bytes,
            self.config.traffic_grace_percent,
            self.config.traffic_grace_bytes,
        )
        return reseller.traffic_used_bytes >= limit

    def is_traffic_eligible(self, reseller: Reseller, now: Optional[datetime] = None) -> bool:
        # Same grace allowance as the disable side
        return not self.traffic_exceeded(reseller) and is_window_valid(reseller, now)

    def evaluate_traffic(self, reseller_id: int, now: Optional[datetime] = None) -> Optional[str]:
        """Refresh a traffic reseller's usage and suspend it when over quota or out of window.

        Returns the suspension reason when a suspension happened. A reseller
        already in ``suspended_traffic`` that still has active configs gets
        them disabled again.
        """
        now = now or utcnow()
        with get_session_context(self._engine) as session:
            row = session.get(Reseller, reseller_id)
            if row is None:
                raise ResellerNotFoundError(reseller_id)
            if not row.is_traffic():
                return None

            total = self.aggregator.total_usage_bytes(session, row.id)
            row.traffic_used_bytes = max(0, total - row.admin_forgiven_bytes)
            row.updated_at = now

            detail = None
            if self.traffic_exceeded(row):
                detail = QUOTA_EXHAUSTED
            elif not is_window_valid(row, now):
                detail = WINDOW_EXPIRED
            changed = False
            if detail and row.status == ResellerStatus.ACTIVE.value:
                changed = self.mark_suspended(row, SuspensionReason.TRAFFIC)
            session.add(row)
            session.commit()

        if detail is None:
            logger.debug(
                "traffic_within_limits reseller_id=%s used=%d total=%d",
                row.id, row.traffic_used_bytes, row.traffic_total_bytes,
            )
            return None
        if not changed:
            self.enforce_suspended(row, SuspensionReason.TRAFFIC, cycle_marker_for(now), detail)
            return None

        self.on_suspended(
            row,
            SuspensionReason.TRAFFIC,
            cycle_marker_for(now),
            detail,
            {
                "traffic_used_bytes": row.traffic_used_bytes,
                "traffic_total_bytes": row.traffic_total_bytes,
                "window_ends_at": row.window_ends_at.isoformat() if row.window_ends_at else None,
            },
        )
        return detail

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def mark_suspended(self, row: Reseller, reason: SuspensionReason) -> bool:
        """Set the suspended status on an attached row. The caller commits."""
        target = STATUS_FOR_REASON[reason]
        if row.status == target.value:
            return False
        row.status = target.value
        row.updated_at = utcnow()
        return True

    def on_suspended(
        self,
        reseller: Reseller,
        reason: SuspensionReason,
        cycle_marker: str,
        detail: str,
        meta: Optional[dict] = None,
    ) -> int:
        """Post-commit side effects of a suspension: audit, then bulk disable."""
        logger.warning(
            "reseller_suspended reseller_id=%s reason=%s detail=%s cycle=%s",
            reseller.id, reason.value, detail, cycle_marker,
        )
        self.audit.record_audit(
            f"reseller_suspended_{reason.value}",
            "reseller",
            reseller.id,
            reason=detail,
            meta={"cycle_started_at": cycle_marker, **(meta or {})},
        )
        return self.reconciler.disable_all(reseller, cycle_marker, reason, detail)

    def enforce_suspended(
        self,
        reseller: Reseller,
        reason: SuspensionReason,
        cycle_marker: str,
        detail: Optional[str] = None,
    ) -> int:
        """Disable configs left active on a reseller already suspended for *reason*.

        Catches up after a bulk disable that failed once the status change had
        committed. Returns the number of configs disabled locally.
        """
        if reseller.status != STATUS_FOR_REASON[reason].value:
            return 0
        if not self.reconciler.has_active_configs(reseller.id):
            return 0
        logger.warning(
            "suspended_reseller_has_active_configs reseller_id=%s reason=%s cycle=%s",
            reseller.id, reason.value, cycle_marker,
        )
        return self.reconciler.disable_all(reseller, cycle_marker, reason, detail)

    def suspend(
        self,
        reseller_id: int,
        reason: SuspensionReason,
        detail: str,
        reference_time: Optional[datetime] = None,
    ) -> bool:
        """Standalone suspension (manual or externally triggered). False if already in that state."""
        with get_session_context(self._engine) as session:
            row = session.get(Reseller, reseller_id)
            if row is None:
                raise ResellerNotFoundError(reseller_id)
            changed = self.mark_suspended(row, reason)
            if changed:
                session.add(row)
                session.commit()

        if not changed:
            logger.info("reseller_already_suspended reseller_id=%s reason=%s", reseller_id, reason.value)
            return False
        self.on_suspended(row, reason, cycle_marker_for(reference_time), detail)
        return True

    def suspend_manual(self, reseller_id: int, detail: str = "admin_action") -> bool:
        return self.suspend(reseller_id, SuspensionReason.MANUAL, detail)

    def is_eligible(self, reseller: Reseller, reason: SuspensionReason, now: Optional[datetime] = None) -> bool:
        if reason == SuspensionReason.WALLET:
            return self.is_wallet_eligible(reseller)
        if reason == SuspensionReason.TRAFFIC:
            return self.is_traffic_eligible(reseller, now)
        return True

    def reactivate(
        self,
        reseller_id: int,
        reason: SuspensionReason,
        now: Optional[datetime] = None,
    ) -> Optional[ReenableSummary]:
        """Leave the *reason* suspension when eligible, then re-enable that reason's configs.

        An already-active reseller still gets a re-enable pass, which retries
        configs whose earlier remote enable failed. Returns None when the
        reseller is not eligible or sits in a different suspension.
        """
        target = STATUS_FOR_REASON[reason]
        with get_session_context(self._engine) as session:
            row = session.get(Reseller, reseller_id)
            if row is None:
                raise ResellerNotFoundError(reseller_id)

            if row.status not in (target.value, ResellerStatus.ACTIVE.value):
                logger.info(
                    "reactivate_skip_other_suspension reseller_id=%s status=%s reason=%s",
                    row.id, row.status, reason.value,
                )
                return None
            if not self.is_eligible(row, reason, now):
                logger.info("reactivate_skip_not_eligible reseller_id=%s reason=%s", row.id, reason.value)
                return None

            was_suspended = row.status == target.value
            if was_suspended:
                row.status = ResellerStatus.ACTIVE.value
                row.updated_at = utcnow()
                session.add(row)
                session.commit()

        if was_suspended:
            logger.info("reseller_reactivated reseller_id=%s reason=%s", row.id, reason.value)
            self.audit.record_audit(
                "reseller_reactivated",
                "reseller",
                row.id,
                reason=f"{reason.value}_recovered",
                meta={"wallet_balance": row.wallet_balance, "previous_status": target.value},
            )
        return self.reconciler.reenable_all(row, reason)
