"""
Charge Scheduler
================

PURPOSE:
    The periodic passes driven by cron / the CLI:
      - run_charge_cycle:        hourly wallet charging for every wallet reseller
      - run_reenable_pass:       re-enable configs of resellers that recovered
      - run_traffic_enforcement: suspend traffic resellers over quota / window
      - diagnose:                read-only billing picture of one reseller

SAFEGUARDS (charge cycle):
    - Global switch: nothing runs while charging is disabled.
    - Idempotency window: a reseller whose last cycle charge is younger than
      ``charge_idempotency_seconds`` is skipped (reason recent_snapshot)
      unless forced or dry-run.
    - Per-reseller lock ``wallet_charge:reseller:{id}``: a pass that finds
      it held skips the reseller (reason concurrent_execution).
    - One reseller failing never stops the pass for the others.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy.engine import Engine
from sqlmodel import col, select

from reseller_billing.config import BillingConfig
from reseller_billing.core.database import get_session_context
from reseller_billing.core.errors import ResellerNotFoundError
from reseller_billing.core.structured_logging import bind_cycle, bind_reseller
from reseller_billing.models.reseller import (
    Reseller,
    ResellerStatus,
    ResellerType,
    SuspensionReason,
    as_utc,
    utcnow,
)
from reseller_billing.services.locks import TTLLockRegistry
from reseller_billing.services.suspension import SuspensionController, cycle_marker_for, is_window_valid
from reseller_billing.services.wallet_charging import (
    CHARGED,
    ChargeResult,
    WalletChargingService,
    calculate_cost,
)

logger = logging.getLogger(__name__)


@dataclass
class CycleSummary:
    cycle_marker: Optional[str] = None
    charged: int = 0
    skipped: int = 0
    lock_failed: int = 0
    suspended: int = 0
    errors: int = 0
    total_cost: int = 0
    results: Dict[int, ChargeResult] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            "cycle_marker": self.cycle_marker,
            "charged": self.charged,
            "skipped": self.skipped,
            "lock_failed": self.lock_failed,
            "suspended": self.suspended,
            "errors": self.errors,
            "total_cost": self.total_cost,
        }


@dataclass
class ReenablePassSummary:
    resellers: int = 0
    reactivated: int = 0
    enabled: int = 0
    failed: int = 0
    held: int = 0


class ChargeScheduler:
    def __init__(
        self,
        config: BillingConfig,
        charging: WalletChargingService,
        suspension: SuspensionController,
        locks: Optional[TTLLockRegistry] = None,
        engine: Optional[Engine] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.charging = charging
        self.suspension = suspension
        self.locks = locks or charging.locks
        self._engine = engine
        self._clock = clock

    def _resellers(self, reseller_type: ResellerType, statuses=None, reseller_id: Optional[int] = None) -> list[Reseller]:
        stmt = select(Reseller).where(Reseller.type == reseller_type.value).order_by(Reseller.id)
        if statuses:
            stmt = stmt.where(col(Reseller.status).in_([s.value for s in statuses]))
        if reseller_id is not None:
            stmt = stmt.where(Reseller.id == reseller_id)
        with get_session_context(self._engine) as session:
            return list(session.exec(stmt).all())

    # ------------------------------------------------------------------
    # Charge cycle
    # ------------------------------------------------------------------

    def run_charge_cycle(
        self,
        reseller_id: Optional[int] = None,
        dry_run: bool = False,
        force: bool = False,
    ) -> CycleSummary:
        now = self._clock()
        summary = CycleSummary(cycle_marker=cycle_marker_for(now))

        if not self.config.charge_enabled:
            logger.info("wallet_charge_cycle_disabled")
            return summary

        with bind_cycle(summary.cycle_marker):
            resellers = self._resellers(ResellerType.WALLET, reseller_id=reseller_id)
            logger.info(
                "wallet_charge_cycle_started resellers=%d dry_run=%s force=%s",
                len(resellers), dry_run, force,
            )
            for reseller in resellers:
                with bind_reseller(reseller.id):
                    try:
                        result = self._charge_one(reseller, now, dry_run, force)
                    except Exception:
                        logger.exception("wallet_charge_reseller_failed reseller_id=%s", reseller.id)
                        summary.errors += 1
                        continue
                self._tally(summary, reseller.id, result)

            logger.info("wallet_charge_cycle_finished %s", summary.as_dict())
        return summary

    def _charge_one(self, reseller: Reseller, now: datetime, dry_run: bool, force: bool) -> ChargeResult:
        if not force and not dry_run:
            with get_session_context(self._engine) as session:
                recent = self.charging.snapshots.latest_cycle_charge(session, reseller.id)
            if recent is not None:
                age = (now - as_utc(recent.measured_at)).total_seconds()
                if age < self.config.charge_idempotency_seconds:
                    logger.info(
                        "wallet_charge_skip_recent_snapshot reseller_id=%s age_s=%.1f window_s=%d",
                        reseller.id, age, self.config.charge_idempotency_seconds,
                    )
                    return ChargeResult.skipped("recent_snapshot", cycle_marker=cycle_marker_for(now))

        lock_key = f"wallet_charge:reseller:{reseller.id}"
        if not self.locks.acquire(lock_key, self.config.charge_lock_ttl_seconds):
            logger.warning("wallet_charge_lock_failed reseller_id=%s", reseller.id)
            return ChargeResult(status="lock_failed", reason="concurrent_execution")
        try:
            return self.charging.charge_for_reseller(reseller, reference_time=now, dry_run=dry_run)
        finally:
            self.locks.release(lock_key)

    @staticmethod
    def _tally(summary: CycleSummary, reseller_id: int, result: ChargeResult) -> None:
        summary.results[reseller_id] = result
        if result.status == "lock_failed":
            summary.lock_failed += 1
        elif result.status == CHARGED:
            summary.charged += 1
            summary.total_cost += result.cost
        else:
            summary.skipped += 1
        if result.suspended:
            summary.suspended += 1

    # ------------------------------------------------------------------
    # Re-enable pass
    # ------------------------------------------------------------------

    def run_reenable_pass(self) -> ReenablePassSummary:
        """Reactivate recovered resellers and retry configs left disabled by failed enables."""
        summary = ReenablePassSummary()
        if not self.config.auto_reenable_enabled:
            logger.info("reenable_pass_disabled")
            return summary

        now = self._clock()
        candidates = [
            (r, SuspensionReason.WALLET)
            for r in self._resellers(
                ResellerType.WALLET, [ResellerStatus.ACTIVE, ResellerStatus.SUSPENDED_WALLET]
            )
            if r.wallet_balance > self.config.suspension_threshold
        ] + [
            (r, SuspensionReason.TRAFFIC)
            for r in self._resellers(
                ResellerType.TRAFFIC, [ResellerStatus.ACTIVE, ResellerStatus.SUSPENDED_TRAFFIC]
            )
        ]

        for reseller, reason in candidates:
            was_suspended = reseller.status != ResellerStatus.ACTIVE.value
            with bind_reseller(reseller.id):
                try:
                    result = self.suspension.reactivate(reseller.id, reason, now)
                except Exception:
                    logger.exception("reenable_pass_reseller_failed reseller_id=%s", reseller.id)
                    summary.failed += 1
                    continue
            if result is None:
                continue
            summary.resellers += 1
            if was_suspended:
                summary.reactivated += 1
            summary.enabled += result.success
            summary.failed += result.failed
            summary.held += result.held

        logger.info(
            "reenable_pass_finished resellers=%d reactivated=%d enabled=%d failed=%d held=%d",
            summary.resellers, summary.reactivated, summary.enabled, summary.failed, summary.held,
        )
        return summary

    # ------------------------------------------------------------------
    # Traffic enforcement
    # ------------------------------------------------------------------

    def run_traffic_enforcement(self) -> Dict[int, str]:
        """Evaluate active and traffic-suspended resellers. Returns {reseller_id: reason} for new suspensions."""
        now = self._clock()
        suspended: Dict[int, str] = {}
        with bind_cycle(cycle_marker_for(now)):
            for reseller in self._resellers(
                ResellerType.TRAFFIC, [ResellerStatus.ACTIVE, ResellerStatus.SUSPENDED_TRAFFIC]
            ):
                with bind_reseller(reseller.id):
                    try:
                        reason = self.suspension.evaluate_traffic(reseller.id, now)
                    except Exception:
                        logger.exception("traffic_enforcement_failed reseller_id=%s", reseller.id)
                        continue
                if reason:
                    suspended[reseller.id] = reason
        logger.info("traffic_enforcement_finished suspended=%d", len(suspended))
        return suspended

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def diagnose(self, reseller_id: int) -> dict:
        """Read-only snapshot of everything that drives the next charge decision."""
        reconciler = self.suspension.reconciler
        with get_session_context(self._engine) as session:
            reseller = session.get(Reseller, reseller_id)
            if reseller is None:
                raise ResellerNotFoundError(reseller_id)
            current_total = self.charging.aggregator.total_usage_bytes(session, reseller_id)
            last = self.charging.snapshots.latest(session, reseller_id)
            flagged = {
                reason.value: len(reconciler.flagged_configs(session, reseller_id, reason))
                for reason in SuspensionReason
            }

        delta = current_total if last is None else max(0, current_total - last.total_bytes)
        price = reseller.price_per_gb(self.config.price_per_gb)
        report = {
            "reseller_id": reseller.id,
            "type": reseller.type,
            "status": reseller.status,
            "wallet_balance": reseller.wallet_balance,
            "suspension_threshold": self.config.suspension_threshold,
            "distance_to_threshold": reseller.wallet_balance - self.config.suspension_threshold,
            "current_total_bytes": current_total,
            "last_snapshot_bytes": last.total_bytes if last else None,
            "last_snapshot_at": last.measured_at.isoformat() if last else None,
            "pending_delta_bytes": delta,
            "below_minimum_delta": delta < self.config.minimum_delta_bytes,
            "price_per_gb": price,
            "projected_cost": calculate_cost(delta, price),
            "flagged_configs": flagged,
        }
        if reseller.is_traffic():
            report["traffic_used_bytes"] = reseller.traffic_used_bytes
            report["traffic_total_bytes"] = reseller.traffic_total_bytes
            report["window_valid"] = is_window_valid(reseller)
        return report
