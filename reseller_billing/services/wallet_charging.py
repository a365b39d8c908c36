"""
Wallet Charging Service
=======================

PURPOSE:
    Snapshot-delta billing for wallet resellers. Measures the reseller's
    aggregate usage, bills the bytes added since the previous snapshot at
    the reseller's price per GB, debits the wallet and suspends the
    reseller once the balance reaches the suspension threshold.

FLOW (charge_for_reseller):
    1. cycle marker = reference time truncated to the minute (UTC)
    2. non-wallet reseller               -> skipped / not_wallet_type
    3. delta = current total - last snapshot total, clamped at 0
       (no snapshot yet: the whole current total)
    4. delta == 0                        -> skipped / no_usage_delta
       delta < minimum_delta_bytes       -> skipped / below_minimum_delta
       Both still run the suspension check against the current balance
       and write no snapshot.
    5. cost = ceil(delta / 2^30 * price_per_gb), integer arithmetic
    6. dry run                           -> dry_run, nothing persisted
    7. snapshot + debit + suspended status in ONE transaction, rejected
       by the (reseller_id, cycle_marker) unique index when this cycle
       already charged                  -> skipped / cycle_already_charged
    8. after commit: suspension audit and bulk config disable. A reseller
       already in suspended_wallet that still has active configs (an
       earlier disable pass failed) gets them disabled on every attempt.

PERSISTENCE FAILURES:
    Anything other than the duplicate-cycle rejection raises
    ChargePersistenceError. The transaction is rolled back, so a debit
    without its snapshot (or the reverse) is never visible.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from reseller_billing.config import BillingConfig
from reseller_billing.core.database import get_session_context, sqlite_retry
from reseller_billing.core.errors import ChargePersistenceError, ResellerNotFoundError
from reseller_billing.models.audit import BillingLedgerEntry
from reseller_billing.models.reseller import Reseller, ResellerConfig, SuspensionReason, utcnow
from reseller_billing.models.usage import CYCLE_UNIQUE_CONSTRAINT, ResellerUsageSnapshot, SnapshotMeta
from reseller_billing.services.audit import AuditSink
from reseller_billing.services.locks import TTLLockRegistry
from reseller_billing.services.snapshot_store import SnapshotStore
from reseller_billing.services.suspension import SuspensionController, cycle_marker_for
from reseller_billing.services.usage_aggregator import UsageAggregator

logger = logging.getLogger(__name__)

GIB = 1024 ** 3
WALLET_EXHAUSTED = "wallet_balance_exhausted"

# Result statuses
CHARGED = "charged"
SKIPPED = "skipped"
DRY_RUN = "dry_run"


@dataclass(frozen=True)
class ChargeResult:
    """Outcome of one charge attempt. Skips carry a ``reason`` code."""

    status: str
    reason: Optional[str] = None
    charged: bool = False
    cost: int = 0
    delta_bytes: int = 0
    delta_gb: float = 0.0
    current_balance: Optional[int] = None
    new_balance: Optional[int] = None
    suspended: bool = False
    snapshot_id: Optional[int] = None
    cycle_marker: Optional[str] = None

    @classmethod
    def skipped(cls, reason: str, **kwargs) -> "ChargeResult":
        return cls(status=SKIPPED, reason=reason, **kwargs)


def calculate_cost(delta_bytes: int, price_per_gb: int) -> int:
    """ceil(delta_bytes / 2^30 * price_per_gb), exact for integer inputs."""
    if delta_bytes <= 0:
        return 0
    return -(-(delta_bytes * price_per_gb) // GIB)


def bytes_to_gb(value: int) -> float:
    return round(value / GIB, 4)


def is_duplicate_cycle(exc: IntegrityError) -> bool:
    """True when *exc* is the per-cycle unique index rejecting a second snapshot."""
    message = str(exc.orig)
    # PostgreSQL names the constraint, SQLite lists its columns
    return (
        CYCLE_UNIQUE_CONSTRAINT in message
        or f"{ResellerUsageSnapshot.__tablename__}.cycle_marker" in message
    )


class WalletChargingService:
    def __init__(
        self,
        config: BillingConfig,
        suspension: SuspensionController,
        aggregator: Optional[UsageAggregator] = None,
        snapshots: Optional[SnapshotStore] = None,
        audit: Optional[AuditSink] = None,
        locks: Optional[TTLLockRegistry] = None,
        engine: Optional[Engine] = None,
    ):
        self.config = config
        self.suspension = suspension
        self.aggregator = aggregator or UsageAggregator()
        self.snapshots = snapshots or SnapshotStore()
        self.audit = audit or AuditSink(engine)
        self.locks = locks or TTLLockRegistry()
        self._engine = engine

    # ------------------------------------------------------------------
    # Measurement
    # ------------------------------------------------------------------

    def _measure(self, session, reseller_id: int) -> tuple[int, int]:
        """Return (current_total, delta) against the latest snapshot."""
        current_total = self.aggregator.total_usage_bytes(session, reseller_id)
        last = self.snapshots.latest(session, reseller_id)
        if last is None:
            return current_total, current_total
        return current_total, max(0, current_total - last.total_bytes)

    # ------------------------------------------------------------------
    # Periodic charge
    # ------------------------------------------------------------------

    def charge_for_reseller(
        self,
        reseller: Reseller,
        reference_time: Optional[datetime] = None,
        dry_run: bool = False,
        source: str = "scheduler",
    ) -> ChargeResult:
        cycle_marker = cycle_marker_for(reference_time)

        if not reseller.is_wallet():
            logger.info("wallet_charge_skip_not_wallet reseller_id=%s type=%s", reseller.id, reseller.type)
            return ChargeResult.skipped("not_wallet_type", cycle_marker=cycle_marker)

        with get_session_context(self._engine) as session:
            row = session.get(Reseller, reseller.id)
            if row is None:
                raise ResellerNotFoundError(reseller.id)
            current_total, delta = self._measure(session, row.id)
            already_charged = self.snapshots.has_cycle(session, row.id, cycle_marker)

        skip_reason = None
        if delta <= 0:
            skip_reason = "no_usage_delta"
        elif delta < self.config.minimum_delta_bytes:
            skip_reason = "below_minimum_delta"

        if skip_reason:
            logger.info(
                "wallet_charge_skip reseller_id=%s reason=%s current_total=%d delta_bytes=%d minimum=%d",
                row.id, skip_reason, current_total, delta, self.config.minimum_delta_bytes,
            )
            suspended = False if dry_run else self._suspend_if_exhausted(row, cycle_marker)
            return ChargeResult.skipped(
                skip_reason,
                delta_bytes=delta,
                current_balance=row.wallet_balance,
                suspended=suspended,
                cycle_marker=cycle_marker,
            )

        price = row.price_per_gb(self.config.price_per_gb)
        cost = calculate_cost(delta, price)

        if dry_run:
            logger.info(
                "wallet_charge_dry_run reseller_id=%s delta_bytes=%d cost=%d balance=%d",
                row.id, delta, cost, row.wallet_balance,
            )
            return ChargeResult(
                status=DRY_RUN,
                cost=cost,
                delta_bytes=delta,
                delta_gb=bytes_to_gb(delta),
                current_balance=row.wallet_balance,
                new_balance=row.wallet_balance - cost,
                cycle_marker=cycle_marker,
            )

        if already_charged:
            return self._skip_duplicate_cycle(row, cycle_marker, delta)

        meta = SnapshotMeta(
            cycle_started_at=cycle_marker,
            cycle_charge_applied=True,
            delta_bytes=delta,
            delta_gb=bytes_to_gb(delta),
            cost=cost,
            price_per_gb=price,
            source=source,
        )
        try:
            snapshot_id, updated, suspended = sqlite_retry(
                lambda: self._persist_charge(row.id, current_total, cost, meta, cycle_marker)
            )
        except IntegrityError as exc:
            if is_duplicate_cycle(exc):
                return self._skip_duplicate_cycle(row, cycle_marker, delta)
            logger.error("wallet_charge_integrity_error reseller_id=%s error=%s", row.id, exc)
            raise ChargePersistenceError(row.id, detail=str(exc)) from exc
        except SQLAlchemyError as exc:
            logger.error("wallet_charge_persist_failed reseller_id=%s error=%s", row.id, exc)
            raise ChargePersistenceError(row.id, detail=str(exc)) from exc

        logger.info(
            "wallet_charge_applied reseller_id=%s delta_bytes=%d cost=%d price_per_gb=%d "
            "old_balance=%d new_balance=%d source=%s",
            updated.id, delta, cost, price, updated.wallet_balance + cost, updated.wallet_balance, source,
        )

        if suspended:
            self.suspension.on_suspended(
                updated,
                SuspensionReason.WALLET,
                cycle_marker,
                WALLET_EXHAUSTED,
                {
                    "wallet_balance": updated.wallet_balance,
                    "threshold": self.config.suspension_threshold,
                },
            )
        else:
            self._disable_leftovers(updated, cycle_marker)

        return ChargeResult(
            status=CHARGED,
            charged=cost > 0,
            cost=cost,
            delta_bytes=delta,
            delta_gb=bytes_to_gb(delta),
            current_balance=updated.wallet_balance + cost,
            new_balance=updated.wallet_balance,
            suspended=suspended,
            snapshot_id=snapshot_id,
            cycle_marker=cycle_marker,
        )

    def _persist_charge(
        self,
        reseller_id: int,
        current_total: int,
        cost: int,
        meta: SnapshotMeta,
        cycle_marker: str,
    ) -> tuple[int, Reseller, bool]:
        """Snapshot, debit and suspended status, committed together."""
        with get_session_context(self._engine) as session:
            row = session.get(Reseller, reseller_id)
            snapshot = self.snapshots.append(
                session, reseller_id, current_total, meta, cycle_marker=cycle_marker
            )
            row.wallet_balance -= cost
            row.updated_at = utcnow()
            suspended = False
            if self.suspension.should_suspend_wallet(row):
                suspended = self.suspension.mark_suspended(row, SuspensionReason.WALLET)
            session.add(row)
            session.commit()
            return snapshot.id, row, suspended

    def _skip_duplicate_cycle(self, row: Reseller, cycle_marker: str, delta: int) -> ChargeResult:
        logger.info("wallet_charge_skip_cycle_already_charged reseller_id=%s cycle=%s", row.id, cycle_marker)
        suspended = self._suspend_if_exhausted(row, cycle_marker)
        return ChargeResult.skipped(
            "cycle_already_charged",
            delta_bytes=delta,
            current_balance=row.wallet_balance,
            suspended=suspended,
            cycle_marker=cycle_marker,
        )

    def _suspend_if_exhausted(self, reseller: Reseller, cycle_marker: str) -> bool:
        """Suspension check for attempts that charged nothing."""
        if not self.suspension.should_suspend_wallet(reseller):
            logger.debug(
                "wallet_suspension_not_needed reseller_id=%s balance=%d threshold=%d status=%s",
                reseller.id, reseller.wallet_balance, self.config.suspension_threshold, reseller.status,
            )
            self._disable_leftovers(reseller, cycle_marker)
            return False

        with get_session_context(self._engine) as session:
            row = session.get(Reseller, reseller.id)
            changed = self.suspension.should_suspend_wallet(row) and self.suspension.mark_suspended(
                row, SuspensionReason.WALLET
            )
            if changed:
                session.add(row)
                session.commit()

        if changed:
            self.suspension.on_suspended(
                row,
                SuspensionReason.WALLET,
                cycle_marker,
                WALLET_EXHAUSTED,
                {"wallet_balance": row.wallet_balance, "threshold": self.config.suspension_threshold},
            )
        return changed

    def _disable_leftovers(self, reseller: Reseller, cycle_marker: str) -> None:
        """An exhausted reseller already in suspended_wallet must not keep active configs."""
        if reseller.wallet_balance <= self.config.suspension_threshold:
            self.suspension.enforce_suspended(reseller, SuspensionReason.WALLET, cycle_marker, WALLET_EXHAUSTED)

    # ------------------------------------------------------------------
    # Off-schedule entry points
    # ------------------------------------------------------------------

    def charge_from_panel(self, reseller: Reseller, action: str = "panel_action") -> ChargeResult:
        """Immediate charge triggered from an admin/panel action."""
        if not self.config.charge_enabled:
            logger.info("wallet_charge_skip_disabled reseller_id=%s action=%s", reseller.id, action)
            return ChargeResult.skipped("charging_disabled")
        return self.charge_for_reseller(reseller, source=f"panel:{action}")

    def final_settlement_for_config(self, config_id: int, action_type: str) -> ChargeResult:
        """Bill a config's outstanding usage before its traffic is reset or it is deleted.

        The debit, ledger entry, config settlement fields and a sync snapshot
        are committed together, so the next periodic charge does not bill the
        same bytes again. Repeats within the guard window are skipped.
        """
        with get_session_context(self._engine) as session:
            config = session.get(ResellerConfig, config_id)
            if config is None:
                return ChargeResult.skipped("config_not_found")
            reseller = session.get(Reseller, config.reseller_id)
            if reseller is None:
                raise ResellerNotFoundError(config.reseller_id)

        if not reseller.is_wallet():
            return ChargeResult.skipped("not_wallet_type")
        if not self.config.charge_enabled:
            return ChargeResult.skipped("charging_disabled")

        lock_key = f"final_settlement:{config_id}:{action_type}"
        if not self.locks.acquire(lock_key, self.config.settlement_lock_ttl_seconds):
            logger.info("final_settlement_skip_guard config_id=%s action=%s", config_id, action_type)
            return ChargeResult.skipped("idempotency_guard")

        with get_session_context(self._engine) as session:
            current_total, delta = self._measure(session, reseller.id)

        if delta <= 0:
            logger.info("final_settlement_skip_no_usage config_id=%s reseller_id=%s", config_id, reseller.id)
            return ChargeResult.skipped("no_outstanding_usage", current_balance=reseller.wallet_balance)

        price = reseller.price_per_gb(self.config.price_per_gb)
        cost = calculate_cost(delta, price)
        cycle_marker = cycle_marker_for()

        try:
            snapshot_id, updated, suspended = sqlite_retry(
                lambda: self._persist_settlement(
                    config_id, reseller.id, current_total, delta, cost, price, action_type, cycle_marker
                )
            )
        except SQLAlchemyError as exc:
            logger.error("final_settlement_persist_failed config_id=%s error=%s", config_id, exc)
            raise ChargePersistenceError(reseller.id, detail=str(exc), code="RB-DB-002") from exc

        logger.info(
            "final_settlement_applied config_id=%s reseller_id=%s action=%s delta_bytes=%d cost=%d new_balance=%d",
            config_id, reseller.id, action_type, delta, cost, updated.wallet_balance,
        )
        self.audit.record_event(
            config_id,
            "final_settlement",
            {
                "action_type": action_type,
                "charged_bytes": delta,
                "amount_charged": cost,
                "price_per_gb": price,
                "balance_after": updated.wallet_balance,
            },
        )

        if suspended:
            self.suspension.on_suspended(
                updated,
                SuspensionReason.WALLET,
                cycle_marker,
                WALLET_EXHAUSTED,
                {"wallet_balance": updated.wallet_balance, "threshold": self.config.suspension_threshold},
            )
        else:
            self._disable_leftovers(updated, cycle_marker)

        return ChargeResult(
            status=CHARGED,
            charged=cost > 0,
            cost=cost,
            delta_bytes=delta,
            delta_gb=bytes_to_gb(delta),
            current_balance=updated.wallet_balance + cost,
            new_balance=updated.wallet_balance,
            suspended=suspended,
            snapshot_id=snapshot_id,
        )

    def _persist_settlement(
        self,
        config_id: int,
        reseller_id: int,
        current_total: int,
        delta: int,
        cost: int,
        price: int,
        action_type: str,
        cycle_marker: str,
    ) -> tuple[int, Reseller, bool]:
        now = utcnow()
        with get_session_context(self._engine) as session:
            row = session.get(Reseller, reseller_id)
            config = session.get(ResellerConfig, config_id)

            balance_before = row.wallet_balance
            row.wallet_balance -= cost
            row.updated_at = now

            meta = config.get_meta()
            meta.last_settlement_at = now
            meta.last_settlement_action = action_type
            meta.last_settlement_bytes = delta
            meta.last_settlement_cost = cost
            config.set_meta(meta)
            config.updated_at = now

            session.add(
                BillingLedgerEntry(
                    reseller_id=reseller_id,
                    reseller_config_id=config_id,
                    entry_type="final_settlement",
                    action_type=action_type,
                    charged_bytes=delta,
                    amount_charged=cost,
                    price_per_gb=price,
                    balance_before=balance_before,
                    balance_after=row.wallet_balance,
                )
            )
            snapshot = self.snapshots.append(
                session,
                reseller_id,
                current_total,
                SnapshotMeta(
                    cycle_started_at=cycle_marker,
                    delta_bytes=delta,
                    delta_gb=bytes_to_gb(delta),
                    cost=cost,
                    price_per_gb=price,
                    source=f"final_settlement:{action_type}",
                    config_id=config_id,
                    action_type=action_type,
                ),
            )

            suspended = False
            if self.suspension.should_suspend_wallet(row):
                suspended = self.suspension.mark_suspended(row, SuspensionReason.WALLET)
            session.add(row)
            session.add(config)
            session.commit()
            return snapshot.id, row, suspended
