"""
Remote Config Reconciler
========================

PURPOSE:
    Brings a reseller's remote panel users in line with its suspension
    state: bulk disable on suspension, bulk re-enable on recovery.

DISABLE (local-first):
    Each active config is disabled remotely, then marked ``disabled``
    locally whatever the remote outcome. Local billing and config-limit
    enforcement must not depend on panel availability, so local state may
    lead remote state until a later pass catches up. Every disable emits an
    ``auto_disabled`` config event and a ``config_auto_disabled`` audit
    entry carrying the remote outcome. A config already stamped with the
    current cycle marker for the same reason is skipped.

RE-ENABLE (remote-confirmed):
    Only configs flagged ``disabled_by_<reason>_suspension`` for the given
    reason are touched. Local state flips back to ``active`` only after the
    panel confirmed the enable; failures stay disabled and are picked up
    by the next re-enable pass. A config still flagged for another reason
    only loses this reason's flag and is counted as ``held``.

FAILURE POLICY:
    Unknown panel type, missing panel and transport errors are per-config
    failures. A batch never aborts because of one config.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from reseller_billing.core.database import get_session_context
from reseller_billing.core.errors import UnknownPanelTypeError
from reseller_billing.models.reseller import (
    ConfigStatus,
    Panel,
    Reseller,
    ResellerConfig,
    SuspensionReason,
    utcnow,
)
from reseller_billing.services.audit import AuditSink
from reseller_billing.services.panel_providers import PanelCredentials, PanelRegistry, RemoteResult
from reseller_billing.services.rate_limiter import PanelRateLimiter

logger = logging.getLogger(__name__)

NO_PANEL_ERROR = "No panel configured"

# Default reason recorded on disable / re-enable events, per suspension reason
DISABLE_DETAIL = {
    SuspensionReason.WALLET: "wallet_balance_exhausted",
    SuspensionReason.TRAFFIC: "reseller_quota_exhausted",
    SuspensionReason.MANUAL: "reseller_suspended",
}
REENABLE_DETAIL = {
    SuspensionReason.WALLET: "wallet_recharged",
    SuspensionReason.TRAFFIC: "reseller_recovered",
    SuspensionReason.MANUAL: "reseller_recovered",
}


# Re-enable outcomes per config
ENABLED = "success"
FAILED = "failed"
HELD = "held"


@dataclass
class ReenableSummary:
    """Re-enable counts. ``held`` configs stay disabled under another suspension."""

    success: int = 0
    failed: int = 0
    held: int = 0
    by_panel: Dict[Optional[int], Dict[str, int]] = field(default_factory=dict)

    def count(self, panel_id: Optional[int], outcome: str) -> None:
        bucket = self.by_panel.setdefault(panel_id, {ENABLED: 0, FAILED: 0, HELD: 0})
        setattr(self, outcome, getattr(self, outcome) + 1)
        bucket[outcome] += 1


def panel_credentials(panel: Panel) -> PanelCredentials:
    return PanelCredentials(
        panel_id=panel.id,
        panel_type=panel.panel_type,
        url=panel.url,
        username=panel.username,
        password=panel.password,
        api_token=panel.api_token,
        node_hostname=panel.node_hostname,
    )


class ConfigReconciler:
    def __init__(
        self,
        registry: PanelRegistry,
        rate_limiter: Optional[PanelRateLimiter] = None,
        audit: Optional[AuditSink] = None,
        engine: Optional[Engine] = None,
        batch_size: int = 500,
    ):
        self.registry = registry
        self.rate_limiter = rate_limiter or PanelRateLimiter()
        self.audit = audit or AuditSink(engine)
        self._engine = engine
        self.batch_size = batch_size

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_panels(self, session: Session, panel_ids: set) -> Dict[int, Panel]:
        ids = [pid for pid in panel_ids if pid is not None]
        if not ids:
            return {}
        panels = session.exec(select(Panel).where(col(Panel.id).in_(ids))).all()
        return {p.id: p for p in panels}

    def _call_remote(self, op: str, config: ResellerConfig, panel: Optional[Panel]) -> RemoteResult:
        if panel is None:
            return RemoteResult(success=False, attempts=0, last_error=NO_PANEL_ERROR)

        panel_type = config.panel_type or panel.panel_type
        self.rate_limiter.wait(panel.id)
        try:
            if op == "disable":
                return self.registry.disable_user(panel_type, panel_credentials(panel), config.panel_user_id)
            return self.registry.enable_user(panel_type, panel_credentials(panel), config.panel_user_id)
        except UnknownPanelTypeError as exc:
            logger.warning(
                "panel_type_unsupported config_id=%s panel_id=%s type=%s",
                config.id, panel.id, panel_type,
            )
            return RemoteResult(success=False, attempts=0, last_error=str(exc))

    # ------------------------------------------------------------------
    # Disable
    # ------------------------------------------------------------------

    def has_active_configs(self, reseller_id: int) -> bool:
        with get_session_context(self._engine) as session:
            first = session.exec(
                select(ResellerConfig.id)
                .where(ResellerConfig.reseller_id == reseller_id)
                .where(ResellerConfig.status == ConfigStatus.ACTIVE.value)
                .limit(1)
            ).first()
        return first is not None

    def disable_all(
        self,
        reseller: Reseller,
        cycle_marker: str,
        reason: SuspensionReason = SuspensionReason.WALLET,
        detail: Optional[str] = None,
    ) -> int:
        """Disable every active config of *reseller*. Returns the number disabled locally."""
        detail = detail or DISABLE_DETAIL[reason]
        with get_session_context(self._engine) as session:
            configs = session.exec(
                select(ResellerConfig)
                .where(ResellerConfig.reseller_id == reseller.id)
                .where(ResellerConfig.status == ConfigStatus.ACTIVE.value)
                .order_by(ResellerConfig.id)
            ).all()
            panels = self._load_panels(session, {c.panel_id for c in configs})

        logger.info(
            "configs_disable_started reseller_id=%s reason=%s cycle=%s count=%d",
            reseller.id, reason.value, cycle_marker, len(configs),
        )

        disabled = 0
        remote_failed = 0
        for config in configs:
            try:
                outcome = self._disable_one(reseller, config, panels.get(config.panel_id), cycle_marker, reason, detail)
            except Exception:
                logger.exception("config_disable_error config_id=%s reseller_id=%s", config.id, reseller.id)
                continue
            if outcome is None:
                continue
            disabled += 1
            if not outcome.success:
                remote_failed += 1

        logger.info(
            "configs_disable_finished reseller_id=%s disabled=%d remote_failed=%d",
            reseller.id, disabled, remote_failed,
        )
        return disabled

    def _disable_one(
        self,
        reseller: Reseller,
        config: ResellerConfig,
        panel: Optional[Panel],
        cycle_marker: str,
        reason: SuspensionReason,
        detail: str,
    ) -> Optional[RemoteResult]:
        if config.get_meta().disabled_cycle(reason) == cycle_marker:
            logger.info("config_disable_skip_same_cycle config_id=%s cycle=%s", config.id, cycle_marker)
            return None

        result = self._call_remote("disable", config, panel)
        if not result.success:
            logger.warning(
                "remote_disable_failed config_id=%s panel_id=%s attempts=%d error=%s",
                config.id, config.panel_id, result.attempts, result.last_error,
            )

        now = utcnow()
        with get_session_context(self._engine) as session:
            row = session.get(ResellerConfig, config.id)
            meta = row.get_meta()
            meta.mark_disabled(reason, cycle_marker, reseller.id, now)
            row.set_meta(meta)
            row.status = ConfigStatus.DISABLED.value
            row.disabled_at = now
            row.updated_at = now
            session.add(row)
            session.commit()

        self.audit.record_event(
            config.id,
            "auto_disabled",
            {
                "reason": detail,
                "suspension": reason.value,
                "cycle": cycle_marker,
                "remote_success": result.success,
                "attempts": result.attempts,
                "last_error": result.last_error,
            },
        )
        self.audit.record_audit(
            "config_auto_disabled",
            "config",
            config.id,
            reason=detail,
            meta={
                "reseller_id": reseller.id,
                "cycle": cycle_marker,
                "remote_success": result.success,
                "attempts": result.attempts,
            },
        )
        return result

    # ------------------------------------------------------------------
    # Re-enable
    # ------------------------------------------------------------------

    def flagged_configs(self, session: Session, reseller_id: int, reason: SuspensionReason) -> list[ResellerConfig]:
        """Disabled configs of *reseller_id* carrying the flag for *reason*."""
        rows = session.exec(
            select(ResellerConfig)
            .where(ResellerConfig.reseller_id == reseller_id)
            .where(ResellerConfig.status == ConfigStatus.DISABLED.value)
            .order_by(ResellerConfig.id)
        ).all()
        return [c for c in rows if c.get_meta().is_disabled_for(reason)][: self.batch_size]

    def reenable_all(
        self,
        reseller: Reseller,
        reason: SuspensionReason,
        detail: Optional[str] = None,
    ) -> ReenableSummary:
        """Re-enable configs disabled for *reason* only. Never touches other configs."""
        detail = detail or REENABLE_DETAIL[reason]
        summary = ReenableSummary()

        with get_session_context(self._engine) as session:
            configs = self.flagged_configs(session, reseller.id, reason)
            panels = self._load_panels(session, {c.panel_id for c in configs})

        if not configs:
            logger.info("configs_reenable_nothing reseller_id=%s reason=%s", reseller.id, reason.value)
            return summary

        by_panel: Dict[Optional[int], list[ResellerConfig]] = defaultdict(list)
        for config in configs:
            by_panel[config.panel_id].append(config)

        for panel_id, group in by_panel.items():
            panel = panels.get(panel_id)
            for config in group:
                try:
                    outcome = self._enable_one(reseller, config, panel, reason, detail)
                except Exception:
                    logger.exception("config_reenable_error config_id=%s reseller_id=%s", config.id, reseller.id)
                    outcome = FAILED
                summary.count(panel_id, outcome)

        logger.info(
            "configs_reenable_finished reseller_id=%s reason=%s success=%d failed=%d held=%d",
            reseller.id, reason.value, summary.success, summary.failed, summary.held,
        )
        return summary

    def _enable_one(
        self,
        reseller: Reseller,
        config: ResellerConfig,
        panel: Optional[Panel],
        reason: SuspensionReason,
        detail: str,
    ) -> str:
        other_holds = [r for r in SuspensionReason if r != reason and config.get_meta().is_disabled_for(r)]
        if other_holds:
            # Still held by another suspension: drop our flag, stay disabled
            with get_session_context(self._engine) as session:
                row = session.get(ResellerConfig, config.id)
                meta = row.get_meta()
                meta.clear_disabled(reason)
                row.set_meta(meta)
                session.add(row)
                session.commit()
            logger.info(
                "config_reenable_held config_id=%s held_by=%s",
                config.id, ",".join(r.value for r in other_holds),
            )
            return HELD

        result = self._call_remote("enable", config, panel)

        if result.success:
            now = utcnow()
            with get_session_context(self._engine) as session:
                row = session.get(ResellerConfig, config.id)
                meta = row.get_meta()
                meta.clear_disabled(reason)
                row.set_meta(meta)
                row.status = ConfigStatus.ACTIVE.value
                row.disabled_at = None
                row.updated_at = now
                session.add(row)
                session.commit()
        else:
            logger.warning(
                "reenable_failed config_id=%s panel_id=%s attempts=%d error=%s",
                config.id, config.panel_id, result.attempts, result.last_error,
            )

        event_meta = {
            "reason": detail,
            "suspension": reason.value,
            "remote_success": result.success,
            "attempts": result.attempts,
            "last_error": result.last_error,
        }
        self.audit.record_event(config.id, "auto_enabled" if result.success else "auto_enable_failed", event_meta)
        self.audit.record_audit(
            "config_auto_enabled" if result.success else "config_auto_enable_failed",
            "config",
            config.id,
            reason=detail,
            meta={"reseller_id": reseller.id, **event_meta},
        )
        return ENABLED if result.success else FAILED
