"""
Service wiring.

Builds the billing object graph once at startup: config, panel registry,
rate limiter, audit sink, reconciler, suspension controller, charging
service and scheduler. Every piece can be swapped for tests.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine

from reseller_billing.config import BillingConfig, Settings, settings
from reseller_billing.services.audit import AuditSink
from reseller_billing.services.charge_scheduler import ChargeScheduler
from reseller_billing.services.config_reconciler import ConfigReconciler
from reseller_billing.services.locks import TTLLockRegistry
from reseller_billing.services.panel_providers import PanelRegistry, build_default_registry
from reseller_billing.services.rate_limiter import PanelRateLimiter
from reseller_billing.services.suspension import SuspensionController
from reseller_billing.services.wallet_charging import WalletChargingService


@dataclass
class BillingServices:
    config: BillingConfig
    registry: PanelRegistry
    rate_limiter: PanelRateLimiter
    audit: AuditSink
    reconciler: ConfigReconciler
    suspension: SuspensionController
    charging: WalletChargingService
    scheduler: ChargeScheduler


def build_services(
    config: Optional[BillingConfig] = None,
    engine: Optional[Engine] = None,
    registry: Optional[PanelRegistry] = None,
    rate_limiter: Optional[PanelRateLimiter] = None,
    source: Optional[Settings] = None,
) -> BillingServices:
    s = source or settings
    config = config or BillingConfig.from_settings(s)
    registry = registry or build_default_registry(
        timeout=s.panel_request_timeout_s,
        verify=s.panel_verify_tls,
        retry_delays=s.panel_retry_delays,
    )
    rate_limiter = rate_limiter or PanelRateLimiter(min_interval_s=config.rate_limit_delay_s)
    audit = AuditSink(engine)
    locks = TTLLockRegistry()

    reconciler = ConfigReconciler(
        registry,
        rate_limiter=rate_limiter,
        audit=audit,
        engine=engine,
        batch_size=config.reenable_batch_size,
    )
    suspension = SuspensionController(config, reconciler, audit=audit, engine=engine)
    charging = WalletChargingService(config, suspension, audit=audit, locks=locks, engine=engine)
    scheduler = ChargeScheduler(config, charging, suspension, locks=locks, engine=engine)

    return BillingServices(
        config=config,
        registry=registry,
        rate_limiter=rate_limiter,
        audit=audit,
        reconciler=reconciler,
        suspension=suspension,
        charging=charging,
        scheduler=scheduler,
    )
