"""
Reseller Billing Configuration
==============================

PURPOSE:
    Pydantic-Settings based configuration for the reseller billing engine.
    All settings can be overridden via environment variables
    (RESELLER_BILLING_ prefix) or a local .env file.

    Core services never read ``settings`` directly. They receive an
    immutable ``BillingConfig`` at construction, built once by the caller
    with ``BillingConfig.from_settings()``.

CREATED: 2026-10-19
"""

from dataclasses import dataclass
from typing import List, Optional

from pydantic_settings import BaseSettings


MIB = 1024 * 1024


class Settings(BaseSettings):
    """Process-wide settings, loaded from env / .env."""

    app_name: str = "reseller-billing"
    debug: bool = False

    # Persistence
    data_directory: str = "./data"
    database_url: Optional[str] = None

    # Logging
    log_dir: str = "logs"
    log_level: str = "INFO"

    # Wallet charging
    wallet_price_per_gb: int = 780
    wallet_suspension_threshold: int = -1000
    wallet_minimum_delta_bytes: int = 5 * MIB
    wallet_charge_enabled: bool = True
    wallet_auto_reenable_enabled: bool = True
    # A cycle charge younger than this is not repeated unless forced
    wallet_charge_idempotency_seconds: int = 50
    wallet_charge_lock_ttl_seconds: int = 20
    final_settlement_lock_ttl_seconds: int = 30

    # Traffic resellers
    traffic_grace_percent: float = 2.0
    traffic_grace_bytes: int = 50 * MIB

    # Remote panels
    panel_rate_limit_delay_s: float = 0.333  # 3 ops/sec per panel
    panel_retry_delays: List[float] = [1.0, 3.0]
    panel_request_timeout_s: float = 30.0
    panel_verify_tls: bool = False
    reenable_batch_size: int = 500

    class Config:
        env_file = ".env"
        env_prefix = "RESELLER_BILLING_"


settings = Settings()


@dataclass(frozen=True)
class BillingConfig:
    """Immutable billing parameters injected into the core services."""

    price_per_gb: int = 780
    suspension_threshold: int = -1000
    minimum_delta_bytes: int = 5 * MIB
    charge_enabled: bool = True
    auto_reenable_enabled: bool = True
    charge_idempotency_seconds: int = 50
    charge_lock_ttl_seconds: int = 20
    settlement_lock_ttl_seconds: int = 30
    traffic_grace_percent: float = 2.0
    traffic_grace_bytes: int = 50 * MIB
    rate_limit_delay_s: float = 0.333
    reenable_batch_size: int = 500

    @classmethod
    def from_settings(cls, source: Optional[Settings] = None) -> "BillingConfig":
        s = source or settings
        return cls(
            price_per_gb=s.wallet_price_per_gb,
            suspension_threshold=s.wallet_suspension_threshold,
            minimum_delta_bytes=s.wallet_minimum_delta_bytes,
            charge_enabled=s.wallet_charge_enabled,
            auto_reenable_enabled=s.wallet_auto_reenable_enabled,
            charge_idempotency_seconds=s.wallet_charge_idempotency_seconds,
            charge_lock_ttl_seconds=s.wallet_charge_lock_ttl_seconds,
            settlement_lock_ttl_seconds=s.final_settlement_lock_ttl_seconds,
            traffic_grace_percent=s.traffic_grace_percent,
            traffic_grace_bytes=s.traffic_grace_bytes,
            rate_limit_delay_s=s.panel_rate_limit_delay_s,
            reenable_batch_size=s.reenable_batch_size,
        )
