"""
Reseller Models
===============

SQLModel tables for the billing subjects and their remote-panel users:
- Reseller: wallet- or traffic-funded billing account.
- Panel: a remote VPN panel (Marzban, Marzneshin, XUI, Eylandoo).
- ResellerConfig: one end-user account on a panel, owned by a reseller.

``ResellerConfig.meta`` is stored as JSON but always read and written
through ``ConfigMeta``; absent keys mean false / zero / None and unknown
keys are carried through untouched.

CREATED: 2026-10-19
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict
from sqlmodel import JSON, Column, Field, SQLModel


class ResellerType(str, Enum):
    WALLET = "wallet"
    TRAFFIC = "traffic"


class ResellerStatus(str, Enum):
    """Reseller lifecycle states. Wallet and traffic suspension are separate axes."""
    ACTIVE = "active"
    SUSPENDED_WALLET = "suspended_wallet"
    SUSPENDED_TRAFFIC = "suspended_traffic"
    SUSPENDED = "suspended"  # generic / manual


class ConfigStatus(str, Enum):
    ACTIVE = "active"
    DISABLED = "disabled"
    EXPIRED = "expired"


class SuspensionReason(str, Enum):
    """Tag recorded on each config disabled by a reseller suspension."""
    WALLET = "wallet"
    TRAFFIC = "traffic"
    MANUAL = "manual"


# Reseller status that each suspension reason puts the reseller into
STATUS_FOR_REASON: Dict[SuspensionReason, ResellerStatus] = {
    SuspensionReason.WALLET: ResellerStatus.SUSPENDED_WALLET,
    SuspensionReason.TRAFFIC: ResellerStatus.SUSPENDED_TRAFFIC,
    SuspensionReason.MANUAL: ResellerStatus.SUSPENDED,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# =============================================================================
# Typed config metadata
# =============================================================================

class ConfigMeta(BaseModel):
    """Typed view over ``ResellerConfig.meta``."""

    model_config = ConfigDict(extra="allow")

    # Usage carried over from prior counter resets
    settled_usage_bytes: int = 0

    # Suspension flags, one set per reason
    disabled_by_wallet_suspension: bool = False
    disabled_by_wallet_suspension_cycle_at: Optional[str] = None
    disabled_by_traffic_suspension: bool = False
    disabled_by_traffic_suspension_cycle_at: Optional[str] = None
    disabled_by_manual_suspension: bool = False
    disabled_by_manual_suspension_cycle_at: Optional[str] = None
    disabled_by_reseller_id: Optional[int] = None
    disabled_at: Optional[datetime] = None

    # Final settlement bookkeeping
    last_settlement_at: Optional[datetime] = None
    last_settlement_action: Optional[str] = None
    last_settlement_bytes: int = 0
    last_settlement_cost: int = 0

    def is_disabled_for(self, reason: SuspensionReason) -> bool:
        return bool(getattr(self, f"disabled_by_{reason.value}_suspension"))

    def disabled_cycle(self, reason: SuspensionReason) -> Optional[str]:
        return getattr(self, f"disabled_by_{reason.value}_suspension_cycle_at")

    def mark_disabled(
        self,
        reason: SuspensionReason,
        cycle_marker: str,
        reseller_id: int,
        at: datetime,
    ) -> None:
        setattr(self, f"disabled_by_{reason.value}_suspension", True)
        setattr(self, f"disabled_by_{reason.value}_suspension_cycle_at", cycle_marker)
        self.disabled_by_reseller_id = reseller_id
        self.disabled_at = at

    def clear_disabled(self, reason: SuspensionReason) -> None:
        setattr(self, f"disabled_by_{reason.value}_suspension", False)
        setattr(self, f"disabled_by_{reason.value}_suspension_cycle_at", None)
        if not any(self.is_disabled_for(r) for r in SuspensionReason):
            self.disabled_by_reseller_id = None
            self.disabled_at = None


# =============================================================================
# Tables
# =============================================================================

class Reseller(SQLModel, table=True):
    """
    Billing subject.

    ``wallet_balance`` is a signed integer in currency units and may go
    negative down to (and past) the suspension threshold.
    """

    __tablename__ = "resellers"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(default="", max_length=255)
    type: str = Field(default=ResellerType.WALLET.value, index=True, max_length=16)
    status: str = Field(default=ResellerStatus.ACTIVE.value, index=True, max_length=32)

    # Wallet billing
    wallet_balance: int = Field(default=0)
    wallet_price_per_gb: Optional[int] = Field(default=None, nullable=True)

    # Traffic billing
    traffic_total_bytes: int = Field(default=0)
    traffic_used_bytes: int = Field(default=0)
    admin_forgiven_bytes: int = Field(default=0)
    window_starts_at: Optional[datetime] = Field(default=None, nullable=True)
    window_ends_at: Optional[datetime] = Field(default=None, nullable=True)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_wallet(self) -> bool:
        return self.type == ResellerType.WALLET.value

    def is_traffic(self) -> bool:
        return self.type == ResellerType.TRAFFIC.value

    def price_per_gb(self, default: int) -> int:
        """Per-reseller override, else the global default."""
        return self.wallet_price_per_gb if self.wallet_price_per_gb is not None else default


class Panel(SQLModel, table=True):
    """Remote VPN panel and the credentials used to drive it."""

    __tablename__ = "panels"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(default="", max_length=255)
    panel_type: str = Field(index=True, max_length=32)
    url: str = Field(default="", max_length=1024)
    username: Optional[str] = Field(default=None, nullable=True, max_length=255)
    password: Optional[str] = Field(default=None, nullable=True, max_length=255)
    api_token: Optional[str] = Field(default=None, nullable=True, max_length=512)
    node_hostname: Optional[str] = Field(default=None, nullable=True, max_length=255)
    is_active: bool = Field(default=True)


class ResellerConfig(SQLModel, table=True):
    """A reseller's user on a remote panel."""

    __tablename__ = "reseller_configs"

    id: Optional[int] = Field(default=None, primary_key=True)
    reseller_id: int = Field(foreign_key="resellers.id", index=True)
    panel_id: Optional[int] = Field(default=None, foreign_key="panels.id", nullable=True)
    panel_type: Optional[str] = Field(default=None, nullable=True, max_length=32)
    panel_user_id: str = Field(max_length=255)
    status: str = Field(default=ConfigStatus.ACTIVE.value, index=True, max_length=16)
    usage_bytes: Optional[int] = Field(default=None, nullable=True)
    meta: Dict[str, Any] = Field(default_factory=dict, sa_column=Column("meta", JSON))
    disabled_at: Optional[datetime] = Field(default=None, nullable=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def get_meta(self) -> ConfigMeta:
        return ConfigMeta.model_validate(self.meta or {})

    def set_meta(self, meta: ConfigMeta) -> None:
        # Reassign so the JSON column is flagged dirty
        self.meta = meta.model_dump(mode="json", exclude_defaults=True)
