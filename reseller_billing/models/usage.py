"""
Usage Snapshot Model
====================

Append-only ledger of a reseller's aggregate usage at measurement time.
The latest row is the authoritative "last known total" for the next
cycle's delta computation. Rows are never updated or deleted.

``cycle_marker`` holds the minute-truncated cycle start of the charging
pass that wrote the row. The unique (reseller_id, cycle_marker) index is
the per-cycle processing record: a second charge for the same reseller
and cycle fails at insert time. Settlement snapshots leave it NULL.

CREATED: 2026-10-19
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy import UniqueConstraint
from sqlmodel import JSON, Column, Field, SQLModel

from reseller_billing.models.reseller import utcnow

CYCLE_UNIQUE_CONSTRAINT = "uq_usage_snapshot_reseller_cycle"


class SnapshotMeta(BaseModel):
    """Typed view over ``ResellerUsageSnapshot.meta``."""

    model_config = ConfigDict(extra="allow")

    cycle_started_at: Optional[str] = None
    cycle_charge_applied: bool = False
    delta_bytes: int = 0
    delta_gb: float = 0.0
    cost: int = 0
    price_per_gb: Optional[int] = None
    source: Optional[str] = None

    # Final settlement only
    config_id: Optional[int] = None
    action_type: Optional[str] = None


class ResellerUsageSnapshot(SQLModel, table=True):
    __tablename__ = "reseller_usage_snapshots"
    __table_args__ = (
        UniqueConstraint("reseller_id", "cycle_marker", name=CYCLE_UNIQUE_CONSTRAINT),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    reseller_id: int = Field(foreign_key="resellers.id", index=True)
    total_bytes: int = Field(default=0)
    measured_at: datetime = Field(default_factory=utcnow, index=True)
    cycle_marker: Optional[str] = Field(default=None, nullable=True, max_length=64)
    meta: Dict[str, Any] = Field(default_factory=dict, sa_column=Column("meta", JSON))

    def get_meta(self) -> SnapshotMeta:
        return SnapshotMeta.model_validate(self.meta or {})
