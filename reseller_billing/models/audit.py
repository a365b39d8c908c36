"""
Audit Models
============

SQLModel tables for operator visibility:
- AuditLog: who/what/why record for reseller and config level actions.
- ResellerConfigEvent: per-config event stream (auto_disabled, auto_enabled, ...).
- BillingLedgerEntry: immutable record of every final-settlement debit.

CREATED: 2026-10-19
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlmodel import JSON, Column, Field, SQLModel

from reseller_billing.models.reseller import utcnow


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    action: str = Field(index=True, max_length=64)
    target_type: str = Field(max_length=32)
    target_id: Optional[int] = Field(default=None, nullable=True, index=True)
    reason: Optional[str] = Field(default=None, nullable=True, max_length=128)
    meta: Dict[str, Any] = Field(default_factory=dict, sa_column=Column("meta", JSON))
    created_at: datetime = Field(default_factory=utcnow)


class ResellerConfigEvent(SQLModel, table=True):
    __tablename__ = "reseller_config_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    reseller_config_id: int = Field(foreign_key="reseller_configs.id", index=True)
    type: str = Field(index=True, max_length=64)
    meta: Dict[str, Any] = Field(default_factory=dict, sa_column=Column("meta", JSON))
    created_at: datetime = Field(default_factory=utcnow)


class BillingLedgerEntry(SQLModel, table=True):
    """One debit applied outside the periodic cycle (final settlement)."""

    __tablename__ = "billing_ledger_entries"

    id: Optional[int] = Field(default=None, primary_key=True)
    reseller_id: int = Field(foreign_key="resellers.id", index=True)
    reseller_config_id: Optional[int] = Field(default=None, nullable=True, foreign_key="reseller_configs.id")
    entry_type: str = Field(max_length=32)
    action_type: Optional[str] = Field(default=None, nullable=True, max_length=32)
    charged_bytes: int = Field(default=0)
    amount_charged: int = Field(default=0)
    price_per_gb: int = Field(default=0)
    balance_before: int = Field(default=0)
    balance_after: int = Field(default=0)
    created_at: datetime = Field(default_factory=utcnow)
