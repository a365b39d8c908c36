"""initial reseller billing tables

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- resellers ---
    op.create_table(
        "resellers",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False, server_default=""),
        sa.Column("type", sa.String(16), nullable=False, server_default="wallet"),
        sa.Column("status", sa.String(32), nullable=False, server_default="active"),
        sa.Column("wallet_balance", sa.Integer, nullable=False, server_default="0"),
        sa.Column("wallet_price_per_gb", sa.Integer, nullable=True),
        sa.Column("traffic_total_bytes", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("traffic_used_bytes", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("admin_forgiven_bytes", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("window_starts_at", sa.DateTime, nullable=True),
        sa.Column("window_ends_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_resellers_type", "resellers", ["type"])
    op.create_index("ix_resellers_status", "resellers", ["status"])

    # --- panels ---
    op.create_table(
        "panels",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False, server_default=""),
        sa.Column("panel_type", sa.String(32), nullable=False),
        sa.Column("url", sa.String(1024), nullable=False, server_default=""),
        sa.Column("username", sa.String(255), nullable=True),
        sa.Column("password", sa.String(255), nullable=True),
        sa.Column("api_token", sa.String(512), nullable=True),
        sa.Column("node_hostname", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
    )
    op.create_index("ix_panels_panel_type", "panels", ["panel_type"])

    # --- reseller_configs ---
    op.create_table(
        "reseller_configs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("reseller_id", sa.Integer, sa.ForeignKey("resellers.id"), nullable=False),
        sa.Column("panel_id", sa.Integer, sa.ForeignKey("panels.id"), nullable=True),
        sa.Column("panel_type", sa.String(32), nullable=True),
        sa.Column("panel_user_id", sa.String(255), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("usage_bytes", sa.BigInteger, nullable=True),
        sa.Column("meta", sa.JSON, nullable=True),
        sa.Column("disabled_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_reseller_configs_reseller_id", "reseller_configs", ["reseller_id"])
    op.create_index("ix_reseller_configs_status", "reseller_configs", ["status"])

    # --- reseller_usage_snapshots ---
    op.create_table(
        "reseller_usage_snapshots",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("reseller_id", sa.Integer, sa.ForeignKey("resellers.id"), nullable=False),
        sa.Column("total_bytes", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("measured_at", sa.DateTime, nullable=False),
        sa.Column("cycle_marker", sa.String(64), nullable=True),
        sa.Column("meta", sa.JSON, nullable=True),
        sa.UniqueConstraint("reseller_id", "cycle_marker", name="uq_usage_snapshot_reseller_cycle"),
    )
    op.create_index("ix_reseller_usage_snapshots_reseller_id", "reseller_usage_snapshots", ["reseller_id"])
    op.create_index("ix_reseller_usage_snapshots_measured_at", "reseller_usage_snapshots", ["measured_at"])

    # --- reseller_config_events ---
    op.create_table(
        "reseller_config_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("reseller_config_id", sa.Integer, sa.ForeignKey("reseller_configs.id"), nullable=False),
        sa.Column("type", sa.String(64), nullable=False),
        sa.Column("meta", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_reseller_config_events_reseller_config_id", "reseller_config_events", ["reseller_config_id"])
    op.create_index("ix_reseller_config_events_type", "reseller_config_events", ["type"])

    # --- audit_logs ---
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("target_type", sa.String(32), nullable=False),
        sa.Column("target_id", sa.Integer, nullable=True),
        sa.Column("reason", sa.String(128), nullable=True),
        sa.Column("meta", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_target_id", "audit_logs", ["target_id"])

    # --- billing_ledger_entries ---
    op.create_table(
        "billing_ledger_entries",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("reseller_id", sa.Integer, sa.ForeignKey("resellers.id"), nullable=False),
        sa.Column("reseller_config_id", sa.Integer, sa.ForeignKey("reseller_configs.id"), nullable=True),
        sa.Column("entry_type", sa.String(32), nullable=False),
        sa.Column("action_type", sa.String(32), nullable=True),
        sa.Column("charged_bytes", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("amount_charged", sa.Integer, nullable=False, server_default="0"),
        sa.Column("price_per_gb", sa.Integer, nullable=False, server_default="0"),
        sa.Column("balance_before", sa.Integer, nullable=False, server_default="0"),
        sa.Column("balance_after", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_billing_ledger_entries_reseller_id", "billing_ledger_entries", ["reseller_id"])


def downgrade() -> None:
    op.drop_table("billing_ledger_entries")
    op.drop_table("audit_logs")
    op.drop_table("reseller_config_events")
    op.drop_table("reseller_usage_snapshots")
    op.drop_table("reseller_configs")
    op.drop_table("panels")
    op.drop_table("resellers")
