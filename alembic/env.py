"""
Alembic Environment Configuration
==================================

Runs migrations against the reseller billing database.
The sqlalchemy.url is overridden at runtime by reseller_billing.core.database
so the value in alembic.ini is only a fallback for CLI usage.
"""

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool
from sqlmodel import SQLModel

# Import all models so their tables are registered on metadata
from reseller_billing.models.reseller import Panel, Reseller, ResellerConfig  # noqa: F401
from reseller_billing.models.usage import ResellerUsageSnapshot  # noqa: F401
from reseller_billing.models.audit import AuditLog, BillingLedgerEntry, ResellerConfigEvent  # noqa: F401

config = context.config

# Override sqlalchemy.url from env (used in container deployments)
database_url = os.environ.get("RESELLER_BILLING_DATABASE_URL") or os.environ.get("DATABASE_URL")
if database_url:
    config.set_main_option("sqlalchemy.url", database_url)

# Programmatic upgrades keep the application's structlog handlers
if config.config_file_name is not None and config.attributes.get("configure_logger", True):
    fileConfig(config.config_file_name, disable_existing_loggers=False)

target_metadata = SQLModel.metadata


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode (emit SQL to stdout)."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode (connect to DB)."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
