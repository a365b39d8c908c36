"""
Usage Aggregator
================

Sums a reseller's current traffic usage across every config it owns:
live ``usage_bytes`` plus ``meta.settled_usage_bytes`` carried over from
earlier counter resets. Missing values count as zero, and every config is
included whatever its status or naming scheme. Pure read.
"""

import logging
from typing import Iterable

from sqlmodel import Session, select

from reseller_billing.models.reseller import ResellerConfig

logger = logging.getLogger(__name__)


def config_usage_bytes(config: ResellerConfig) -> int:
    """Live plus settled usage for one config."""
    return (config.usage_bytes or 0) + config.get_meta().settled_usage_bytes


def sum_usage_bytes(configs: Iterable[ResellerConfig]) -> int:
    return sum(config_usage_bytes(c) for c in configs)


class UsageAggregator:
    def list_configs(self, session: Session, reseller_id: int) -> list[ResellerConfig]:
        return list(
            session.exec(select(ResellerConfig).where(ResellerConfig.reseller_id == reseller_id)).all()
        )

    def total_usage_bytes(self, session: Session, reseller_id: int) -> int:
        configs = self.list_configs(session, reseller_id)
        total = sum_usage_bytes(configs)
        logger.debug(
            "usage_aggregated reseller_id=%s configs=%d total_bytes=%d",
            reseller_id, len(configs), total,
        )
        return total
