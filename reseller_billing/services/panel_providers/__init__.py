"""
Panel Provisioner Registry
==========================

Maps a panel-type tag to a provisioner factory. The registry is built once
at startup; adding a panel type means registering another factory, the
dispatch code never changes.

    registry = build_default_registry()
    result = registry.disable_user("marzban", credentials, "user_42")
    # RemoteResult(success=True, attempts=1, last_error=None)
"""

import logging
import time
from dataclasses import replace
from typing import Callable, Dict, Optional, Sequence

import httpx

from reseller_billing.core.errors import UnknownPanelTypeError
from reseller_billing.services.panel_providers.base import (
    DEFAULT_TIMEOUT,
    RETRY_DELAYS,
    BasePanelProvisioner,
    PanelCredentials,
    RemoteResult,
    retry_operation,
)
from reseller_billing.services.panel_providers.eylandoo import EylandooProvisioner
from reseller_billing.services.panel_providers.marzban import MarzbanProvisioner
from reseller_billing.services.panel_providers.marzneshin import MarzneshinProvisioner
from reseller_billing.services.panel_providers.xui import XUIProvisioner

logger = logging.getLogger(__name__)

ProvisionerFactory = Callable[[PanelCredentials], BasePanelProvisioner]


class PanelRegistry:
    """Uniform disable/enable entry point over all registered panel types."""

    def __init__(
        self,
        retry_delays: Sequence[float] = RETRY_DELAYS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.retry_delays = list(retry_delays)
        self._sleep = sleep
        self._factories: Dict[str, ProvisionerFactory] = {}

    def register(self, panel_type: str, factory: ProvisionerFactory) -> None:
        self._factories[panel_type.lower()] = factory

    def supports(self, panel_type: Optional[str]) -> bool:
        return bool(panel_type) and panel_type.lower() in self._factories

    def resolve(self, credentials: PanelCredentials) -> BasePanelProvisioner:
        panel_type = (credentials.panel_type or "").lower()
        factory = self._factories.get(panel_type)
        if factory is None:
            raise UnknownPanelTypeError(credentials.panel_type)
        return factory(credentials)

    def _run(self, op_name: str, panel_type: str, credentials: PanelCredentials, remote_user_id: str) -> RemoteResult:
        if credentials.panel_type != panel_type:
            credentials = replace(credentials, panel_type=panel_type)
        provisioner = self.resolve(credentials)

        missing = provisioner.missing_credentials()
        if missing:
            logger.warning(
                "panel_credentials_incomplete panel_id=%s type=%s error=%s",
                credentials.panel_id, panel_type, missing,
            )
            return RemoteResult(success=False, attempts=0, last_error=missing)

        operation = getattr(provisioner, op_name)
        return retry_operation(
            lambda: operation(remote_user_id),
            f"{op_name} {remote_user_id}",
            delays=self.retry_delays,
            sleep=self._sleep,
        )

    def disable_user(self, panel_type: str, credentials: PanelCredentials, remote_user_id: str) -> RemoteResult:
        """Disable a remote user. Raises UnknownPanelTypeError for unregistered types."""
        return self._run("disable_user", panel_type, credentials, remote_user_id)

    def enable_user(self, panel_type: str, credentials: PanelCredentials, remote_user_id: str) -> RemoteResult:
        return self._run("enable_user", panel_type, credentials, remote_user_id)


def build_default_registry(
    timeout: float = DEFAULT_TIMEOUT,
    verify: bool = False,
    retry_delays: Sequence[float] = RETRY_DELAYS,
    transport: Optional[httpx.BaseTransport] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> PanelRegistry:
    """Registry with the four built-in panel types."""
    registry = PanelRegistry(retry_delays=retry_delays, sleep=sleep)
    for cls in (MarzbanProvisioner, MarzneshinProvisioner, XUIProvisioner, EylandooProvisioner):
        registry.register(
            cls.panel_type,
            lambda creds, cls=cls: cls(creds, timeout=timeout, verify=verify, transport=transport),
        )
    return registry


__all__ = [
    "BasePanelProvisioner",
    "PanelCredentials",
    "PanelRegistry",
    "RemoteResult",
    "build_default_registry",
    "retry_operation",
]
