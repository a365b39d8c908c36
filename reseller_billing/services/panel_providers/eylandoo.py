"""
Eylandoo Provisioner
====================

API-key auth (``X-API-KEY``). Eylandoo only offers a toggle endpoint, so
the current status is read first and ``POST /api/v1/users/{u}/toggle`` is
sent only when it differs from the target. An unrecognised status format
falls through to the toggle.
"""

import logging
from typing import Optional
from urllib.parse import quote

from reseller_billing.services.panel_providers.base import BasePanelProvisioner, PanelProviderError

logger = logging.getLogger(__name__)


def extract_user_status(user: dict) -> Optional[str]:
    """Normalize the several status shapes Eylandoo returns to 'active'/'disabled'."""
    data = user.get("data") if isinstance(user.get("data"), dict) else {}
    for source in (data, user):
        status = source.get("status")
        if isinstance(status, str) and status.strip().lower() in ("active", "disabled"):
            return status.strip().lower()
    for source in (data, user):
        is_active = source.get("is_active")
        if isinstance(is_active, bool):
            return "active" if is_active else "disabled"
    return None


class EylandooProvisioner(BasePanelProvisioner):
    panel_type = "eylandoo"

    def missing_credentials(self) -> Optional[str]:
        if not self.credentials.url or not self.credentials.api_token:
            return "Missing url/api_token"
        return None

    def _set_status(self, username: str, target: str) -> bool:
        path = f"/api/v1/users/{quote(username, safe='')}"
        with self._client(headers={"X-API-KEY": self.credentials.api_token or ""}) as client:
            resp = client.get(path)
            if resp.status_code == 404:
                logger.warning("eylandoo_user_not_found user=%s", username)
                return False
            if resp.status_code != 200:
                raise PanelProviderError(
                    f"user lookup failed with HTTP {resp.status_code}", panel_type=self.panel_type
                )

            current = extract_user_status(resp.json())
            if current == target:
                logger.info("eylandoo_user_already_%s user=%s", target, username)
                return True

            toggle = client.post(f"{path}/toggle")
        if not toggle.is_success:
            logger.warning(
                "eylandoo_toggle_failed user=%s target=%s http=%d",
                username, target, toggle.status_code,
            )
            return False
        return True

    def disable_user(self, remote_user_id: str) -> bool:
        return self._set_status(remote_user_id, "disabled")

    def enable_user(self, remote_user_id: str) -> bool:
        return self._set_status(remote_user_id, "active")
