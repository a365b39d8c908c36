"""
Marzban Provisioner
===================

Admin token from ``POST /api/admin/token`` (form login), then the user's
status is flipped with ``PUT /api/user/{username}``.
"""

import logging

import httpx

from reseller_billing.services.panel_providers.base import BasePanelProvisioner, PanelAuthenticationError

logger = logging.getLogger(__name__)


class MarzbanProvisioner(BasePanelProvisioner):
    panel_type = "marzban"
    token_path = "/api/admin/token"

    def _login(self, client: httpx.Client) -> str:
        resp = client.post(
            self.token_path,
            data={"username": self.credentials.username, "password": self.credentials.password},
        )
        if resp.status_code != 200:
            raise PanelAuthenticationError(
                f"login failed with HTTP {resp.status_code}", panel_type=self.panel_type
            )
        token = resp.json().get("access_token")
        if not token:
            raise PanelAuthenticationError("login response has no access_token", panel_type=self.panel_type)
        return token

    def _set_status(self, username: str, status: str) -> bool:
        with self._client() as client:
            token = self._login(client)
            resp = client.put(
                f"/api/user/{username}",
                json={"status": status},
                headers={"Authorization": f"Bearer {token}"},
            )
        if resp.status_code != 200:
            logger.warning(
                "marzban_status_update_failed user=%s status=%s http=%d",
                username, status, resp.status_code,
            )
            return False
        return True

    def disable_user(self, remote_user_id: str) -> bool:
        return self._set_status(remote_user_id, "disabled")

    def enable_user(self, remote_user_id: str) -> bool:
        return self._set_status(remote_user_id, "active")
