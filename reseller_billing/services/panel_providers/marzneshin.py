"""
Marzneshin Provisioner
======================

Admin token from ``POST /api/admins/token``, then the dedicated
``/api/users/{username}/disable`` and ``/enable`` endpoints.
"""

import logging

from reseller_billing.services.panel_providers.marzban import MarzbanProvisioner

logger = logging.getLogger(__name__)


class MarzneshinProvisioner(MarzbanProvisioner):
    panel_type = "marzneshin"
    token_path = "/api/admins/token"

    def _toggle(self, username: str, action: str) -> bool:
        with self._client() as client:
            token = self._login(client)
            resp = client.post(
                f"/api/users/{username}/{action}",
                headers={"Authorization": f"Bearer {token}"},
            )
        if resp.status_code != 200:
            logger.warning("marzneshin_%s_failed user=%s http=%d", action, username, resp.status_code)
            return False
        return True

    def disable_user(self, remote_user_id: str) -> bool:
        return self._toggle(remote_user_id, "disable")

    def enable_user(self, remote_user_id: str) -> bool:
        return self._toggle(remote_user_id, "enable")
