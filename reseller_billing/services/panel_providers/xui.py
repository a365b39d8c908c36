"""
XUI (3x-ui) Provisioner
=======================

Session-cookie login at ``POST /login``. Clients live inside inbound
settings, so a toggle means: find the inbound holding the client (matched
by email or id), flip ``enable`` and push it back through
``POST /panel/api/inbounds/updateClient/{client_key}``.
"""

import json
import logging
from typing import Optional, Tuple

import httpx

from reseller_billing.services.panel_providers.base import (
    BasePanelProvisioner,
    PanelAuthenticationError,
    PanelProviderError,
)

logger = logging.getLogger(__name__)


class XUIProvisioner(BasePanelProvisioner):
    panel_type = "xui"

    def _login(self, client: httpx.Client) -> None:
        resp = client.post(
            "/login",
            data={"username": self.credentials.username, "password": self.credentials.password},
        )
        if resp.status_code != 200 or not resp.json().get("success"):
            raise PanelAuthenticationError(
                f"login failed with HTTP {resp.status_code}", panel_type=self.panel_type
            )

    def _find_client(self, client: httpx.Client, remote_user_id: str) -> Optional[Tuple[int, dict]]:
        resp = client.get("/panel/api/inbounds/list")
        body = resp.json() if resp.status_code == 200 else {}
        if not body.get("success"):
            raise PanelProviderError(
                f"inbound list failed with HTTP {resp.status_code}", panel_type=self.panel_type
            )
        for inbound in body.get("obj") or []:
            raw = inbound.get("settings") or "{}"
            settings = json.loads(raw) if isinstance(raw, str) else raw
            for entry in settings.get("clients", []):
                if remote_user_id in (entry.get("email"), entry.get("id")):
                    return inbound["id"], entry
        return None

    def _set_enabled(self, remote_user_id: str, enabled: bool) -> bool:
        with self._client() as client:
            self._login(client)
            found = self._find_client(client, remote_user_id)
            if found is None:
                logger.warning("xui_client_not_found user=%s", remote_user_id)
                return False
            inbound_id, entry = found
            entry = {**entry, "enable": enabled}
            client_key = entry.get("id") or entry.get("password") or entry.get("email")
            resp = client.post(
                f"/panel/api/inbounds/updateClient/{client_key}",
                json={"id": inbound_id, "settings": json.dumps({"clients": [entry]})},
            )
        if resp.status_code != 200 or not resp.json().get("success"):
            logger.warning(
                "xui_client_update_failed user=%s enable=%s http=%d",
                remote_user_id, enabled, resp.status_code,
            )
            return False
        return True

    def disable_user(self, remote_user_id: str) -> bool:
        return self._set_enabled(remote_user_id, False)

    def enable_user(self, remote_user_id: str) -> bool:
        return self._set_enabled(remote_user_id, True)
