"""
Panel Provisioner Base Class
============================

Abstract base class, result types and retry helper shared by the
panel-type specific provisioners (Marzban, Marzneshin, XUI, Eylandoo).

Every provisioner exposes the same two capabilities, ``disable_user`` and
``enable_user``, each returning True only when the panel confirmed the
change. Transport errors propagate as exceptions and are turned into a
``RemoteResult`` by ``retry_operation``.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import httpx

logger = logging.getLogger(__name__)

RETRY_DELAYS = [1.0, 3.0]  # 3 attempts: immediate, +1s, +3s
DEFAULT_TIMEOUT = 30.0


@dataclass(frozen=True)
class PanelCredentials:
    panel_id: Optional[int]
    panel_type: str
    url: str
    username: Optional[str] = None
    password: Optional[str] = None
    api_token: Optional[str] = None
    node_hostname: Optional[str] = None


@dataclass(frozen=True)
class RemoteResult:
    success: bool
    attempts: int
    last_error: Optional[str] = None


class PanelProviderError(Exception):
    """Base exception for panel API errors."""

    def __init__(self, message: str, panel_type: str = "unknown", original_error: Exception = None):
        self.message = message
        self.panel_type = panel_type
        self.original_error = original_error
        super().__init__(self.message)


class PanelAuthenticationError(PanelProviderError):
    """Raised when the panel rejects the stored credentials."""
    pass


class BasePanelProvisioner(ABC):
    """
    Abstract base class for panel provisioners.

    Subclasses set ``panel_type`` and implement the two remote calls. The
    HTTP client is created per operation and closed afterwards.
    """

    panel_type: str = ""

    def __init__(
        self,
        credentials: PanelCredentials,
        timeout: float = DEFAULT_TIMEOUT,
        verify: bool = False,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.credentials = credentials
        self.timeout = timeout
        self.verify = verify
        self._transport = transport

    def missing_credentials(self) -> Optional[str]:
        """Return an error message when required credentials are absent."""
        c = self.credentials
        if not c.url or not c.username or not c.password:
            return "Missing url/username/password"
        return None

    def _client(self, headers: Optional[dict] = None) -> httpx.Client:
        return httpx.Client(
            base_url=self.credentials.url.rstrip("/"),
            timeout=self.timeout,
            verify=self.verify,
            transport=self._transport,
            headers={"Accept": "application/json", **(headers or {})},
        )

    @abstractmethod
    def disable_user(self, remote_user_id: str) -> bool:
        """Disable *remote_user_id* on the panel. True when confirmed."""

    @abstractmethod
    def enable_user(self, remote_user_id: str) -> bool:
        """Enable *remote_user_id* on the panel. True when confirmed."""


def retry_operation(
    operation: Callable[[], bool],
    description: str,
    delays: Sequence[float] = RETRY_DELAYS,
    sleep: Callable[[float], None] = time.sleep,
) -> RemoteResult:
    """Run *operation* up to ``len(delays) + 1`` times.

    A False return and a raised exception are both retryable failures.
    """
    max_attempts = len(delays) + 1
    last_error: Optional[str] = None

    for attempt in range(1, max_attempts + 1):
        if attempt > 1:
            sleep(delays[attempt - 2])
        try:
            if operation():
                if attempt > 1:
                    logger.info("panel_op_succeeded_after_retry op=%r attempt=%d", description, attempt)
                return RemoteResult(success=True, attempts=attempt)
            last_error = "Operation returned false"
        except Exception as exc:
            last_error = str(exc) or type(exc).__name__
        logger.warning(
            "panel_op_attempt_failed op=%r attempt=%d/%d error=%s",
            description, attempt, max_attempts, last_error,
        )

    logger.error("panel_op_failed op=%r attempts=%d error=%s", description, max_attempts, last_error)
    return RemoteResult(success=False, attempts=max_attempts, last_error=last_error)
