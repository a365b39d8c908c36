"""
Error code system.

BillingError is the base exception for all structured billing errors.
Skip conditions (non-wallet reseller, no delta, ...) are never raised:
they come back as result values with a ``reason`` code.

Usage:
    from reseller_billing.core.errors import BillingError
    raise BillingError("RB-DB-001", detail="snapshot insert failed")

Codes:
    RB-DB-001   charge persistence failed (snapshot + balance + status)
    RB-DB-002   final settlement persistence failed
    RB-RSL-001  reseller not found
    RB-PNL-001  unknown / unsupported panel type
"""

from __future__ import annotations

import re

CODE_PATTERN = re.compile(r"^RB-[A-Z]{2,6}-\d{3}$")


class BillingError(Exception):
    """Structured billing error.

    Args:
        code: Error code, e.g. "RB-DB-001".
        detail: Internal detail message.
        context: Arbitrary key-value context for structured logging.
    """

    def __init__(
        self,
        code: str,
        detail: str | None = None,
        context: dict | None = None,
    ) -> None:
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = context or {}
        super().__init__(f"{code}: {detail}" if detail else code)


class ChargePersistenceError(BillingError):
    """Snapshot, balance and status could not be written as one unit."""

    def __init__(self, reseller_id: int, detail: str | None = None, code: str = "RB-DB-001") -> None:
        super().__init__(code, detail=detail, context={"reseller_id": reseller_id})
        self.reseller_id = reseller_id


class ResellerNotFoundError(BillingError):
    def __init__(self, reseller_id: int) -> None:
        super().__init__(
            "RB-RSL-001",
            detail=f"reseller {reseller_id} does not exist",
            context={"reseller_id": reseller_id},
        )
        self.reseller_id = reseller_id


class UnknownPanelTypeError(BillingError):
    def __init__(self, panel_type: str | None) -> None:
        super().__init__(
            "RB-PNL-001",
            detail=f"no provisioner registered for panel type {panel_type!r}",
            context={"panel_type": panel_type},
        )
        self.panel_type = panel_type
