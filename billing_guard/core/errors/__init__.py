"""
Error code system for infrastructure faults.

BillingGuardError is the base exception for failures that mean
"unknown — do not proceed" (store unavailable, processor unreachable).
Policy denials are never raised; they are returned as BillingError values.

Usage:
    from billing_guard.core.errors import BillingGuardError
    raise BillingGuardError("BG-DB-001", detail="database is locked")
"""

from __future__ import annotations

import re

CODE_PATTERN = re.compile(r"^BG-[A-Z]{2,6}-\d{3}$")


class BillingGuardError(Exception):
    """Structured application error tied to the error registry.

    Args:
        code: Registry error code, e.g. "BG-DB-001".
        detail: Internal-only detail message (never exposed to users).
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
