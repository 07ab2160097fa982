"""
Error registry for billing infrastructure faults.

registry.yaml maps each BG-<DOMAIN>-NNN code to the HTTP status, the
message shown to callers and remediation steps. Policy denials
(TRIAL_EXPIRED, API_KEY_MISSING, ...) are not registered here; they
travel as BillingError values.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import yaml

from billing_guard.core.errors import CODE_PATTERN

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY_PATH = os.path.join(os.path.dirname(__file__), "registry.yaml")

# DB: billing store, PAY: payment processor, API: request/resource, SEC: signatures and stored keys
VALID_DOMAINS = {"API", "DB", "PAY", "SEC"}
VALID_SEVERITIES = {"DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"}
REQUIRED_FIELDS = {
    "code", "domain", "title", "severity", "retryable",
    "user_action_required", "http_status", "safe_message", "remediation",
}


@dataclass(frozen=True)
class ErrorEntry:
    code: str
    domain: str
    title: str
    severity: str
    retryable: bool
    user_action_required: bool
    http_status: int
    safe_message: str
    remediation: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)


class RegistryValidationError(Exception):
    """Raised when registry.yaml has structural errors."""


def _parse_entry(idx: int, raw: Mapping[str, Any]) -> ErrorEntry:
    missing = REQUIRED_FIELDS - set(raw.keys())
    if missing:
        raise RegistryValidationError(f"Entry {idx} ({raw.get('code', '?')}): missing fields {missing}")

    code = raw["code"]
    if not CODE_PATTERN.match(code):
        raise RegistryValidationError(f"Invalid code format: {code!r}")

    domain = raw["domain"]
    if domain != code.split("-")[1]:
        raise RegistryValidationError(
            f"{code}: domain {domain!r} doesn't match code prefix {code.split('-')[1]!r}"
        )
    if domain not in VALID_DOMAINS:
        raise RegistryValidationError(f"{code}: unknown domain {domain!r}")
    if raw["severity"] not in VALID_SEVERITIES:
        raise RegistryValidationError(f"{code}: unknown severity {raw['severity']!r}")

    # 402 and 403 belong to policy denials, which never go through the registry
    http_status = int(raw["http_status"])
    if not 400 <= http_status <= 599 or http_status in (402, 403):
        raise RegistryValidationError(f"{code}: http_status {http_status} not allowed for a fault")

    remediation = raw["remediation"] or []
    if not isinstance(remediation, list):
        raise RegistryValidationError(f"{code}: remediation must be a list")

    return ErrorEntry(
        code=code,
        domain=domain,
        title=raw["title"],
        severity=raw["severity"],
        retryable=bool(raw["retryable"]),
        user_action_required=bool(raw["user_action_required"]),
        http_status=http_status,
        safe_message=raw["safe_message"],
        remediation=list(remediation),
        tags=list(raw.get("tags") or []),
    )


class ErrorRegistry:
    """Loads, validates, and provides lookup for error codes."""

    def __init__(self) -> None:
        self._entries: Dict[str, ErrorEntry] = {}
        self.schema_version: int = 0

    @property
    def loaded(self) -> bool:
        return bool(self._entries)

    def load(self, path: Optional[str] = None) -> None:
        with open(path or DEFAULT_REGISTRY_PATH, "r") as f:
            data = yaml.safe_load(f) or {}

        errors_list = data.get("errors", [])
        if not isinstance(errors_list, list):
            raise RegistryValidationError("'errors' must be a list")

        entries: Dict[str, ErrorEntry] = {}
        for idx, raw in enumerate(errors_list):
            entry = _parse_entry(idx, raw)
            if entry.code in entries:
                raise RegistryValidationError(f"Duplicate code: {entry.code}")
            entries[entry.code] = entry

        self._entries = entries
        self.schema_version = data.get("schema_version", 0)
        logger.info("error_registry_loaded", extra={"count": len(entries), "schema_version": self.schema_version})

    def ensure_loaded(self) -> None:
        """Load the packaged registry if nothing has been loaded yet."""
        if not self.loaded:
            self.load()

    def get(self, code: str) -> Optional[ErrorEntry]:
        return self._entries.get(code)

    def lookup(self, code: str) -> ErrorEntry:
        """Lookup by code, raising KeyError if not found."""
        entry = self._entries.get(code)
        if entry is None:
            raise KeyError(f"Unknown error code: {code!r}")
        return entry

    def all_codes(self) -> List[str]:
        return list(self._entries.keys())

    def codes_for_domain(self, domain: str) -> List[str]:
        return [code for code, entry in self._entries.items() if entry.domain == domain]

    def __len__(self) -> int:
        return len(self._entries)


# Module-level singleton, loaded once by the app lifespan
error_registry = ErrorRegistry()
