"""
Error registry — loads registry.yaml and maps KLY-* codes to HTTP responses.

``load()`` raises RegistryValidationError on a malformed entry and on any
KlyaError subclass whose default code has no entry.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

import yaml

from app.core.errors import CODE_PATTERN, KlyaError

logger = logging.getLogger(__name__)

VALID_DOMAINS = {"API", "CFG", "SUB", "USG", "PAY", "WHK", "GEN", "SYS"}
SEVERITY_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}
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

    @property
    def log_level(self) -> int:
        return SEVERITY_LEVELS[self.severity]


class RegistryValidationError(Exception):
    """Raised when registry.yaml has structural errors."""


def _parse_entry(idx: int, raw: dict) -> ErrorEntry:
    missing = REQUIRED_FIELDS - set(raw)
    if missing:
        raise RegistryValidationError(f"Entry {idx} ({raw.get('code', '?')}): missing fields {sorted(missing)}")

    code, domain = raw["code"], raw["domain"]
    if not CODE_PATTERN.match(code):
        raise RegistryValidationError(f"Invalid code format: {code!r}")
    if code.split("-")[1] != domain or domain not in VALID_DOMAINS:
        raise RegistryValidationError(f"{code}: bad domain {domain!r}")
    if raw["severity"] not in SEVERITY_LEVELS:
        raise RegistryValidationError(f"{code}: unknown severity {raw['severity']!r}")
    if not 400 <= int(raw["http_status"]) <= 599:
        raise RegistryValidationError(f"{code}: http_status must be 4xx/5xx")

    return ErrorEntry(
        code=code,
        domain=domain,
        title=raw["title"],
        severity=raw["severity"],
        retryable=bool(raw["retryable"]),
        user_action_required=bool(raw["user_action_required"]),
        http_status=int(raw["http_status"]),
        safe_message=raw["safe_message"],
        remediation=list(raw["remediation"] or []),
    )


def _error_classes() -> Iterable[type]:
    pending = [KlyaError]
    while pending:
        cls = pending.pop()
        yield cls
        pending.extend(cls.__subclasses__())


class ErrorRegistry:
    def __init__(self) -> None:
        self._entries: Dict[str, ErrorEntry] = {}
        self.schema_version: int = 0

    def load(self, path: str | None = None) -> None:
        path = path or os.path.join(os.path.dirname(__file__), "registry.yaml")
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        raw_entries = data.get("errors", [])
        if not isinstance(raw_entries, list):
            raise RegistryValidationError("'errors' must be a list")

        entries: Dict[str, ErrorEntry] = {}
        for idx, raw in enumerate(raw_entries):
            entry = _parse_entry(idx, raw)
            if entry.code in entries:
                raise RegistryValidationError(f"Duplicate code: {entry.code}")
            entries[entry.code] = entry

        unregistered = sorted({c.default_code for c in _error_classes()} - set(entries))
        if unregistered:
            raise RegistryValidationError(f"Error classes without a registry entry: {unregistered}")

        self._entries = entries
        self.schema_version = data.get("schema_version", 0)
        logger.info("error_registry_loaded", extra={"count": len(entries), "schema_version": self.schema_version})

    def get(self, code: str) -> ErrorEntry | None:
        return self._entries.get(code)

    def __len__(self) -> int:
        return len(self._entries)


# Module-level singleton, loaded once at startup
error_registry = ErrorRegistry()
