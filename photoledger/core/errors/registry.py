"""
Error registry: the catalogue behind PhotoLedgerError codes.

registry.yaml is the single source for how an error is presented and
handled: user-safe message, whether retrying makes sense, and the log
severity. The registry loads itself on first lookup; call load() at
startup to fail fast on a malformed file.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping

import yaml

from photoledger.core.errors import CODE_PATTERN, PhotoLedgerError

logger = logging.getLogger(__name__)

DEFAULT_PATH = os.path.join(os.path.dirname(__file__), "registry.yaml")

VALID_DOMAINS = frozenset({"LDG", "SUB", "PUR", "NET", "WFL", "SYS"})

SEVERITY_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

_REQUIRED = ("code", "domain", "title", "severity", "retryable", "user_action_required", "safe_message")

FALLBACK_MESSAGE = "Something went wrong."


@dataclass(frozen=True)
class ErrorEntry:
    code: str
    domain: str
    title: str
    severity: str
    retryable: bool
    user_action_required: bool
    safe_message: str
    remediation: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)

    @property
    def log_level(self) -> int:
        return SEVERITY_LEVELS[self.severity]


class RegistryValidationError(Exception):
    """registry.yaml is structurally invalid."""


def _parse_entry(position: int, raw: Mapping[str, Any]) -> ErrorEntry:
    missing = [name for name in _REQUIRED if name not in raw]
    if missing:
        raise RegistryValidationError(f"entry #{position} ({raw.get('code', '?')}): missing {', '.join(missing)}")

    code = raw["code"]
    if not CODE_PATTERN.match(code):
        raise RegistryValidationError(f"entry #{position}: malformed code {code!r}")
    prefix = code.split("-")[1]
    if raw["domain"] != prefix:
        raise RegistryValidationError(f"{code}: domain {raw['domain']!r} does not match prefix {prefix!r}")
    if prefix not in VALID_DOMAINS:
        raise RegistryValidationError(f"{code}: unknown domain {prefix!r}")
    if raw["severity"] not in SEVERITY_LEVELS:
        raise RegistryValidationError(f"{code}: unknown severity {raw['severity']!r}")

    return ErrorEntry(
        code=code,
        domain=prefix,
        title=raw["title"],
        severity=raw["severity"],
        retryable=bool(raw["retryable"]),
        user_action_required=bool(raw["user_action_required"]),
        safe_message=raw["safe_message"],
        remediation=list(raw.get("remediation") or []),
        tags=list(raw.get("tags") or []),
    )


class ErrorRegistry:
    def __init__(self, path: str = DEFAULT_PATH) -> None:
        self._path = path
        self._entries: Dict[str, ErrorEntry] = {}
        self._loaded = False
        self._lock = threading.Lock()
        self.schema_version = 0

    def load(self, path: str | None = None) -> None:
        """Parse and validate the YAML file, replacing any loaded entries."""
        path = path or self._path
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        raw_entries = data.get("errors", [])
        if not isinstance(raw_entries, list):
            raise RegistryValidationError("'errors' must be a list")

        entries: Dict[str, ErrorEntry] = {}
        for position, raw in enumerate(raw_entries):
            entry = _parse_entry(position, raw)
            if entry.code in entries:
                raise RegistryValidationError(f"duplicate code {entry.code}")
            entries[entry.code] = entry

        with self._lock:
            self._entries = entries
            self.schema_version = int(data.get("schema_version", 0))
            self._loaded = True
        logger.info("Error registry loaded: codes=%d schema_version=%d", len(entries), self.schema_version)

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, code: str) -> ErrorEntry | None:
        self._ensure_loaded()
        return self._entries.get(code)

    def lookup(self, code: str) -> ErrorEntry:
        entry = self.get(code)
        if entry is None:
            raise KeyError(f"unknown error code {code!r}")
        return entry

    def codes_for_domain(self, domain: str) -> List[str]:
        self._ensure_loaded()
        return sorted(code for code, entry in self._entries.items() if entry.domain == domain)

    def __len__(self) -> int:
        self._ensure_loaded()
        return len(self._entries)

    # ------------------------------------------------------------------
    # Error handling helpers
    # ------------------------------------------------------------------

    def is_retryable(self, error: PhotoLedgerError) -> bool:
        entry = self.get(error.code)
        return entry is not None and entry.retryable

    def log_level(self, error: PhotoLedgerError) -> int:
        entry = self.get(error.code)
        return entry.log_level if entry is not None else logging.ERROR

    def describe(self, error: PhotoLedgerError) -> dict:
        """User-safe payload: never includes error.detail or context."""
        entry = self.get(error.code)
        if entry is None:
            return {"code": error.code, "message": FALLBACK_MESSAGE, "retryable": False}
        return {
            "code": entry.code,
            "title": entry.title,
            "message": entry.safe_message,
            "retryable": entry.retryable,
            "user_action_required": entry.user_action_required,
        }


error_registry = ErrorRegistry()
