from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional

from audit_log import AuditPolicy

DEFAULT_CHALLENGE = "Digital Vault - Authorize file access"


def _bool_env(name: str, default: bool = False) -> bool:
    v = os.getenv(name, "")
    if v == "":
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")


def _float_env(name: str, default: float) -> float:
    v = os.getenv(name, "").strip()
    if not v:
        return default
    try:
        return float(v)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {v!r}") from None


def _positive(name: str, value: Any) -> float:
    out = float(value)
    if out <= 0:
        raise ValueError(f"{name} must be positive")
    return out


@dataclass(frozen=True)
class OrchestratorConfig:
    ledger_timeout_s: float = 30.0
    storage_timeout_s: float = 60.0
    signer_timeout_s: float = 120.0
    location_timeout_s: float = 15.0
    challenge_message: str = DEFAULT_CHALLENGE
    refresh_registry: bool = True
    audit_log_path: Optional[str] = None
    audit: AuditPolicy = field(default_factory=AuditPolicy)

    def __post_init__(self) -> None:
        for name in ("ledger_timeout_s", "storage_timeout_s", "signer_timeout_s", "location_timeout_s"):
            _positive(name, getattr(self, name))
        if not self.challenge_message:
            raise ValueError("challenge_message must not be empty")

    @property
    def challenge(self) -> bytes:
        return self.challenge_message.encode("utf-8")

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "OrchestratorConfig":
        timeouts = raw.get("timeouts", {}) or {}
        audit_raw = raw.get("audit", {}) or {}
        return cls(
            ledger_timeout_s=float(timeouts.get("ledger", cls.ledger_timeout_s)),
            storage_timeout_s=float(timeouts.get("storage", cls.storage_timeout_s)),
            signer_timeout_s=float(timeouts.get("signer", cls.signer_timeout_s)),
            location_timeout_s=float(timeouts.get("location", cls.location_timeout_s)),
            challenge_message=str(raw.get("challenge_message", DEFAULT_CHALLENGE)),
            refresh_registry=bool(raw.get("refresh_registry", True)),
            audit_log_path=raw.get("audit_log_path"),
            audit=AuditPolicy(
                include_metadata=bool(audit_raw.get("include_metadata", True)),
                redact_metadata_keys=tuple(audit_raw.get("redact_metadata_keys", [])),
            ),
        )

    @classmethod
    def from_env(cls, base: Optional["OrchestratorConfig"] = None) -> "OrchestratorConfig":
        """Environment overrides on top of `base` (or the defaults)."""
        base = base or cls()
        audit_path = os.getenv("CAPSULE_AUDIT_LOG_PATH") or base.audit_log_path
        return replace(
            base,
            ledger_timeout_s=_float_env("CAPSULE_LEDGER_TIMEOUT", base.ledger_timeout_s),
            storage_timeout_s=_float_env("CAPSULE_STORAGE_TIMEOUT", base.storage_timeout_s),
            signer_timeout_s=_float_env("CAPSULE_SIGNER_TIMEOUT", base.signer_timeout_s),
            location_timeout_s=_float_env("CAPSULE_LOCATION_TIMEOUT", base.location_timeout_s),
            refresh_registry=_bool_env("CAPSULE_REFRESH_REGISTRY", base.refresh_registry),
            audit_log_path=audit_path,
        )
