from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Tuple

from contracts.schemas import Capsule, FailureReason, LifecycleState

# Secret-bearing fields are never written, whatever the policy says.
_ALWAYS_REDACTED = frozenset({"wrapped_content_key", "plaintext", "content_key", "wrapping_key", "signature"})


@dataclass(frozen=True)
class AuditPolicy:
    include_metadata: bool = True
    redact_metadata_keys: Tuple[str, ...] = ()


@dataclass(frozen=True)
class AuditEvent:
    ts_utc: str
    pipeline: str
    attempt_key: str
    capsule_id: Optional[str]
    owner: str
    state: str
    failure_kind: Optional[str]
    failure_step: Optional[str]
    steps: Tuple[str, ...]
    metadata_snapshot: dict[str, Any] | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ts_utc": self.ts_utc,
            "pipeline": self.pipeline,
            "attempt_key": self.attempt_key,
            "capsule_id": self.capsule_id,
            "owner": self.owner,
            "state": self.state,
            "failure": (
                {"kind": self.failure_kind, "step": self.failure_step}
                if self.failure_kind is not None
                else None
            ),
            "steps": list(self.steps),
            "metadata_snapshot": self.metadata_snapshot,
        }


def _snapshot(capsule: Capsule, policy: AuditPolicy) -> dict[str, Any]:
    raw = {
        "title": capsule.title,
        "description": capsule.description,
        "classification": capsule.classification.value,
        "content_pointer": capsule.content_pointer,
        "unlock_timestamp": capsule.unlock_timestamp.isoformat(),
        "geo_locked": capsule.has_geo_lock,
    }
    redactions = {k for k in policy.redact_metadata_keys if isinstance(k, str) and k} | _ALWAYS_REDACTED
    return {k: v for k, v in raw.items() if k not in redactions}


def build_audit_event(
    *,
    pipeline: str,
    attempt_key: str,
    owner: str,
    state: LifecycleState,
    steps: Tuple[str, ...] = (),
    capsule: Optional[Capsule] = None,
    failure: Optional[FailureReason] = None,
    policy: AuditPolicy = AuditPolicy(),
) -> AuditEvent:
    ts = datetime.now(timezone.utc).isoformat()

    metadata_snapshot: dict[str, Any] | None = None
    if policy.include_metadata and capsule is not None:
        metadata_snapshot = _snapshot(capsule, policy)

    return AuditEvent(
        ts_utc=ts,
        pipeline=str(pipeline),
        attempt_key=str(attempt_key),
        capsule_id=capsule.id if capsule is not None else None,
        owner=str(owner),
        state=state.value,
        failure_kind=failure.kind if failure else None,
        failure_step=failure.step if failure else None,
        steps=tuple(steps),
        metadata_snapshot=metadata_snapshot,
    )


def write_audit_event(path: str, event: AuditEvent) -> None:
    line = json.dumps(event.to_dict(), sort_keys=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(line + "\n")
