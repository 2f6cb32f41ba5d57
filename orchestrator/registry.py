from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional

from contracts.schemas import Capsule, FailureReason, LifecycleState

logger = logging.getLogger(__name__)


class CapsuleRegistry:
    """Session view of known capsules. Writes go through one lock so two
    pipelines finishing together cannot lose each other's update."""

    def __init__(self) -> None:
        self._capsules: dict[str, Capsule] = {}
        # Sealed locally but not yet seen in a ledger listing.
        self._unconfirmed: set[str] = set()
        self._write_lock = asyncio.Lock()

    def get(self, capsule_id: str) -> Optional[Capsule]:
        return self._capsules.get(str(capsule_id))

    def list(self, owner: Optional[str] = None) -> list[Capsule]:
        return [c for c in self._capsules.values() if owner is None or c.owner == owner]

    async def upsert(self, capsule: Capsule, *, unconfirmed: bool = False) -> Capsule:
        async with self._write_lock:
            if unconfirmed:
                self._unconfirmed.add(capsule.id)
            self._capsules[capsule.id] = capsule
        return capsule

    async def set_state(
        self,
        capsule_id: str,
        state: LifecycleState,
        failure: Optional[FailureReason] = None,
    ) -> Optional[Capsule]:
        async with self._write_lock:
            current = self._capsules.get(str(capsule_id))
            if current is None:
                return None
            updated = current.with_state(state, failure)
            self._capsules[updated.id] = updated
        return updated

    async def replace_owner(self, owner: str, capsules: Iterable[Capsule]) -> int:
        """Swap in the ledger's list for `owner`, keeping local lifecycle state
        (Unlocked / Failed) for capsules the ledger still reports. Capsules this
        session registered survive a listing that does not show them yet."""
        incoming = list(capsules)
        async with self._write_lock:
            previous = {cid: c for cid, c in self._capsules.items() if c.owner == owner}
            reported = {c.id for c in incoming}
            for cid in previous:
                if cid in reported or cid not in self._unconfirmed:
                    del self._capsules[cid]
            self._unconfirmed -= reported
            for capsule in incoming:
                known = previous.get(capsule.id)
                if known is not None and known.lifecycle_state != LifecycleState.SEALED:
                    capsule = capsule.with_state(known.lifecycle_state, known.failure)
                self._capsules[capsule.id] = capsule
        logger.debug(f"[CapsuleRegistry] Refreshed {len(incoming)} capsules for {owner}")
        return len(incoming)

    def __len__(self) -> int:
        return len(self._capsules)

    def __contains__(self, capsule_id: object) -> bool:
        return str(capsule_id) in self._capsules
