"""In-process ledger and content-addressed store.

Both hold state in memory only and are meant for local runs and tests; real
deployments plug their own transport behind the same protocols."""

from __future__ import annotations

import asyncio
import hashlib
import itertools
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

from contracts.errors import CollaboratorError, ErrorKind
from contracts.schemas import (
    Capsule,
    CapsuleMetadata,
    Classification,
    Geofence,
    Location,
    RegistrationReceipt,
    as_utc,
    utc_now,
)
from eligibility_policy import DEFAULT_POLICY, EligibilityPolicy

logger = logging.getLogger(__name__)


def content_address(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


class InMemoryStorage:
    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}

    async def put(self, data: bytes) -> str:
        address = content_address(bytes(data))
        self._blobs.setdefault(address, bytes(data))
        return address

    async def get(self, address: str) -> bytes:
        try:
            return self._blobs[address]
        except KeyError:
            raise CollaboratorError(f"no content at {address}", kind=ErrorKind.NOT_FOUND) from None

    def __contains__(self, address: object) -> bool:
        return address in self._blobs

    def __len__(self) -> int:
        return len(self._blobs)


@dataclass(frozen=True)
class LedgerRecord:
    """A capsule as the ledger stores it: integer seconds, micro-degree
    coordinates and a numeric priority code."""

    owner: str
    title: str
    description: str
    priority: int
    content_pointer: str
    wrapped_content_key: str
    unlock_time: int
    has_geo_lock: bool
    latitude: int
    longitude: int
    radius: int
    content_name: str
    content_type: str
    content_size: int
    created_at: int

    @classmethod
    def encode(cls, metadata: CapsuleMetadata) -> "LedgerRecord":
        fence = metadata.geofence
        latitude, longitude, radius = fence.to_micro_degrees() if fence is not None else (0, 0, 0)
        return cls(
            owner=metadata.owner,
            title=metadata.title,
            description=metadata.description,
            priority=metadata.classification.ledger_code,
            content_pointer=metadata.content_pointer,
            wrapped_content_key=metadata.wrapped_content_key,
            unlock_time=math.floor(as_utc(metadata.unlock_timestamp).timestamp()),
            has_geo_lock=fence is not None,
            latitude=latitude,
            longitude=longitude,
            radius=radius,
            content_name=metadata.content_name,
            content_type=metadata.content_type,
            content_size=metadata.content_size,
            created_at=math.floor(as_utc(metadata.created_at).timestamp()),
        )

    def decode(self) -> CapsuleMetadata:
        return CapsuleMetadata(
            owner=self.owner,
            title=self.title,
            description=self.description,
            classification=Classification.from_ledger_code(self.priority),
            content_pointer=self.content_pointer,
            wrapped_content_key=self.wrapped_content_key,
            unlock_timestamp=datetime.fromtimestamp(self.unlock_time, tz=timezone.utc),
            geofence=(
                Geofence.from_micro_degrees(self.latitude, self.longitude, self.radius) if self.has_geo_lock else None
            ),
            content_name=self.content_name,
            content_type=self.content_type,
            content_size=self.content_size,
            created_at=datetime.fromtimestamp(self.created_at, tz=timezone.utc),
        )


class InMemoryLedger:
    """Registers capsules and re-derives unlock eligibility from its own records."""

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = utc_now,
        policy: EligibilityPolicy = DEFAULT_POLICY,
    ) -> None:
        self._clock = clock
        self._policy = policy
        self._records: dict[str, LedgerRecord] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def register(self, metadata: CapsuleMetadata) -> RegistrationReceipt:
        if as_utc(metadata.unlock_timestamp) <= as_utc(self._clock()):
            raise CollaboratorError("unlock time must be in the future", kind=ErrorKind.LEDGER_REJECTED)
        if not metadata.content_pointer or not metadata.wrapped_content_key:
            raise CollaboratorError("missing content pointer or wrapped key", kind=ErrorKind.LEDGER_REJECTED)

        async with self._lock:
            capsule_id = str(next(self._ids))
            self._records[capsule_id] = LedgerRecord.encode(metadata)

        digest = hashlib.sha256(f"{capsule_id}|{metadata.owner}|{metadata.content_pointer}".encode("utf-8"))
        logger.info(f"[InMemoryLedger] Registered capsule {capsule_id} for {metadata.owner}")
        return RegistrationReceipt(capsule_id=capsule_id, receipt="0x" + digest.hexdigest())

    async def query_eligibility(self, capsule_id: str, location: Optional[Location] = None) -> bool:
        metadata = self._lookup(capsule_id).decode()
        return self._policy.evaluate(metadata, now=self._clock(), location=location).eligible

    async def list_capsules(self, owner: str) -> Sequence[Capsule]:
        return [
            Capsule.from_metadata(capsule_id, record.decode())
            for capsule_id, record in sorted(self._records.items(), key=lambda kv: int(kv[0]))
            if record.owner == owner
        ]

    def _lookup(self, capsule_id: str) -> LedgerRecord:
        try:
            return self._records[str(capsule_id)]
        except KeyError:
            raise CollaboratorError(f"unknown capsule {capsule_id}", kind=ErrorKind.NOT_FOUND) from None

    def __len__(self) -> int:
        return len(self._records)
