from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Sequence, runtime_checkable

from contracts.schemas import Capsule, CapsuleMetadata, Location, RegistrationReceipt


@runtime_checkable
class Ledger(Protocol):
    """Authoritative registration and unlock authorization."""

    async def register(self, metadata: CapsuleMetadata) -> RegistrationReceipt: ...

    async def query_eligibility(self, capsule_id: str, location: Optional[Location] = None) -> bool: ...

    async def list_capsules(self, owner: str) -> Sequence[Capsule]: ...


@runtime_checkable
class Storage(Protocol):
    """Content-addressed byte store. `put` is idempotent for identical bytes."""

    async def put(self, data: bytes) -> str: ...

    async def get(self, address: str) -> bytes: ...


@runtime_checkable
class Signer(Protocol):
    async def sign(self, message: bytes) -> bytes: ...


@runtime_checkable
class LocationProvider(Protocol):
    async def current_location(self) -> Location: ...


@dataclass(frozen=True)
class Session:
    # One signing identity per session; passed explicitly into every pipeline.
    owner: str
    signer: Signer
    location_provider: Optional[LocationProvider] = None
