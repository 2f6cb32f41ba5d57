from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from collaborators import Ed25519Signer, InMemoryLedger, InMemoryStorage
from contracts import Capsule, CapsuleMetadata, CollaboratorError, ErrorKind, Location, RegistrationReceipt, WrappedKey
from envelope_crypto import EncryptionEngine, SecretKey

T0 = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)
FORT_BRAGG = Location(latitude=35.1427, longitude=-79.0059)
SEED_A = bytes(range(32))
SEED_B = bytes(range(1, 33))


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class RecordingStorage(InMemoryStorage):
    def __init__(self, *, fail_put: Optional[Exception] = None, put_delay: float = 0.0) -> None:
        super().__init__()
        self.calls: list[str] = []
        self.fail_put = fail_put
        self.put_delay = put_delay

    async def put(self, data: bytes) -> str:
        self.calls.append("put")
        if self.put_delay:
            await asyncio.sleep(self.put_delay)
        if self.fail_put is not None:
            raise self.fail_put
        return await super().put(data)

    async def get(self, address: str) -> bytes:
        self.calls.append("get")
        return await super().get(address)

    def tamper(self, address: str) -> None:
        blob = bytearray(self._blobs[address])
        blob[-1] ^= 0x01
        self._blobs[address] = bytes(blob)


class RecordingLedger(InMemoryLedger):
    def __init__(self, *, clock: FakeClock, fail_register: Optional[Exception] = None) -> None:
        super().__init__(clock=clock)
        self.calls: list[str] = []
        self.fail_register = fail_register
        self.eligibility_override: Optional[bool] = None
        # Listing lags behind registration while set.
        self.listing_lag = False

    async def register(self, metadata: CapsuleMetadata) -> RegistrationReceipt:
        self.calls.append("register")
        if self.fail_register is not None:
            raise self.fail_register
        return await super().register(metadata)

    async def query_eligibility(self, capsule_id: str, location: Optional[Location] = None) -> bool:
        self.calls.append("query_eligibility")
        if self.eligibility_override is not None:
            return self.eligibility_override
        return await super().query_eligibility(capsule_id, location)

    async def list_capsules(self, owner: str) -> Sequence[Capsule]:
        self.calls.append("list_capsules")
        if self.listing_lag:
            return []
        return await super().list_capsules(owner)


class RecordingSigner:
    def __init__(self, seed: bytes = SEED_A, *, delay: float = 0.0, error: Optional[ErrorKind] = None) -> None:
        self._inner = Ed25519Signer.from_seed(seed)
        self.delay = delay
        self.error = error
        self.events: list[str] = []

    @property
    def calls(self) -> int:
        return self.events.count("start")

    async def sign(self, message: bytes) -> bytes:
        self.events.append("start")
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise CollaboratorError("signing refused", kind=self.error)
            return await self._inner.sign(message)
        finally:
            self.events.append("end")


class HangingSigner:
    async def sign(self, message: bytes) -> bytes:
        await asyncio.sleep(3600)
        return b""


class RecordingEngine(EncryptionEngine):
    """Keeps a handle on every key it hands out so tests can check wiping."""

    def __init__(self) -> None:
        super().__init__()
        self.keys: list[SecretKey] = []

    def generate_content_key(self) -> SecretKey:
        return self._keep(super().generate_content_key())

    def derive_wrapping_key(self, secret) -> SecretKey:
        return self._keep(super().derive_wrapping_key(secret))

    def unwrap_key(self, wrapped: WrappedKey, wrapping_key: SecretKey) -> SecretKey:
        return self._keep(super().unwrap_key(wrapped, wrapping_key))

    def _keep(self, key: SecretKey) -> SecretKey:
        self.keys.append(key)
        return key
