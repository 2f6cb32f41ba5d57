from __future__ import annotations

import base64
import binascii
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

NONCE_SIZE = 12
MICRO_DEGREES = 1_000_000
DEFAULT_CONTENT_TYPE = "application/octet-stream"


def _check_coordinates(latitude: float, longitude: float) -> None:
    if not -90.0 <= float(latitude) <= 90.0:
        raise ValueError(f"latitude out of range: {latitude}")
    if not -180.0 <= float(longitude) <= 180.0:
        raise ValueError(f"longitude out of range: {longitude}")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # Naive datetimes are taken to be UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Classification(str, Enum):
    STANDARD = "standard"
    ELEVATED = "elevated"
    CRITICAL = "critical"

    @property
    def ledger_code(self) -> int:
        return _LEDGER_CODES[self]

    @classmethod
    def from_ledger_code(cls, code: Any) -> "Classification":
        try:
            code = int(code)
        except (TypeError, ValueError):
            return cls.STANDARD
        for value, c in _LEDGER_CODES.items():
            if c == code:
                return value
        return cls.STANDARD


_LEDGER_CODES = {
    Classification.STANDARD: 0,
    Classification.ELEVATED: 1,
    Classification.CRITICAL: 2,
}


class LifecycleState(str, Enum):
    DRAFT = "draft"
    ENCRYPTING = "encrypting"
    UPLOADING = "uploading"
    KEY_WRAPPING = "key_wrapping"
    REGISTERING = "registering"
    SEALED = "sealed"
    UNLOCKING = "unlocking"
    UNLOCKED = "unlocked"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (LifecycleState.SEALED, LifecycleState.UNLOCKED, LifecycleState.FAILED)


class ReasonCode(str, Enum):
    BOTH_PENDING = "BothPending"
    TIME_PENDING = "TimePending"
    LOCATION_PENDING = "LocationPending"
    ELIGIBLE = "Eligible"


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        _check_coordinates(self.latitude, self.longitude)


@dataclass(frozen=True)
class Geofence:
    latitude: float
    longitude: float
    radius_meters: float

    def __post_init__(self) -> None:
        _check_coordinates(self.latitude, self.longitude)

    @property
    def center(self) -> GeoPoint:
        return GeoPoint(self.latitude, self.longitude)

    def to_micro_degrees(self) -> tuple[int, int, int]:
        """Ledger encoding: floored micro-degrees and whole meters."""
        return (
            math.floor(self.latitude * MICRO_DEGREES),
            math.floor(self.longitude * MICRO_DEGREES),
            int(self.radius_meters),
        )

    @classmethod
    def from_micro_degrees(cls, latitude: int, longitude: int, radius_meters: int) -> "Geofence":
        return cls(
            latitude=int(latitude) / MICRO_DEGREES,
            longitude=int(longitude) / MICRO_DEGREES,
            radius_meters=float(radius_meters),
        )

    def to_dict(self) -> dict[str, float]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "radius_meters": self.radius_meters,
        }


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float
    accuracy_meters: Optional[float] = None

    def __post_init__(self) -> None:
        _check_coordinates(self.latitude, self.longitude)

    @property
    def point(self) -> GeoPoint:
        return GeoPoint(self.latitude, self.longitude)


@dataclass(frozen=True)
class EncryptionEnvelope:
    nonce: bytes
    ciphertext: bytes

    def to_bytes(self) -> bytes:
        return self.nonce + self.ciphertext

    @classmethod
    def from_bytes(cls, data: bytes) -> "EncryptionEnvelope":
        if len(data) <= NONCE_SIZE:
            raise ValueError("envelope too short")
        return cls(nonce=bytes(data[:NONCE_SIZE]), ciphertext=bytes(data[NONCE_SIZE:]))


@dataclass(frozen=True)
class WrappedKey:
    nonce: bytes
    wrapped_bytes: bytes

    def to_bytes(self) -> bytes:
        return self.nonce + self.wrapped_bytes

    @classmethod
    def from_bytes(cls, data: bytes) -> "WrappedKey":
        if len(data) <= NONCE_SIZE:
            raise ValueError("wrapped key too short")
        return cls(nonce=bytes(data[:NONCE_SIZE]), wrapped_bytes=bytes(data[NONCE_SIZE:]))

    def to_text(self) -> str:
        return base64.b64encode(self.to_bytes()).decode("ascii")

    @classmethod
    def from_text(cls, text: str) -> "WrappedKey":
        try:
            raw = base64.b64decode(text.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as e:
            raise ValueError("wrapped key is not valid base64") from e
        return cls.from_bytes(raw)


@dataclass(frozen=True)
class FailureReason:
    kind: str
    step: str
    detail: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "step": self.step, "detail": self.detail}


@dataclass(frozen=True)
class CapsuleMetadata:
    """What the ledger records for a capsule at registration time."""

    owner: str
    title: str
    description: str
    classification: Classification
    content_pointer: str
    wrapped_content_key: str
    unlock_timestamp: datetime
    geofence: Optional[Geofence] = None
    content_name: str = ""
    content_type: str = DEFAULT_CONTENT_TYPE
    content_size: int = 0
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner": self.owner,
            "title": self.title,
            "description": self.description,
            "classification": self.classification.value,
            "content_pointer": self.content_pointer,
            "unlock_timestamp": self.unlock_timestamp.isoformat(),
            "geofence": self.geofence.to_dict() if self.geofence else None,
            "content_name": self.content_name,
            "content_type": self.content_type,
            "content_size": self.content_size,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class Capsule:
    id: str
    owner: str
    title: str
    description: str
    classification: Classification
    content_pointer: str
    wrapped_content_key: str
    unlock_timestamp: datetime
    geofence: Optional[Geofence] = None
    content_name: str = ""
    content_type: str = DEFAULT_CONTENT_TYPE
    content_size: int = 0
    created_at: datetime = field(default_factory=utc_now)
    lifecycle_state: LifecycleState = LifecycleState.SEALED
    failure: Optional[FailureReason] = None

    @property
    def has_geo_lock(self) -> bool:
        return self.geofence is not None

    @classmethod
    def from_metadata(
        cls,
        capsule_id: str,
        metadata: CapsuleMetadata,
        state: LifecycleState = LifecycleState.SEALED,
    ) -> "Capsule":
        return cls(
            id=str(capsule_id),
            owner=metadata.owner,
            title=metadata.title,
            description=metadata.description,
            classification=metadata.classification,
            content_pointer=metadata.content_pointer,
            wrapped_content_key=metadata.wrapped_content_key,
            unlock_timestamp=as_utc(metadata.unlock_timestamp),
            geofence=metadata.geofence,
            content_name=metadata.content_name,
            content_type=metadata.content_type,
            content_size=metadata.content_size,
            created_at=as_utc(metadata.created_at),
            lifecycle_state=state,
        )

    def with_state(self, state: LifecycleState, failure: Optional[FailureReason] = None) -> "Capsule":
        return replace(self, lifecycle_state=state, failure=failure)


@dataclass(frozen=True)
class EligibilityResult:
    time_satisfied: bool
    geo_satisfied: bool
    reason: ReasonCode
    distance_meters: Optional[float] = None
    seconds_remaining: float = 0.0

    @property
    def eligible(self) -> bool:
        return self.time_satisfied and self.geo_satisfied

    def to_dict(self) -> dict[str, Any]:
        return {
            "eligible": self.eligible,
            "time_satisfied": self.time_satisfied,
            "geo_satisfied": self.geo_satisfied,
            "reason": self.reason.value,
            "distance_meters": self.distance_meters,
            "seconds_remaining": self.seconds_remaining,
        }


@dataclass(frozen=True)
class CreateCapsuleRequest:
    plaintext: bytes
    title: str
    unlock_timestamp: datetime
    description: str = ""
    classification: Classification = Classification.STANDARD
    geofence: Optional[Geofence] = None
    content_name: str = ""
    content_type: str = DEFAULT_CONTENT_TYPE


@dataclass(frozen=True)
class CreateResult:
    capsule_id: str
    content_pointer: str
    transaction_receipt: str
    capsule: Capsule


@dataclass(frozen=True)
class UnlockResult:
    capsule_id: str
    plaintext: bytes = field(repr=False)
    capsule: Capsule


@dataclass(frozen=True)
class RegistrationReceipt:
    capsule_id: str
    receipt: str
