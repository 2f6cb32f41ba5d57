from .collaborators import Ledger, LocationProvider, Session, Signer, Storage
from .errors import (
    AuthenticationFailed,
    CapsuleError,
    CollaboratorError,
    CryptoError,
    CryptoUnavailable,
    ErrorKind,
    PipelineStep,
    PolicyDenied,
    ValidationError,
)
from .schemas import (
    Capsule,
    CapsuleMetadata,
    Classification,
    CreateCapsuleRequest,
    CreateResult,
    EligibilityResult,
    EncryptionEnvelope,
    FailureReason,
    GeoPoint,
    Geofence,
    LifecycleState,
    Location,
    ReasonCode,
    RegistrationReceipt,
    UnlockResult,
    WrappedKey,
)

__all__ = [
    "AuthenticationFailed",
    "Capsule",
    "CapsuleError",
    "CapsuleMetadata",
    "Classification",
    "CollaboratorError",
    "CreateCapsuleRequest",
    "CreateResult",
    "CryptoError",
    "CryptoUnavailable",
    "EligibilityResult",
    "EncryptionEnvelope",
    "ErrorKind",
    "FailureReason",
    "GeoPoint",
    "Geofence",
    "Ledger",
    "LifecycleState",
    "Location",
    "LocationProvider",
    "PipelineStep",
    "PolicyDenied",
    "ReasonCode",
    "RegistrationReceipt",
    "Session",
    "Signer",
    "Storage",
    "UnlockResult",
    "ValidationError",
    "WrappedKey",
]
