"""Error taxonomy shared by the crypto engine, policy and pipelines."""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    INVALID_INPUT = "InvalidInput"
    AUTHENTICATION_FAILED = "AuthenticationFailed"
    CRYPTO_UNAVAILABLE = "CryptoUnavailable"
    LEDGER_REJECTED = "LedgerRejected"
    NOT_FOUND = "NotFound"
    STORAGE_UNAVAILABLE = "StorageUnavailable"
    SIGNER_UNAVAILABLE = "SignerUnavailable"
    USER_DECLINED = "UserDeclined"
    LOCATION_UNAVAILABLE = "LocationUnavailable"
    PERMISSION_DENIED = "PermissionDenied"
    TIMEOUT = "Timeout"
    NOT_ELIGIBLE = "NotEligible"


class PipelineStep(str, Enum):
    VALIDATE = "validate"
    LOOKUP = "lookup"
    GENERATE_KEY = "generate_key"
    ENCRYPT = "encrypt"
    UPLOAD = "upload"
    SIGN = "sign"
    DERIVE_KEY = "derive_key"
    WRAP_KEY = "wrap_key"
    REGISTER = "register"
    LOCATE = "locate"
    QUERY_ELIGIBILITY = "query_eligibility"
    UNWRAP_KEY = "unwrap_key"
    DOWNLOAD = "download"
    DECRYPT = "decrypt"


class CapsuleError(Exception):
    """Base error. Carries a machine-readable kind and the failing step."""

    default_kind = ErrorKind.INVALID_INPUT

    def __init__(
        self,
        message: str = "",
        *,
        kind: Optional[ErrorKind] = None,
        step: Optional[PipelineStep] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind or self.default_kind
        self.step = step

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "step": self.step.value if self.step else None,
            "message": self.message,
        }

    def __str__(self) -> str:
        where = f" at {self.step.value}" if self.step else ""
        return f"{self.kind.value}{where}: {self.message}" if self.message else f"{self.kind.value}{where}"


class ValidationError(CapsuleError):
    default_kind = ErrorKind.INVALID_INPUT


class CryptoError(CapsuleError):
    default_kind = ErrorKind.CRYPTO_UNAVAILABLE


class AuthenticationFailed(CryptoError):
    default_kind = ErrorKind.AUTHENTICATION_FAILED


class CryptoUnavailable(CryptoError):
    default_kind = ErrorKind.CRYPTO_UNAVAILABLE


class CollaboratorError(CapsuleError):
    default_kind = ErrorKind.LEDGER_REJECTED


class PolicyDenied(CapsuleError):
    default_kind = ErrorKind.NOT_ELIGIBLE
