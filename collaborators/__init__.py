from .location import StaticLocationProvider
from .memory import InMemoryLedger, InMemoryStorage, LedgerRecord, content_address
from .signer import Ed25519Signer

__all__ = [
    "Ed25519Signer",
    "InMemoryLedger",
    "InMemoryStorage",
    "LedgerRecord",
    "StaticLocationProvider",
    "content_address",
]
