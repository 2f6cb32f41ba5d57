from .engine import WRAPPING_KEY_ITERATIONS, WRAPPING_KEY_SALT, EncryptionEngine
from .keys import KEY_SIZE, KeyScope, SecretKey

__all__ = [
    "EncryptionEngine",
    "KEY_SIZE",
    "KeyScope",
    "SecretKey",
    "WRAPPING_KEY_ITERATIONS",
    "WRAPPING_KEY_SALT",
]
