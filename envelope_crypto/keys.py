from __future__ import annotations

KEY_SIZE = 32


class SecretKey:
    """Mutable holder for symmetric key bytes that can be wiped in place."""

    __slots__ = ("_material", "_label")

    def __init__(self, material: bytes | bytearray, label: str = "key") -> None:
        if len(material) != KEY_SIZE:
            raise ValueError(f"{label} must be {KEY_SIZE} bytes")
        self._material = bytearray(material)
        self._label = label

    @property
    def material(self) -> bytearray:
        if self.wiped:
            raise ValueError(f"{self._label} has been wiped")
        return self._material

    @property
    def wiped(self) -> bool:
        return len(self._material) == 0

    def wipe(self) -> None:
        for i in range(len(self._material)):
            self._material[i] = 0
        del self._material[:]

    def __repr__(self) -> str:
        state = "wiped" if self.wiped else "redacted"
        return f"SecretKey({self._label}, {state})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SecretKey):
            return NotImplemented
        return bytes(self._material) == bytes(other._material)

    __hash__ = None  # type: ignore[assignment]


class KeyScope:
    """Collects keys created inside a pipeline and wipes them all on exit,
    including error and cancellation paths."""

    def __init__(self) -> None:
        self._keys: list[SecretKey] = []

    def track(self, key: SecretKey) -> SecretKey:
        self._keys.append(key)
        return key

    def __enter__(self) -> "KeyScope":
        return self

    def __exit__(self, *exc_info: object) -> None:
        for key in self._keys:
            key.wipe()
        self._keys.clear()
