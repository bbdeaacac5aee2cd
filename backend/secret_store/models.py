"""Domain models for secret resolution."""

from dataclasses import dataclass, field
from enum import Enum


class SecretSource(str, Enum):
    """Where a secret was resolved from"""
    ENV_VAR = 'env'
    FILE = 'file'
    VENDOR_API = 'vendor'


@dataclass(eq=False)
class Secret:
    """
    A resolved secret.

    The value lives in a mutable buffer so destroy() can overwrite it in
    place at the end of a run. It is excluded from repr() and from equality
    so the value cannot leak through logging or assertion output.
    """
    name: str
    source: SecretSource
    _value: bytearray = field(repr=False)
    _destroyed: bool = field(default=False, repr=False)

    @classmethod
    def from_bytes(cls, name: str, source: SecretSource, value: bytes) -> 'Secret':
        return cls(name=name, source=source, _value=bytearray(value))

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def reveal(self) -> bytes:
        """Return the raw value. Raises once the secret has been destroyed."""
        if self._destroyed:
            raise RuntimeError(f"Secret '{self.name}' was destroyed at the end of its run")
        return bytes(self._value)

    def reveal_text(self, encoding: str = 'utf-8') -> str:
        return self.reveal().decode(encoding)

    def destroy(self) -> None:
        """Zero the value buffer and mark the secret unusable."""
        for i in range(len(self._value)):
            self._value[i] = 0
        self._value = bytearray()
        self._destroyed = True

    def __str__(self) -> str:
        return f"<Secret {self.name} from {self.source.value}>"
