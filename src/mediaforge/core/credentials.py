"""
Credential policy for encrypted data partitions.

Secrets are held in zeroable ``Secret`` buffers and compared in constant
time. Validation details are only logged at DEBUG level.
"""

from __future__ import annotations

import hmac
import threading
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any

from mediaforge.core.exceptions import ValidationError
from mediaforge.core.logging import get_logger

logger = get_logger(__name__)

FORBIDDEN_CHARACTERS = ("\\",)


class Secret:
    """Mutable secret buffer that can be zeroed."""

    __slots__ = ("_data", "_cleared")

    def __init__(self, data: bytes | bytearray) -> None:
        self._data = bytearray(data)
        self._cleared = False

    @classmethod
    def from_string(cls, value: str, encoding: str = "utf-8") -> Secret:
        encoded = bytearray(value, encoding)
        try:
            return cls(encoded)
        finally:
            for i in range(len(encoded)):
                encoded[i] = 0

    def copy(self) -> Secret:
        self._check_cleared()
        return Secret(self._data)

    def clear(self) -> None:
        """Zero the buffer. Idempotent."""
        for i in range(len(self._data)):
            self._data[i] = 0
        self._cleared = True

    @property
    def is_cleared(self) -> bool:
        return self._cleared

    def reveal(self, encoding: str = "utf-8") -> str:
        """Return the secret as text. The returned string is not zeroable."""
        self._check_cleared()
        return self._data.decode(encoding)

    def contains_any(self, characters: tuple[str, ...]) -> bool:
        self._check_cleared()
        return any(c.encode() in self._data for c in characters)

    def __len__(self) -> int:
        return 0 if self._cleared else len(self._data)

    def __bool__(self) -> bool:
        return not self._cleared and len(self._data) > 0

    def __eq__(self, other: object) -> bool:
        """Constant-time comparison."""
        if isinstance(other, Secret):
            if self._cleared or other._cleared:
                return False
            return hmac.compare_digest(self._data, other._data)
        if isinstance(other, (bytes, bytearray)):
            if self._cleared:
                return False
            return hmac.compare_digest(self._data, other)
        return NotImplemented

    def __hash__(self) -> int:
        raise TypeError("Secret is not hashable")

    def __repr__(self) -> str:
        if self._cleared:
            return "Secret(<cleared>)"
        return f"Secret(<{len(self._data)} bytes>)"

    def _check_cleared(self) -> None:
        if self._cleared:
            raise RuntimeError("Secret has been cleared")


class UnlockKind(Enum):
    """How the data partition is unlocked at boot."""

    NO_PASSWORD = "none"
    PERSONAL_PASSWORD = "personal"
    MASTER_AND_INITIAL_PASSWORD = "master_initial"


class UnlockMethod:
    """Base of the confirmed unlock methods. Each variant owns only its secrets."""

    kind: UnlockKind

    def secrets(self) -> tuple[Secret, ...]:
        return ()

    def clear(self) -> None:
        for secret in self.secrets():
            secret.clear()

    @property
    def is_cleared(self) -> bool:
        return any(secret.is_cleared for secret in self.secrets())

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value}


class NoPassword(UnlockMethod):
    kind = UnlockKind.NO_PASSWORD

    def __repr__(self) -> str:
        return "NoPassword()"


class PersonalPassword(UnlockMethod):
    kind = UnlockKind.PERSONAL_PASSWORD

    def __init__(self, password: Secret) -> None:
        self.password = password

    def secrets(self) -> tuple[Secret, ...]:
        return (self.password,)

    def __repr__(self) -> str:
        return f"PersonalPassword({self.password!r})"


class MasterAndInitialPassword(UnlockMethod):
    kind = UnlockKind.MASTER_AND_INITIAL_PASSWORD

    def __init__(self, master: Secret, initial: Secret) -> None:
        self.master = master
        self.initial = initial

    def secrets(self) -> tuple[Secret, ...]:
        return (self.master, self.initial)

    def __repr__(self) -> str:
        return f"MasterAndInitialPassword({self.master!r}, {self.initial!r})"


@dataclass
class CredentialInput:
    """Secrets as submitted by the operator, including the repeat fields."""

    password: Secret | None = None
    password_repeat: Secret | None = None
    master: Secret | None = None
    master_repeat: Secret | None = None
    initial: Secret | None = None
    initial_repeat: Secret | None = None

    @classmethod
    def from_strings(cls, **values: str | None) -> CredentialInput:
        return cls(
            **{
                name: Secret.from_string(value) if value is not None else None
                for name, value in values.items()
            }
        )

    def clear(self) -> None:
        for f in fields(self):
            secret = getattr(self, f.name)
            if secret is not None:
                secret.clear()


def _check_pair(name: str, value: Secret | None, repeat: Secret | None) -> Secret:
    if not value or not repeat:
        raise ValidationError(f"{name} is empty")
    if value.contains_any(FORBIDDEN_CHARACTERS) or repeat.contains_any(FORBIDDEN_CHARACTERS):
        raise ValidationError(f"{name} contains a forbidden character")
    if value != repeat:
        raise ValidationError(f"{name} and its repetition differ")
    return value


class CredentialPolicy:
    """Validates submitted credentials and keeps the confirmed unlock method."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._confirmed: UnlockMethod | None = None

    @property
    def confirmed(self) -> UnlockMethod | None:
        with self._lock:
            return self._confirmed

    def select(
        self,
        method: UnlockKind | str,
        secrets: CredentialInput | None = None,
    ) -> UnlockMethod:
        """Validate ``secrets`` for ``method`` and confirm the result.

        Raises ValidationError on rejection. The submitted buffers are always
        cleared; the returned method owns copies of the secrets it needs.
        """
        kind = UnlockKind(method) if isinstance(method, str) else method
        submitted = secrets or CredentialInput()
        try:
            unlock = self._build(kind, submitted)
        except ValidationError as e:
            logger.debug("Credential rejected", method=kind.value, detail=str(e))
            logger.info("credential validation failed", method=kind.value)
            self.clear()
            raise
        finally:
            submitted.clear()

        with self._lock:
            previous, self._confirmed = self._confirmed, unlock
        if previous is not None and previous is not unlock:
            previous.clear()
        logger.debug("Unlock method confirmed", method=kind.value)
        return unlock

    def clear(self) -> None:
        """Forget and zero the confirmed method."""
        with self._lock:
            previous, self._confirmed = self._confirmed, None
        if previous is not None:
            previous.clear()

    @staticmethod
    def _build(kind: UnlockKind, submitted: CredentialInput) -> UnlockMethod:
        if kind is UnlockKind.NO_PASSWORD:
            return NoPassword()
        if kind is UnlockKind.PERSONAL_PASSWORD:
            password = _check_pair("password", submitted.password, submitted.password_repeat)
            return PersonalPassword(password.copy())
        master = _check_pair("master password", submitted.master, submitted.master_repeat)
        initial = _check_pair("initial password", submitted.initial, submitted.initial_repeat)
        return MasterAndInitialPassword(master.copy(), initial.copy())
