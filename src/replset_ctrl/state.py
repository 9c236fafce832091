from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from replset_ctrl.errors import MemberValidationError
from replset_ctrl.members import normalize_members

DEFAULT_INITIALIZE_HOST = '127.0.0.1'
ENSURE_VALUES = ('present', 'absent')


def auth_is_enabled(auth_enabled) -> bool:
    return auth_enabled not in (None, False, '', 'disabled')


class Liveness(str, Enum):
    ALIVE_IN_SET = "alive_in_set"
    ALIVE_UNCONFIGURED = "alive_unconfigured"
    ALIVE_FOREIGN = "alive_foreign"
    ALIVE_UNAUTHORIZED = "alive_unauthorized"
    DEAD = "dead"

    @property
    def is_alive(self) -> bool:
        # foreign hosts never reach the alive list, the prober raises first
        return self in (Liveness.ALIVE_IN_SET, Liveness.ALIVE_UNCONFIGURED, Liveness.ALIVE_UNAUTHORIZED)


@dataclass(frozen=True)
class DesiredState:
    """Declared intent for one replica set."""

    name: str
    members: Tuple[dict, ...] = ()
    arbiter: Optional[str] = None
    initialize_host: str = DEFAULT_INITIALIZE_HOST
    ensure: str = 'present'
    auth_enabled: str = 'disabled'

    @classmethod
    def from_declaration(
        cls,
        name: str,
        members=(),
        arbiter: Optional[str] = None,
        initialize_host: Optional[str] = None,
        ensure: str = 'present',
        auth_enabled: str = 'disabled',
    ) -> "DesiredState":
        if not name:
            raise MemberValidationError("Replica set name must be a non-empty string")
        if ensure not in ENSURE_VALUES:
            raise MemberValidationError(f"Invalid ensure value '{ensure}', expected one of {ENSURE_VALUES}")

        normalized = tuple(normalize_members(members))
        if arbiter and arbiter not in {m['host'] for m in normalized}:
            raise MemberValidationError(f"Arbiter {arbiter} is not a declared member of replicaset {name}")

        return cls(
            name=name,
            members=normalized,
            arbiter=arbiter or None,
            initialize_host=initialize_host or DEFAULT_INITIALIZE_HOST,
            ensure=ensure,
            auth_enabled=auth_enabled,
        )

    @property
    def auth(self) -> bool:
        return auth_is_enabled(self.auth_enabled)


@dataclass(frozen=True)
class ObservedState:
    """Snapshot of the live set, replaced (never mutated) on every pass."""

    exists: bool
    name: Optional[str] = None
    members: Tuple[dict, ...] = field(default_factory=tuple)

    @classmethod
    def absent(cls) -> "ObservedState":
        return cls(exists=False)
