"""Session lifecycle states.

One frozen dataclass per state. The session machine dispatches on these
types; no state carries behaviour of its own.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Union

from zephyr_sync.producer.models import Identity, Snapshot


@dataclass(frozen=True)
class CredentialPending:
    """Credential is being entered; nothing submitted yet."""

    text: str = ""


@dataclass(frozen=True)
class CredentialSubmitted:
    """Identify request in flight for ``text``."""

    text: str


@dataclass(frozen=True)
class Identified:
    """Identity confirmed, hydrate request in flight."""

    text: str
    identity: Identity


@dataclass(frozen=True)
class ChannelScanning:
    """Initial fetch of newly discovered channels is running.

    Attributes:
        snapshot: Snapshot being scanned
        failed: Channels that failed transiently during this scan pass
    """

    snapshot: Snapshot
    failed: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class Hydrated:
    """Steady-state polling.

    Attributes:
        text: The (possibly edited) credential input
        snapshot: Snapshot being polled
        submitted: Credential of the identify request in flight, if any
    """

    text: str
    snapshot: Snapshot
    submitted: str | None = None


@dataclass(frozen=True)
class Rehydrating:
    """Re-listing channels of the same account with credential ``text``."""

    text: str
    snapshot: Snapshot


@dataclass(frozen=True)
class ReconnectPending:
    """Restored from storage; waiting to re-identify before polling resumes."""

    snapshot: Snapshot
    identifying: bool = False


@dataclass(frozen=True)
class AccountExpired:
    """Credential was rejected; the snapshot is kept until resubmission."""

    text: str
    snapshot: Snapshot
    submitted: str | None = None


@dataclass(frozen=True)
class IdentitySwitching:
    """A credential for a different account was identified.

    The old snapshot keeps polling until the new account's hydrate
    succeeds.
    """

    text: str
    identity: Identity
    old_snapshot: Snapshot


SessionState = Union[
    CredentialPending,
    CredentialSubmitted,
    Identified,
    ChannelScanning,
    Hydrated,
    Rehydrating,
    ReconnectPending,
    AccountExpired,
    IdentitySwitching,
]

EDITABLE_STATES = (CredentialPending, Hydrated, AccountExpired)
POLLING_STATES = (Hydrated, Rehydrating, IdentitySwitching)


def snapshot_of(state: SessionState | None) -> Snapshot | None:
    """Return the live snapshot held by ``state``, if any."""
    if isinstance(state, IdentitySwitching):
        return state.old_snapshot
    if isinstance(
        state, (ChannelScanning, Hydrated, Rehydrating, ReconnectPending, AccountExpired)
    ):
        return state.snapshot
    return None


def require_snapshot(state: SessionState) -> Snapshot:
    """Return the live snapshot held by ``state``.

    Raises:
        ValueError: If the state holds no snapshot.
    """
    snapshot = snapshot_of(state)
    if snapshot is None:
        raise ValueError(f"{type(state).__name__} holds no snapshot")
    return snapshot


def with_snapshot(state: SessionState, snapshot: Snapshot) -> SessionState:
    """Return ``state`` with its live snapshot replaced.

    Raises:
        ValueError: If the state holds no snapshot.
    """
    if isinstance(state, IdentitySwitching):
        return replace(state, old_snapshot=snapshot)
    if isinstance(
        state, (ChannelScanning, Hydrated, Rehydrating, ReconnectPending, AccountExpired)
    ):
        return replace(state, snapshot=snapshot)
    raise ValueError(f"{type(state).__name__} holds no snapshot")


def accepts_credential_input(state: SessionState | None) -> bool:
    """Whether the credential input is editable in ``state``."""
    return state is None or isinstance(state, EDITABLE_STATES)
