"""Persisted snapshot encoding.

Every live state that holds a snapshot collapses to one stable shape::

    {"version": 2, "pov": {"credential": ..., "identity": ..., "workspaces": ..., "channels": ...}}

Transient states persist with the snapshot's own credential, never with
edited-but-uncommitted input, so a reload retries with the last credential
known to work.

Decoding is schema-versioned. The current schema is tried first, then each
legacy schema in turn. A payload no schema recognises is logged and yields
None rather than raising.
"""

from __future__ import annotations

from typing import Any, Callable, Literal

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from zephyr_sync.producer.fetch_status import (
    Available,
    FetchStatus,
    Forbidden,
    NeverFetched,
    Waiting,
)
from zephyr_sync.producer.merge import settle_snapshot
from zephyr_sync.producer.models import Channel, ChannelKind, Identity, Snapshot, Workspace
from zephyr_sync.producer.states import (
    CredentialPending,
    ReconnectPending,
    SessionState,
    snapshot_of,
)

logger = structlog.get_logger(__name__)

SCHEMA_VERSION = 2


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class PersistedPov(BaseModel):
    """Current persisted shape."""

    model_config = ConfigDict(extra="forbid")

    version: Literal[2]
    pov: Snapshot


class LegacyUserV1(BaseModel):
    id: str
    username: str
    discriminator: str = "0"
    avatar: str | None = None


class LegacyGuildV1(BaseModel):
    id: str
    name: str
    icon: str | None = None


class LegacyChannelV1(BaseModel):
    """Channel as stored by v1, with raw API type codes and string states."""

    id: str
    name: str = ""
    type: int = 0
    guild_id: str | None = None
    last_message_id: str | None = None
    fetch_status: str = "never"


class LegacyPovV1(BaseModel):
    """Flat v1 shape: token, user, guilds and channels at the top level."""

    token: str
    user: LegacyUserV1
    guilds: dict[str, LegacyGuildV1] = Field(default_factory=dict)
    channels: dict[str, LegacyChannelV1] = Field(default_factory=dict)


class LegacyTokenV0(BaseModel):
    """Oldest shape: only the token was stored."""

    token: str


_V1_CHANNEL_KINDS: dict[int, ChannelKind] = {
    0: ChannelKind.TEXT,
    1: ChannelKind.DM,
    3: ChannelKind.GROUP,
    5: ChannelKind.TEXT,
}

_V1_FETCH_STATUSES: dict[str, Callable[[], FetchStatus]] = {
    "never": NeverFetched,
    "available": Available,
    "forbidden": Forbidden,
    "waiting": Waiting,
}


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def encode_snapshot(snapshot: Snapshot) -> dict[str, Any]:
    """Encode a snapshot in the current schema."""
    return PersistedPov(version=SCHEMA_VERSION, pov=snapshot).model_dump(mode="json")


def encode(state: SessionState | None) -> dict[str, Any] | None:
    """Encode a session state for persistence.

    Returns:
        The encoded snapshot, or None for states that hold no snapshot
        (nothing to persist).
    """
    snapshot = snapshot_of(state)
    if snapshot is None:
        return None
    return encode_snapshot(snapshot)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _decode_v2(data: Any) -> SessionState:
    persisted = PersistedPov.model_validate(data)
    return ReconnectPending(snapshot=settle_snapshot(persisted.pov))


def _decode_v1(data: Any) -> SessionState:
    legacy = LegacyPovV1.model_validate(data)
    workspaces = {
        guild_id: Workspace(id=guild.id, name=guild.name, icon=guild.icon)
        for guild_id, guild in legacy.guilds.items()
    }

    channels: dict[str, Channel] = {}
    for channel_id, raw in legacy.channels.items():
        kind = _V1_CHANNEL_KINDS.get(raw.type)
        if kind is None:
            continue
        status_factory = _V1_FETCH_STATUSES.get(raw.fetch_status, NeverFetched)
        channels[channel_id] = Channel(
            id=raw.id,
            name=raw.name,
            kind=kind,
            workspace=workspaces.get(raw.guild_id) if raw.guild_id else None,
            last_message_id=raw.last_message_id,
            fetch_status=status_factory(),
        )

    snapshot = Snapshot(
        credential=legacy.token,
        identity=Identity(**legacy.user.model_dump()),
        workspaces=workspaces,
        channels=channels,
    )
    return ReconnectPending(snapshot=snapshot)


def _decode_v0(data: Any) -> SessionState:
    legacy = LegacyTokenV0.model_validate(data)
    return CredentialPending(text=legacy.token)


# Tried in order, newest schema first
DECODERS: list[tuple[str, Callable[[Any], SessionState]]] = [
    ("v2", _decode_v2),
    ("v1", _decode_v1),
    ("v0", _decode_v0),
]


def decode(data: Any) -> SessionState | None:
    """Decode a persisted payload into the state a restarted producer resumes from.

    Args:
        data: Parsed JSON payload, or None when nothing was persisted.

    Returns:
        ``ReconnectPending`` for payloads carrying a snapshot,
        ``CredentialPending`` for token-only payloads, None otherwise.
    """
    if data is None:
        return None

    for schema, decoder in DECODERS:
        try:
            state = decoder(data)
        except ValidationError:
            continue
        if schema != "v2":
            logger.info("legacy_snapshot_decoded", schema=schema)
        return state

    logger.warning(
        "snapshot_decode_failed",
        payload_type=type(data).__name__,
        keys=sorted(data.keys()) if isinstance(data, dict) else None,
    )
    return None
