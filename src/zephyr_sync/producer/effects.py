"""Effect contract returned by every session transition.

A transition never performs I/O. It returns a ``Yield`` describing what the
runtime should do next: which items to deliver, whether to persist the
state, how to update the derived channel cache, whether more work should
be scheduled soon, and which requests to execute.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Union

from zephyr_sync.producer.models import Channel, Message, Snapshot


# ---------------------------------------------------------------------------
# Async effects (requests for the transport collaborator)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IdentifyRequest:
    """Look up the identity behind ``credential``."""

    credential: str


@dataclass(frozen=True)
class HydrateRequest:
    """List workspaces and their channels for ``credential``."""

    credential: str


@dataclass(frozen=True)
class FetchRequest:
    """Fetch messages of one channel.

    Attributes:
        credential: Token the request is made with
        account_id: Remote id of the account the channel belongs to
        channel_id: Channel to fetch
        initial: Whether this is the channel's first-ever fetch
        before: Fetch messages older than this id (greedy backfill)
        after: Fetch messages newer than this id
        limit: Page size, set on greedy backfill only
    """

    credential: str
    account_id: str
    channel_id: str
    initial: bool = False
    before: str | None = None
    after: str | None = None
    limit: int | None = None

    def query(self) -> dict[str, str | int]:
        """Query parameters for the messages endpoint."""
        params: dict[str, str | int] = {}
        if self.before is not None:
            params["before"] = self.before
        if self.after is not None:
            params["after"] = self.after
        if self.limit is not None:
            params["limit"] = self.limit
        return params


AsyncEffect = Union[IdentifyRequest, HydrateRequest, FetchRequest]


def fetch_request_for(
    snapshot: Snapshot, channel: Channel, initial: bool, page_limit: int
) -> FetchRequest:
    """Build the fetch request for a channel of ``snapshot``.

    The first-ever fetch backfills greedily with ``before=<last>&limit=N``;
    later fetches ask for ``after=<last>``. Without a known last message id
    no query is sent.
    """
    base = {
        "credential": snapshot.credential,
        "account_id": snapshot.identity.id,
        "channel_id": channel.id,
        "initial": initial,
    }
    if channel.last_message_id is None:
        return FetchRequest(**base)
    if initial:
        return FetchRequest(**base, before=channel.last_message_id, limit=page_limit)
    return FetchRequest(**base, after=channel.last_message_id)


# ---------------------------------------------------------------------------
# Derived cache instructions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CacheSet:
    """Publish ``channels`` as the new derived cache."""

    channels: list[Channel]


@dataclass(frozen=True)
class CacheKeep:
    """Leave the derived cache as it is."""


@dataclass(frozen=True)
class CacheDestroy:
    """Drop the derived cache entirely."""


CacheUpdate = Union[CacheSet, CacheKeep, CacheDestroy]

KEEP = CacheKeep()
DESTROY = CacheDestroy()


class ScheduledWork(str, Enum):
    """Token asking the runtime to schedule more work soon.

    Values:
        BROWSE: Run another scheduler tick without waiting a full interval
    """

    BROWSE = "browse"


@dataclass(frozen=True)
class Yield:
    """Uniform result of a session transition.

    Attributes:
        items: Produced message items, oldest first
        persist: Whether the resulting state should be persisted
        cache_update: Instruction for the derived channel cache
        scheduled_work: Optional request for an early follow-up tick
        effects: Requests to execute asynchronously
    """

    items: list[Message] = field(default_factory=list)
    persist: bool = False
    cache_update: CacheUpdate = KEEP
    scheduled_work: ScheduledWork | None = None
    effects: list[AsyncEffect] = field(default_factory=list)


NOTHING = Yield()
