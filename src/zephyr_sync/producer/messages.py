"""Inbound messages consumed by the session state machine.

User input, timer ticks and completions of async effects all arrive as one
of these messages. Completions carry the credential of the request that
produced them so that late arrivals for a superseded session can be
recognised and dropped.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Union

from zephyr_sync.producer.effects import AsyncEffect
from zephyr_sync.producer.models import Channel, Identity, Message, Workspace


@dataclass(frozen=True)
class CredentialTextChanged:
    """The credential input was edited."""

    text: str


@dataclass(frozen=True)
class CredentialCommitted:
    """The credential input was submitted.

    ``text`` is only consulted when no session exists yet; an existing
    session submits the text it holds.
    """

    text: str | None = None


@dataclass(frozen=True)
class IdentifySucceeded:
    credential: str
    identity: Identity


@dataclass(frozen=True)
class HydrateSucceeded:
    credential: str
    workspaces: dict[str, Workspace] = field(default_factory=dict)
    channels: dict[str, Channel] = field(default_factory=dict)


@dataclass(frozen=True)
class RehydrateRequested:
    """Re-list workspaces and channels of a hydrated session."""


@dataclass(frozen=True)
class TimerTick:
    now: datetime


@dataclass(frozen=True)
class FetchResult:
    """Messages returned for one channel.

    Attributes:
        credential: Token the request was made with
        account_id: Remote id of the account the request was made for
        channel_id: Fetched channel
        messages: Messages in upstream order (newest first)
        fetched_at: Completion time of the request
    """

    credential: str
    account_id: str
    channel_id: str
    messages: list[Message]
    fetched_at: datetime


@dataclass(frozen=True)
class FetchCompleted:
    result: FetchResult


@dataclass(frozen=True)
class SubscriptionChanged:
    """A consumer started or stopped following a channel."""

    channel_id: str
    subscribed: bool


class FailureKind(str, Enum):
    """Classification of API failures.

    Values:
        UNAUTHORIZED: 401, the credential is invalid or revoked
        FORBIDDEN: 403, permission on a single channel is missing
        TRANSIENT: Anything else, including network failures
    """

    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    TRANSIENT = "transient"


@dataclass(frozen=True)
class ApiFailure:
    kind: FailureKind
    status_code: int | None = None
    detail: str = ""


@dataclass(frozen=True)
class ApiError:
    """An async effect failed.

    Attributes:
        failure: Classified failure
        origin: The effect whose execution failed
        occurred_at: Time the failure was observed
    """

    failure: ApiFailure
    origin: AsyncEffect
    occurred_at: datetime


InboundMessage = Union[
    CredentialTextChanged,
    CredentialCommitted,
    IdentifySucceeded,
    HydrateSucceeded,
    RehydrateRequested,
    TimerTick,
    FetchCompleted,
    SubscriptionChanged,
    ApiError,
]
