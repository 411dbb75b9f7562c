"""Per-channel fetch status machine.

Each channel carries a ``FetchStatus`` that tells the scheduler whether and
when the channel should be polled next. Statuses are immutable pydantic
models joined in a discriminated union on ``kind`` so they serialize
directly into the persisted snapshot.

Transitions are validated against ``VALID_TRANSITIONS``. Polling intervals
follow the capped ``BackoffLevel`` ladder: empty results climb the ladder,
a result carrying new messages drops straight back to ``BO2``.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class BackoffLevel(str, Enum):
    """Position in the capped polling delay table.

    Values:
        BO2: Poll again after 2 seconds (minimum)
        BO5: 5 seconds
        BO10: 10 seconds
        BO30: 30 seconds
        BO60: 60 seconds
        BO120: 120 seconds (cap)
    """

    BO2 = "BO2"
    BO5 = "BO5"
    BO10 = "BO10"
    BO30 = "BO30"
    BO60 = "BO60"
    BO120 = "BO120"

    @property
    def seconds(self) -> int:
        """Delay in seconds for this level."""
        return _DELAY_SECONDS[self]

    def next(self) -> BackoffLevel:
        """Return the next level up the ladder, staying at the cap."""
        index = _LADDER.index(self)
        return _LADDER[min(index + 1, len(_LADDER) - 1)]


_LADDER: list[BackoffLevel] = [
    BackoffLevel.BO2,
    BackoffLevel.BO5,
    BackoffLevel.BO10,
    BackoffLevel.BO30,
    BackoffLevel.BO60,
    BackoffLevel.BO120,
]

_DELAY_SECONDS: dict[BackoffLevel, int] = {
    BackoffLevel.BO2: 2,
    BackoffLevel.BO5: 5,
    BackoffLevel.BO10: 10,
    BackoffLevel.BO30: 30,
    BackoffLevel.BO60: 60,
    BackoffLevel.BO120: 120,
}

MIN_BACKOFF = BackoffLevel.BO2


class _Status(BaseModel):
    model_config = ConfigDict(frozen=True)


class NeverFetched(_Status):
    """Discovered by hydrate, never fetched."""

    kind: Literal["never_fetched"] = "never_fetched"


class InitialFetching(_Status):
    """First-ever fetch is in flight."""

    kind: Literal["initial_fetching"] = "initial_fetching"


class Available(_Status):
    """Initial fetch done; the channel is idle and offered to consumers."""

    kind: Literal["available"] = "available"


class Waiting(_Status):
    """Deliberately paused, e.g. after being unsubscribed."""

    kind: Literal["waiting"] = "waiting"


class ResumeFetching(_Status):
    """Fetch issued on resume is in flight."""

    kind: Literal["resume_fetching"] = "resume_fetching"


class NextFetchAt(_Status):
    """Idle until ``at``, polled at ``backoff`` when due."""

    kind: Literal["next_fetch_at"] = "next_fetch_at"
    at: datetime
    backoff: BackoffLevel = MIN_BACKOFF


class Fetching(_Status):
    """Steady-state poll in flight; ``next_at`` is the due time it was picked at."""

    kind: Literal["fetching"] = "fetching"
    next_at: datetime
    backoff: BackoffLevel = MIN_BACKOFF


class Forbidden(_Status):
    """Channel returned 403; never polled again until re-scanned."""

    kind: Literal["forbidden"] = "forbidden"


FetchStatus = Annotated[
    Union[
        NeverFetched,
        InitialFetching,
        Available,
        Waiting,
        ResumeFetching,
        NextFetchAt,
        Fetching,
        Forbidden,
    ],
    Field(discriminator="kind"),
]


class InvalidFetchTransitionError(Exception):
    """Raised when a fetch status transition outside the graph is attempted.

    Attributes:
        current: Kind of the current status.
        target: Kind of the attempted target status.
        channel_id: The channel that failed to transition, if known.
    """

    def __init__(self, current: str, target: str, channel_id: str | None = None):
        self.current = current
        self.target = target
        self.channel_id = channel_id
        msg = f"Invalid fetch transition from {current} to {target}"
        if channel_id:
            msg += f" for channel {channel_id}"
        super().__init__(msg)


# Authoritative fetch status graph, keyed by ``kind``
VALID_TRANSITIONS: dict[str, set[str]] = {
    "never_fetched": {"initial_fetching"},
    "initial_fetching": {"available", "never_fetched", "forbidden"},
    "available": {"resume_fetching"},
    "waiting": {"resume_fetching"},
    "resume_fetching": {"next_fetch_at", "waiting", "forbidden"},
    "next_fetch_at": {"fetching", "waiting"},
    "fetching": {"next_fetch_at", "waiting", "forbidden"},
    "forbidden": set(),  # Sink
}

IN_FLIGHT_KINDS = frozenset({"initial_fetching", "resume_fetching", "fetching"})


def validate_transition(current: str, target: str) -> bool:
    """Validate if a fetch status transition is allowed.

    Args:
        current: Kind of the current status.
        target: Kind of the target status.

    Returns:
        True if the transition is valid according to VALID_TRANSITIONS.
    """
    return target in VALID_TRANSITIONS.get(current, set())


def _transition(current: FetchStatus, target: FetchStatus, channel_id: str | None) -> FetchStatus:
    if not validate_transition(current.kind, target.kind):
        raise InvalidFetchTransitionError(current.kind, target.kind, channel_id)
    return target


def is_in_flight(status: FetchStatus) -> bool:
    """Whether a request for the channel is currently outstanding."""
    return status.kind in IN_FLIGHT_KINDS


def is_due(status: FetchStatus, now: datetime) -> bool:
    """Whether steady-state polling may pick the channel at ``now``.

    ``NextFetchAt`` becomes due once ``now >= at``. Every other status is
    never due; ``NeverFetched`` channels wait for the next scan pass.
    """
    if isinstance(status, NextFetchAt):
        return now >= status.at
    return False


def begin_fetch(status: FetchStatus, channel_id: str | None = None) -> FetchStatus:
    """Mark a due channel as in flight.

    Raises:
        InvalidFetchTransitionError: If the status is not fetchable.
    """
    if isinstance(status, NeverFetched):
        return _transition(status, InitialFetching(), channel_id)
    if isinstance(status, NextFetchAt):
        return _transition(status, Fetching(next_at=status.at, backoff=status.backoff), channel_id)
    raise InvalidFetchTransitionError(status.kind, "fetching", channel_id)


def resume(status: FetchStatus, channel_id: str | None = None) -> FetchStatus:
    """Resume polling of an idle or paused channel."""
    return _transition(status, ResumeFetching(), channel_id)


def pause(status: FetchStatus, channel_id: str | None = None) -> FetchStatus:
    """Pause a polled channel. Statuses that are not polled are returned as-is."""
    if isinstance(status, (NextFetchAt, Fetching, ResumeFetching)):
        return _transition(status, Waiting(), channel_id)
    return status


def _backed_off(backoff: BackoffLevel, now: datetime) -> NextFetchAt:
    level = backoff.next()
    return NextFetchAt(at=now + timedelta(seconds=level.seconds), backoff=level)


def _reset(now: datetime) -> NextFetchAt:
    return NextFetchAt(at=now + timedelta(seconds=MIN_BACKOFF.seconds), backoff=MIN_BACKOFF)


def apply_success(
    status: FetchStatus,
    now: datetime,
    has_messages: bool,
    channel_id: str | None = None,
) -> FetchStatus:
    """Advance a status after a successful fetch.

    Args:
        status: Status the channel had while the request was in flight.
        now: Completion time of the request.
        has_messages: Whether the response contained any message.
        channel_id: Channel identifier used in error messages.

    Returns:
        The next status. A status that is no longer in flight (the channel
        was paused meanwhile) is returned unchanged.
    """
    if isinstance(status, InitialFetching):
        return _transition(status, Available(), channel_id)
    if isinstance(status, ResumeFetching):
        return _transition(status, _reset(now), channel_id)
    if isinstance(status, Fetching):
        target = _reset(now) if has_messages else _backed_off(status.backoff, now)
        return _transition(status, target, channel_id)
    return status


def apply_transient_failure(
    status: FetchStatus, now: datetime, channel_id: str | None = None
) -> FetchStatus:
    """Advance a status after a transient fetch failure.

    An initial fetch reverts to ``NeverFetched`` so the next scan pass
    retries it. A steady-state poll backs off exactly as for an empty result.
    """
    if isinstance(status, InitialFetching):
        return _transition(status, NeverFetched(), channel_id)
    if isinstance(status, ResumeFetching):
        return _transition(status, _reset(now), channel_id)
    if isinstance(status, Fetching):
        return _transition(status, _backed_off(status.backoff, now), channel_id)
    return status


def apply_forbidden(status: FetchStatus, channel_id: str | None = None) -> FetchStatus:
    """Sink a channel into ``Forbidden`` after a 403.

    A status that is no longer in flight is returned unchanged.
    """
    if not is_in_flight(status):
        return status
    return _transition(status, Forbidden(), channel_id)


def settle_in_flight(status: FetchStatus) -> FetchStatus:
    """Drop in-flight markers from a status restored after a restart.

    No request survives a restart, so each in-flight status falls back to
    the idle status it was entered from.
    """
    if isinstance(status, InitialFetching):
        return NeverFetched()
    if isinstance(status, Fetching):
        return NextFetchAt(at=status.next_at, backoff=status.backoff)
    if isinstance(status, ResumeFetching):
        return Waiting()
    return status


_RANKS: dict[str, int] = {
    "never_fetched": 0,
    "next_fetch_at": 1,
    "initial_fetching": 2,
    "resume_fetching": 2,
    "fetching": 3,
    "waiting": 4,
    "available": 4,
    "forbidden": 5,
}


def sort_key(status: FetchStatus) -> tuple[int, float]:
    """Ordering key for picking the next channel to fetch.

    ``NeverFetched`` sorts first, then timed statuses by ascending due time,
    then ``InitialFetching`` before ``Fetching`` and the rest, with
    ``Forbidden`` last.
    """
    if isinstance(status, NextFetchAt):
        return (_RANKS[status.kind], status.at.timestamp())
    if isinstance(status, Fetching):
        return (_RANKS[status.kind], status.next_at.timestamp())
    return (_RANKS[status.kind], 0.0)
