"""Producer subsystem for Zephyr Sync.

This module implements the session state machine, the per-channel fetch
status graph, channel scan scheduling, snapshot merging and the persisted
snapshot codec. The async runtime lives in ``zephyr_sync.producer.runtime``.
"""

from __future__ import annotations

from zephyr_sync.producer.codec import SCHEMA_VERSION, decode, encode
from zephyr_sync.producer.effects import (
    DESTROY,
    KEEP,
    NOTHING,
    AsyncEffect,
    CacheDestroy,
    CacheKeep,
    CacheSet,
    CacheUpdate,
    FetchRequest,
    HydrateRequest,
    IdentifyRequest,
    ScheduledWork,
    Yield,
)
from zephyr_sync.producer.fetch_status import (
    Available,
    BackoffLevel,
    Fetching,
    FetchStatus,
    Forbidden,
    InitialFetching,
    InvalidFetchTransitionError,
    NeverFetched,
    NextFetchAt,
    ResumeFetching,
    Waiting,
)
from zephyr_sync.producer.merge import build_snapshot, compute_cache, merge_channels
from zephyr_sync.producer.messages import (
    ApiError,
    ApiFailure,
    CredentialCommitted,
    CredentialTextChanged,
    FailureKind,
    FetchCompleted,
    FetchResult,
    HydrateSucceeded,
    IdentifySucceeded,
    InboundMessage,
    RehydrateRequested,
    SubscriptionChanged,
    TimerTick,
)
from zephyr_sync.producer.models import (
    Attachment,
    Channel,
    ChannelKind,
    Embed,
    Identity,
    Message,
    Snapshot,
    UserAuthor,
    WebhookAuthor,
    Workspace,
)
from zephyr_sync.producer.scheduler import ChannelScanScheduler
from zephyr_sync.producer.session import SessionMachine
from zephyr_sync.producer.states import (
    AccountExpired,
    ChannelScanning,
    CredentialPending,
    CredentialSubmitted,
    Hydrated,
    Identified,
    IdentitySwitching,
    ReconnectPending,
    Rehydrating,
    SessionState,
)
from zephyr_sync.producer.store import SnapshotStore

__all__ = [
    # Session
    "SessionMachine",
    "SessionState",
    "CredentialPending",
    "CredentialSubmitted",
    "Identified",
    "ChannelScanning",
    "Hydrated",
    "Rehydrating",
    "ReconnectPending",
    "AccountExpired",
    "IdentitySwitching",
    # Messages
    "InboundMessage",
    "CredentialTextChanged",
    "CredentialCommitted",
    "IdentifySucceeded",
    "HydrateSucceeded",
    "RehydrateRequested",
    "TimerTick",
    "FetchResult",
    "FetchCompleted",
    "SubscriptionChanged",
    "FailureKind",
    "ApiFailure",
    "ApiError",
    # Effects
    "Yield",
    "NOTHING",
    "AsyncEffect",
    "IdentifyRequest",
    "HydrateRequest",
    "FetchRequest",
    "CacheUpdate",
    "CacheSet",
    "CacheKeep",
    "CacheDestroy",
    "KEEP",
    "DESTROY",
    "ScheduledWork",
    # Fetch status
    "FetchStatus",
    "BackoffLevel",
    "NeverFetched",
    "InitialFetching",
    "Available",
    "Waiting",
    "ResumeFetching",
    "NextFetchAt",
    "Fetching",
    "Forbidden",
    "InvalidFetchTransitionError",
    # Records
    "Identity",
    "Workspace",
    "ChannelKind",
    "Channel",
    "Snapshot",
    "UserAuthor",
    "WebhookAuthor",
    "Embed",
    "Attachment",
    "Message",
    # Scheduling and merge
    "ChannelScanScheduler",
    "merge_channels",
    "build_snapshot",
    "compute_cache",
    # Persistence
    "SCHEMA_VERSION",
    "encode",
    "decode",
    "SnapshotStore",
]
