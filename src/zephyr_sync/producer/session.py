"""Session state machine for one synchronized account.

``SessionMachine.update`` is the single transition function of the
producer. It takes the current session state (or None when no session
exists) and one inbound message, and returns the next state together with
a ``Yield`` describing the work the runtime has to carry out. It never
performs I/O.

Lifecycle overview::

    CredentialPending -> CredentialSubmitted -> Identified -> ChannelScanning
        -> Hydrated <-> Rehydrating
    ReconnectPending -> ChannelScanning            (after a process restart)
    Hydrated/AccountExpired -> IdentitySwitching   (credential of another account)
    * -> AccountExpired                            (401 once a snapshot exists)

Late completions for a session that was destroyed or superseded are
detected (no live state, another account, or another credential) and
dropped without error.
"""

from __future__ import annotations

from dataclasses import replace

import structlog

from zephyr_sync.config import ProducerConfig
from zephyr_sync.producer.effects import (
    DESTROY,
    KEEP,
    NOTHING,
    AsyncEffect,
    FetchRequest,
    HydrateRequest,
    IdentifyRequest,
    ScheduledWork,
    Yield,
    fetch_request_for,
)
from zephyr_sync.producer.fetch_status import (
    InitialFetching,
    NeverFetched,
    apply_forbidden,
    apply_success,
    apply_transient_failure,
    is_in_flight,
    pause,
    resume,
)
from zephyr_sync.producer.merge import (
    available_ids,
    build_snapshot,
    compute_cache,
    settle_snapshot,
)
from zephyr_sync.producer.messages import (
    ApiError,
    CredentialCommitted,
    CredentialTextChanged,
    FailureKind,
    FetchCompleted,
    HydrateSucceeded,
    IdentifySucceeded,
    InboundMessage,
    RehydrateRequested,
    SubscriptionChanged,
    TimerTick,
)
from zephyr_sync.producer.models import Channel, Message, Snapshot
from zephyr_sync.producer.scheduler import ChannelScanScheduler
from zephyr_sync.producer.states import (
    POLLING_STATES,
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
    accepts_credential_input,
    require_snapshot,
    snapshot_of,
    with_snapshot,
)

logger = structlog.get_logger(__name__)

Transition = tuple[SessionState | None, Yield]


def newest_message_id(current: str | None, candidate: str) -> str:
    """Return the newer of two message ids.

    Ids are snowflakes: decimal strings that grow with creation time. A
    backfill page fetched ``before`` the known last id never moves it back.
    """
    if current is None:
        return candidate
    return max(current, candidate, key=lambda i: (len(i), i))


class SessionMachine:
    """Transition function of the per-account producer.

    Attributes:
        config: Producer configuration.
        scheduler: Scheduler used for scans and steady-state polling.
    """

    def __init__(self, config: ProducerConfig | None = None) -> None:
        """Initialise the session machine.

        Args:
            config: Producer configuration; defaults are used when omitted.
        """
        self.config = config or ProducerConfig()
        self.scheduler = ChannelScanScheduler(self.config)
        self._logger = logger.bind(component="SessionMachine")

    def update(self, state: SessionState | None, message: InboundMessage) -> Transition:
        """Apply one inbound message to the session.

        Args:
            state: Current session state, or None when no session exists.
            message: The inbound message.

        Returns:
            The next state (None means the session is destroyed) and the
            effect contract for the runtime.

        Raises:
            TypeError: If the message type is unknown.
        """
        if state is None:
            next_state, result = self._update_absent(message)
        elif isinstance(message, CredentialTextChanged):
            next_state, result = self._on_text_changed(state, message)
        elif isinstance(message, CredentialCommitted):
            next_state, result = self._on_commit(state)
        elif isinstance(message, IdentifySucceeded):
            next_state, result = self._on_identify(state, message)
        elif isinstance(message, HydrateSucceeded):
            next_state, result = self._on_hydrate(state, message)
        elif isinstance(message, RehydrateRequested):
            next_state, result = self._on_rehydrate_requested(state)
        elif isinstance(message, TimerTick):
            next_state, result = self._on_tick(state, message)
        elif isinstance(message, FetchCompleted):
            next_state, result = self._on_fetch_completed(state, message)
        elif isinstance(message, SubscriptionChanged):
            next_state, result = self._on_subscription(state, message)
        elif isinstance(message, ApiError):
            next_state, result = self._on_api_error(state, message)
        else:
            raise TypeError(f"Unknown inbound message: {type(message).__name__}")

        if type(next_state) is not type(state):
            self._logger.info(
                "session_transition",
                message=type(message).__name__,
                from_state=type(state).__name__ if state is not None else None,
                to_state=type(next_state).__name__ if next_state is not None else None,
                persist=result.persist,
                effects=len(result.effects),
            )
        return next_state, result

    # ------------------------------------------------------------------
    # No session
    # ------------------------------------------------------------------

    def _update_absent(self, message: InboundMessage) -> Transition:
        if isinstance(message, CredentialTextChanged):
            return CredentialPending(text=message.text), NOTHING
        if isinstance(message, CredentialCommitted):
            return self._on_commit(CredentialPending(text=message.text or ""))
        self._drop(message, reason="no_session")
        return None, NOTHING

    # ------------------------------------------------------------------
    # Credential input
    # ------------------------------------------------------------------

    def _on_text_changed(self, state: SessionState, message: CredentialTextChanged) -> Transition:
        if accepts_credential_input(state):
            return replace(state, text=message.text), NOTHING
        # An authentication attempt in flight is not editable
        return state, NOTHING

    def _on_commit(self, state: SessionState) -> Transition:
        if isinstance(state, CredentialPending):
            if not state.text:
                return None, NOTHING
            return (
                CredentialSubmitted(text=state.text),
                Yield(effects=[IdentifyRequest(credential=state.text)]),
            )

        if isinstance(state, (Hydrated, AccountExpired)):
            if not state.text:
                # Deregister: drop the persisted snapshot and the cache
                return None, Yield(persist=True, cache_update=DESTROY)
            # Polling continues until the identify result arrives
            return (
                replace(state, submitted=state.text),
                Yield(effects=[IdentifyRequest(credential=state.text)]),
            )

        return state, NOTHING

    # ------------------------------------------------------------------
    # Identify / hydrate
    # ------------------------------------------------------------------

    def _on_identify(self, state: SessionState, message: IdentifySucceeded) -> Transition:
        if isinstance(state, CredentialSubmitted):
            if message.credential != state.text:
                return self._stale(state, message, reason="credential_mismatch")
            return (
                Identified(text=state.text, identity=message.identity),
                Yield(effects=[HydrateRequest(credential=state.text)]),
            )

        if isinstance(state, (Hydrated, AccountExpired)):
            if message.credential != state.submitted:
                return self._stale(state, message, reason="credential_mismatch")
            hydrate = Yield(effects=[HydrateRequest(credential=message.credential)])
            snapshot = state.snapshot
            if isinstance(state, AccountExpired):
                # Requests cut short by the expiry never complete normally
                snapshot = settle_snapshot(snapshot)
            if message.identity.id == snapshot.identity.id:
                return Rehydrating(text=message.credential, snapshot=snapshot), hydrate
            return (
                IdentitySwitching(
                    text=message.credential,
                    identity=message.identity,
                    old_snapshot=snapshot,
                ),
                hydrate,
            )

        if isinstance(state, ReconnectPending):
            if message.credential != state.snapshot.credential:
                return self._stale(state, message, reason="credential_mismatch")
            refreshed = state.snapshot.model_copy(update={"identity": message.identity})
            return self._start_scan(refreshed)

        return self._stale(state, message, reason="not_identifying")

    def _on_hydrate(self, state: SessionState, message: HydrateSucceeded) -> Transition:
        if isinstance(state, Identified):
            prior, identity = None, state.identity
        elif isinstance(state, Rehydrating):
            prior, identity = state.snapshot, state.snapshot.identity
        elif isinstance(state, IdentitySwitching):
            # Another account: nothing to reconcile against
            prior, identity = None, state.identity
        else:
            return self._stale(state, message, reason="not_hydrating")

        if message.credential != state.text:
            return self._stale(state, message, reason="credential_mismatch")

        snapshot = build_snapshot(
            prior,
            credential=message.credential,
            identity=identity,
            workspaces=message.workspaces,
            channels=message.channels,
        )
        self._logger.info(
            "snapshot_hydrated",
            account_id=identity.id,
            workspaces=len(snapshot.workspaces),
            channels=len(snapshot.channels),
            reconciled=prior is not None,
        )
        return self._start_scan(snapshot)

    def _on_rehydrate_requested(self, state: SessionState) -> Transition:
        if not isinstance(state, Hydrated):
            return state, NOTHING
        credential = state.snapshot.credential
        return (
            Rehydrating(text=credential, snapshot=state.snapshot),
            Yield(effects=[HydrateRequest(credential=credential)]),
        )

    def _start_scan(self, snapshot: Snapshot) -> Transition:
        snapshot, requests = self.scheduler.fill_scan_slots(snapshot)
        if self.scheduler.scan_finished(snapshot):
            return self._finish_scan(snapshot, items=[])
        return ChannelScanning(snapshot=snapshot), Yield(persist=True, effects=list(requests))

    def _finish_scan(
        self, snapshot: Snapshot, items: list[Message], effects: list[AsyncEffect] | None = None
    ) -> Transition:
        self._logger.info(
            "channel_scan_finished",
            channels=len(snapshot.channels),
            available=len(available_ids(snapshot)),
        )
        return (
            Hydrated(text=snapshot.credential, snapshot=snapshot),
            Yield(
                items=items,
                persist=True,
                cache_update=compute_cache(snapshot),
                scheduled_work=ScheduledWork.BROWSE,
                effects=list(effects or []),
            ),
        )

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def _on_tick(self, state: SessionState, message: TimerTick) -> Transition:
        if isinstance(state, ReconnectPending):
            if state.identifying:
                return state, NOTHING
            return (
                replace(state, identifying=True),
                Yield(effects=[IdentifyRequest(credential=state.snapshot.credential)]),
            )

        if not isinstance(state, POLLING_STATES):
            return state, NOTHING

        polled, request = self.scheduler.poll_next(require_snapshot(state), message.now)
        if request is None:
            return state, NOTHING

        more = self.scheduler.has_due(polled, message.now)
        return (
            with_snapshot(state, polled),
            Yield(
                effects=[request],
                scheduled_work=ScheduledWork.BROWSE if more else None,
            ),
        )

    def _on_fetch_completed(self, state: SessionState, message: FetchCompleted) -> Transition:
        result = message.result
        snapshot = snapshot_of(state)
        if snapshot is None or result.account_id != snapshot.identity.id:
            return self._stale(state, message, reason="no_matching_account")
        channel = snapshot.channels.get(result.channel_id)
        if channel is None:
            return self._stale(state, message, reason="unknown_channel")

        # Upstream order is newest first; consumers get oldest first
        items = list(reversed(result.messages))
        last_message_id = channel.last_message_id
        if result.messages:
            last_message_id = newest_message_id(last_message_id, result.messages[0].id)
        status = apply_success(
            channel.fetch_status, result.fetched_at, bool(result.messages), channel.id
        )
        updated = channel.model_copy(
            update={"fetch_status": status, "last_message_id": last_message_id}
        )

        self._logger.debug(
            "channel_fetched",
            channel_id=channel.id,
            messages=len(items),
            from_status=channel.fetch_status.kind,
            to_status=status.kind,
        )
        return self._after_channel_update(state, snapshot, updated, items, failed=None)

    def _on_subscription(self, state: SessionState, message: SubscriptionChanged) -> Transition:
        snapshot = snapshot_of(state)
        if snapshot is None:
            return state, NOTHING
        channel = snapshot.channels.get(message.channel_id)
        if channel is None:
            return self._stale(state, message, reason="unknown_channel")

        if not message.subscribed:
            status = pause(channel.fetch_status, channel.id)
            if status == channel.fetch_status:
                return state, NOTHING
            updated = channel.model_copy(update={"fetch_status": status})
            return self._after_channel_update(state, snapshot, updated, [], failed=None)

        if channel.fetch_status.kind not in ("available", "waiting"):
            return state, NOTHING
        if not isinstance(state, (ChannelScanning, *POLLING_STATES)):
            return state, NOTHING

        updated = channel.model_copy(update={"fetch_status": resume(channel.fetch_status, channel.id)})
        request = fetch_request_for(
            snapshot, updated, initial=False, page_limit=self.config.message_page_limit
        )
        next_state, result = self._after_channel_update(state, snapshot, updated, [], failed=None)
        return next_state, replace(result, effects=[*result.effects, request])

    def _after_channel_update(
        self,
        state: SessionState,
        snapshot: Snapshot,
        channel: Channel,
        items: list[Message],
        failed: str | None,
    ) -> Transition:
        """Fold one channel change into the state.

        While scanning, refills the freed scan slot and finishes the scan
        once no channel is left in its initial phase. Otherwise recomputes
        the cache when the set of available channels changed.
        """
        updated = snapshot.with_channel(channel)

        if isinstance(state, ChannelScanning):
            failed_set = state.failed | {failed} if failed else state.failed
            updated, requests = self.scheduler.fill_scan_slots(updated, failed_set)
            if self.scheduler.scan_finished(updated, failed_set):
                return self._finish_scan(updated, items=items)
            return (
                ChannelScanning(snapshot=updated, failed=failed_set),
                Yield(items=items, persist=True, effects=list(requests)),
            )

        cache = KEEP
        if available_ids(updated) != available_ids(snapshot):
            cache = compute_cache(updated)
        return with_snapshot(state, updated), Yield(items=items, persist=True, cache_update=cache)

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------

    def _on_api_error(self, state: SessionState, message: ApiError) -> Transition:
        origin = message.origin
        kind = message.failure.kind
        self._logger.warning(
            "api_error_received",
            state=type(state).__name__,
            origin=type(origin).__name__,
            kind=kind.value,
            status_code=message.failure.status_code,
            detail=message.failure.detail,
        )

        if isinstance(origin, FetchRequest):
            return self._on_fetch_error(state, message, origin)

        if not self._awaits(state, origin):
            return self._stale(state, message, reason="request_superseded")

        if isinstance(state, (CredentialSubmitted, Identified)):
            # No snapshot to fall back to
            return None, NOTHING

        if isinstance(state, (Rehydrating, IdentitySwitching)):
            return self._fall_back(state)

        if isinstance(state, ReconnectPending):
            if kind is FailureKind.UNAUTHORIZED:
                return self._expire(state)
            # Retried on the next tick
            return replace(state, identifying=False), NOTHING

        if isinstance(state, (Hydrated, AccountExpired)):
            if kind is FailureKind.UNAUTHORIZED:
                return self._expire(state)
            # Polling goes on with the current snapshot
            return replace(state, submitted=None), NOTHING

        return state, NOTHING

    def _on_fetch_error(
        self, state: SessionState, message: ApiError, origin: FetchRequest
    ) -> Transition:
        snapshot = snapshot_of(state)
        if snapshot is None or origin.account_id != snapshot.identity.id:
            return self._stale(state, message, reason="no_matching_account")

        if message.failure.kind is FailureKind.UNAUTHORIZED:
            if isinstance(state, (Rehydrating, IdentitySwitching)):
                return self._fall_back(state)
            if isinstance(state, (Hydrated, AccountExpired)):
                # An identify in flight still applies to the expired session
                return self._expire(state, submitted=state.submitted)
            return self._expire(state)

        channel = snapshot.channels.get(origin.channel_id)
        if channel is None:
            return self._stale(state, message, reason="unknown_channel")
        if not is_in_flight(channel.fetch_status):
            # Settled by a revive or restart since the request was issued
            return self._stale(state, message, reason="not_in_flight")

        failed: str | None = None
        if message.failure.kind is FailureKind.FORBIDDEN:
            status = apply_forbidden(channel.fetch_status, channel.id)
        else:
            status = apply_transient_failure(channel.fetch_status, message.occurred_at, channel.id)
            if isinstance(channel.fetch_status, InitialFetching) and isinstance(
                status, NeverFetched
            ):
                failed = channel.id

        updated = channel.model_copy(update={"fetch_status": status})
        return self._after_channel_update(state, snapshot, updated, [], failed=failed)

    def _awaits(self, state: SessionState, origin: AsyncEffect) -> bool:
        """Whether ``state`` is waiting for the outcome of ``origin``."""
        if isinstance(origin, IdentifyRequest):
            if isinstance(state, CredentialSubmitted):
                return origin.credential == state.text
            if isinstance(state, ReconnectPending):
                return state.identifying and origin.credential == state.snapshot.credential
            if isinstance(state, (Hydrated, AccountExpired)):
                return origin.credential == state.submitted
            return False
        if isinstance(origin, HydrateRequest):
            if isinstance(state, (Identified, Rehydrating, IdentitySwitching)):
                return origin.credential == state.text
        return False

    def _expire(self, state: SessionState, submitted: str | None = None) -> Transition:
        snapshot = require_snapshot(state)
        text = state.text if isinstance(state, (Hydrated, AccountExpired)) else snapshot.credential
        return (
            AccountExpired(text=text, snapshot=snapshot, submitted=submitted),
            Yield(persist=True),
        )

    def _fall_back(self, state: Rehydrating | IdentitySwitching) -> Transition:
        """Return to the last known-good hydrated state.

        The failing credential (old or new) is not distinguished.
        """
        snapshot = require_snapshot(state)
        self._logger.info(
            "rehydrate_fallback",
            from_state=type(state).__name__,
            account_id=snapshot.identity.id,
        )
        return Hydrated(text=snapshot.credential, snapshot=snapshot), Yield(persist=True)

    # ------------------------------------------------------------------
    # Stale arrivals
    # ------------------------------------------------------------------

    def _stale(self, state: SessionState, message: InboundMessage, reason: str) -> Transition:
        self._drop(message, reason=reason, state=type(state).__name__)
        return state, NOTHING

    def _drop(self, message: InboundMessage, reason: str, state: str | None = None) -> None:
        self._logger.debug(
            "stale_message_dropped",
            message=type(message).__name__,
            reason=reason,
            state=state,
        )
