"""Unit tests for the session state machine.

Tests cover:
- Credential entry, commit and deregistration
- Identify, hydrate and the initial channel scan
- Steady-state polling and subscriptions
- Rehydrate, identity switching and fallback
- Reconnect after restart
- Error classification and stale arrivals
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from zephyr_sync.config import ProducerConfig
from zephyr_sync.producer.effects import (
    DESTROY,
    KEEP,
    NOTHING,
    CacheSet,
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
    Forbidden,
    InitialFetching,
    NeverFetched,
    NextFetchAt,
    ResumeFetching,
    Waiting,
)
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
    RehydrateRequested,
    SubscriptionChanged,
    TimerTick,
)
from zephyr_sync.producer.models import Identity
from zephyr_sync.producer.session import SessionMachine, newest_message_id
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
    require_snapshot,
)


@pytest.fixture
def machine() -> SessionMachine:
    return SessionMachine(ProducerConfig(scan_concurrency=1))


@pytest.fixture
def other_identity() -> Identity:
    return Identity(id="555", username="mallory")


def fetched(channel_id, messages, now, account_id="100", credential="tok-1"):
    return FetchCompleted(
        result=FetchResult(
            credential=credential,
            account_id=account_id,
            channel_id=channel_id,
            messages=messages,
            fetched_at=now,
        )
    )


def api_error(kind, origin, now, status_code=None):
    return ApiError(
        failure=ApiFailure(kind=kind, status_code=status_code),
        origin=origin,
        occurred_at=now,
    )


def fetch_origin(channel_id="c1", account_id="100", credential="tok-1"):
    return FetchRequest(credential=credential, account_id=account_id, channel_id=channel_id)


class TestCredentialEntry:
    """Test credential input and commit."""

    def test_text_change_creates_session(self, machine):
        state, result = machine.update(None, CredentialTextChanged(text="abc"))

        assert state == CredentialPending(text="abc")
        assert result == NOTHING

    def test_empty_commit_destroys_without_persisting(self, machine):
        state, result = machine.update(CredentialPending(text=""), CredentialCommitted())

        assert state is None
        assert result.persist is False
        assert result.effects == []

    def test_commit_submits_credential(self, machine):
        state, result = machine.update(CredentialPending(text="tok-1"), CredentialCommitted())

        assert state == CredentialSubmitted(text="tok-1")
        assert result.effects == [IdentifyRequest(credential="tok-1")]

    def test_commit_without_session(self, machine):
        state, result = machine.update(None, CredentialCommitted(text="tok-1"))

        assert state == CredentialSubmitted(text="tok-1")
        assert result.effects == [IdentifyRequest(credential="tok-1")]

    def test_submitted_credential_is_locked(self, machine):
        state = CredentialSubmitted(text="tok-1")

        next_state, result = machine.update(state, CredentialTextChanged(text="other"))

        assert next_state == state
        assert result == NOTHING

    def test_hydrated_text_is_editable(self, machine, make_snapshot):
        state = Hydrated(text="tok-1", snapshot=make_snapshot())

        next_state, result = machine.update(state, CredentialTextChanged(text="tok-2"))

        assert next_state == Hydrated(text="tok-2", snapshot=state.snapshot)
        assert result == NOTHING

    @pytest.mark.parametrize("state_type", [Hydrated, AccountExpired])
    def test_empty_commit_deregisters(self, machine, make_snapshot, state_type):
        state = state_type(text="", snapshot=make_snapshot())

        next_state, result = machine.update(state, CredentialCommitted())

        assert next_state is None
        assert result == Yield(persist=True, cache_update=DESTROY)

    def test_commit_from_hydrated_identifies_new_text(self, machine, make_snapshot):
        state = Hydrated(text="tok-2", snapshot=make_snapshot())

        next_state, result = machine.update(state, CredentialCommitted())

        assert next_state == Hydrated(text="tok-2", snapshot=state.snapshot, submitted="tok-2")
        assert result.effects == [IdentifyRequest(credential="tok-2")]

    def test_identify_for_earlier_commit_is_stale(self, machine, identity, make_snapshot):
        state = Hydrated(text="tok-3", snapshot=make_snapshot(), submitted="tok-3")

        next_state, result = machine.update(
            state, IdentifySucceeded(credential="tok-2", identity=identity)
        )

        assert next_state == state
        assert result == NOTHING

    def test_identify_without_commit_is_stale(self, machine, identity, make_snapshot):
        state = Hydrated(text="tok-2", snapshot=make_snapshot())

        next_state, result = machine.update(
            state, IdentifySucceeded(credential="tok-2", identity=identity)
        )

        assert next_state == state
        assert result == NOTHING


class TestInitialSync:
    """Test identify, hydrate and the initial channel scan."""

    def test_identify_then_hydrate(self, machine, identity):
        state, result = machine.update(
            CredentialSubmitted(text="tok-1"),
            IdentifySucceeded(credential="tok-1", identity=identity),
        )

        assert state == Identified(text="tok-1", identity=identity)
        assert result.effects == [HydrateRequest(credential="tok-1")]

    def test_identify_for_other_credential_is_stale(self, machine, identity):
        state = CredentialSubmitted(text="tok-1")

        next_state, result = machine.update(
            state, IdentifySucceeded(credential="tok-0", identity=identity)
        )

        assert next_state == state
        assert result == NOTHING

    def test_hydrate_starts_bounded_scan(self, machine, identity, workspace, make_channel):
        channels = {
            "c1": make_channel("c1", last_message_id="42"),
            "c2": make_channel("c2"),
        }

        state, result = machine.update(
            Identified(text="tok-1", identity=identity),
            HydrateSucceeded(
                credential="tok-1", workspaces={workspace.id: workspace}, channels=channels
            ),
        )

        assert isinstance(state, ChannelScanning)
        assert state.snapshot.channels["c1"].fetch_status == InitialFetching()
        assert state.snapshot.channels["c2"].fetch_status == NeverFetched()
        assert result.persist is True
        assert result.effects == [
            FetchRequest(
                credential="tok-1",
                account_id="100",
                channel_id="c1",
                initial=True,
                before="42",
                limit=100,
            )
        ]

    def test_hydrate_without_channels_finishes_immediately(self, machine, identity):
        state, result = machine.update(
            Identified(text="tok-1", identity=identity),
            HydrateSucceeded(credential="tok-1"),
        )

        assert isinstance(state, Hydrated)
        assert state.text == "tok-1"
        assert result.cache_update == DESTROY
        assert result.scheduled_work is ScheduledWork.BROWSE

    def test_initial_fetch_makes_channel_available(
        self, machine, make_channel, make_snapshot, make_message, now
    ):
        snapshot = make_snapshot(
            [make_channel("c1", status=InitialFetching()), make_channel("c2")]
        )

        state, result = machine.update(
            ChannelScanning(snapshot=snapshot), fetched("c1", [make_message("42")], now)
        )

        assert isinstance(state, ChannelScanning)
        channel = state.snapshot.channels["c1"]
        assert channel.fetch_status == Available()
        assert channel.last_message_id == "42"
        # Freed slot goes to the next unfetched channel
        assert state.snapshot.channels["c2"].fetch_status == InitialFetching()
        assert [e.channel_id for e in result.effects] == ["c2"]
        assert result.persist is True

    def test_items_are_emitted_oldest_first(
        self, machine, make_channel, make_snapshot, make_message, now
    ):
        snapshot = make_snapshot([make_channel("c1", status=InitialFetching())])
        newest_first = [make_message("103"), make_message("102"), make_message("101")]

        _, result = machine.update(ChannelScanning(snapshot=snapshot), fetched("c1", newest_first, now))

        assert [m.id for m in result.items] == ["101", "102", "103"]

    def test_backfill_keeps_known_last_message(
        self, machine, make_channel, make_snapshot, make_message, now
    ):
        snapshot = make_snapshot(
            [make_channel("c1", status=InitialFetching(), last_message_id="1000")]
        )

        state, _ = machine.update(
            ChannelScanning(snapshot=snapshot), fetched("c1", [make_message("999")], now)
        )

        assert state.snapshot.channels["c1"].last_message_id == "1000"

    def test_last_scan_completion_hydrates(
        self, machine, make_channel, make_snapshot, make_message, now
    ):
        snapshot = make_snapshot(
            [
                make_channel("c1", status=Available()),
                make_channel("c2", status=InitialFetching()),
            ]
        )

        state, result = machine.update(
            ChannelScanning(snapshot=snapshot), fetched("c2", [make_message("7", "c2")], now)
        )

        assert isinstance(state, Hydrated)
        assert state.text == "tok-1"
        assert result.persist is True
        assert result.scheduled_work is ScheduledWork.BROWSE
        assert isinstance(result.cache_update, CacheSet)
        assert {c.id for c in result.cache_update.channels} == {"c1", "c2"}
        assert [m.id for m in result.items] == ["7"]

    def test_transient_scan_failure_is_not_retried_in_same_pass(
        self, machine, make_channel, make_snapshot, now
    ):
        snapshot = make_snapshot([make_channel("c1", status=InitialFetching())])

        state, result = machine.update(
            ChannelScanning(snapshot=snapshot),
            api_error(FailureKind.TRANSIENT, fetch_origin("c1"), now, 500),
        )

        assert isinstance(state, Hydrated)
        assert state.snapshot.channels["c1"].fetch_status == NeverFetched()
        assert result.effects == []
        assert result.cache_update == DESTROY

    def test_identify_failure_destroys_session(self, machine, now):
        state, result = machine.update(
            CredentialSubmitted(text="tok-1"),
            api_error(FailureKind.UNAUTHORIZED, IdentifyRequest(credential="tok-1"), now, 401),
        )

        assert state is None
        assert result == NOTHING

    def test_hydrate_failure_destroys_session(self, machine, identity, now):
        state, _ = machine.update(
            Identified(text="tok-1", identity=identity),
            api_error(FailureKind.TRANSIENT, HydrateRequest(credential="tok-1"), now, 502),
        )

        assert state is None


class TestPolling:
    """Test steady-state polling and subscriptions."""

    def test_tick_fetches_due_channel(self, machine, make_channel, make_snapshot, now):
        snapshot = make_snapshot(
            [
                make_channel("c1", status=NextFetchAt(at=now), last_message_id="50"),
                make_channel("c2", status=NextFetchAt(at=now + timedelta(seconds=30))),
            ]
        )

        state, result = machine.update(Hydrated(text="tok-1", snapshot=snapshot), TimerTick(now=now))

        assert state.snapshot.channels["c1"].fetch_status == Fetching(next_at=now)
        assert result.effects == [
            FetchRequest(credential="tok-1", account_id="100", channel_id="c1", after="50")
        ]
        assert result.scheduled_work is None

    def test_tick_requests_more_work_when_more_is_due(
        self, machine, make_channel, make_snapshot, now
    ):
        snapshot = make_snapshot(
            [
                make_channel("c1", status=NextFetchAt(at=now)),
                make_channel("c2", status=NextFetchAt(at=now)),
            ]
        )

        _, result = machine.update(Hydrated(text="tok-1", snapshot=snapshot), TimerTick(now=now))

        assert len(result.effects) == 1
        assert result.scheduled_work is ScheduledWork.BROWSE

    def test_tick_with_nothing_due(self, machine, make_channel, make_snapshot, now):
        state = Hydrated(text="tok-1", snapshot=make_snapshot([make_channel("c1", status=Available())]))

        next_state, result = machine.update(state, TimerTick(now=now))

        assert next_state == state
        assert result == NOTHING

    def test_empty_poll_backs_off(self, machine, make_channel, make_snapshot, now):
        snapshot = make_snapshot(
            [make_channel("c1", status=Fetching(next_at=now, backoff=BackoffLevel.BO10))]
        )

        state, result = machine.update(Hydrated(text="tok-1", snapshot=snapshot), fetched("c1", [], now))

        assert state.snapshot.channels["c1"].fetch_status == NextFetchAt(
            at=now + timedelta(seconds=30), backoff=BackoffLevel.BO30
        )
        assert result.items == []
        assert result.cache_update == KEEP
        assert result.persist is True

    def test_failing_initial_fetch_does_not_starve_polling(
        self, machine, make_channel, make_snapshot, now
    ):
        snapshot = make_snapshot(
            [
                make_channel("bad"),
                make_channel("good", status=NextFetchAt(at=now)),
            ]
        )
        state = Hydrated(text="tok-1", snapshot=snapshot)
        picked = []
        tick_at = now

        for _ in range(3):
            state, result = machine.update(state, TimerTick(now=tick_at))
            (request,) = result.effects
            picked.append(request.channel_id)
            state, _ = machine.update(
                state, api_error(FailureKind.TRANSIENT, request, tick_at, 500)
            )
            tick_at = state.snapshot.channels["good"].fetch_status.at

        assert picked == ["good", "good", "good"]
        assert state.snapshot.channels["bad"].fetch_status == NeverFetched()

    def test_tick_with_only_unfetched_channels(self, machine, make_channel, make_snapshot, now):
        state = Hydrated(text="tok-1", snapshot=make_snapshot([make_channel("c1")]))

        next_state, result = machine.update(state, TimerTick(now=now))

        assert next_state == state
        assert result == NOTHING

    def test_unsubscribe_pauses_channel(self, machine, make_channel, make_snapshot, now):
        snapshot = make_snapshot([make_channel("c1", status=NextFetchAt(at=now))])

        state, result = machine.update(
            Hydrated(text="tok-1", snapshot=snapshot),
            SubscriptionChanged(channel_id="c1", subscribed=False),
        )

        assert state.snapshot.channels["c1"].fetch_status == Waiting()
        assert result.persist is True

    def test_subscribe_resumes_paused_channel(self, machine, make_channel, make_snapshot):
        snapshot = make_snapshot([make_channel("c1", status=Waiting(), last_message_id="77")])

        state, result = machine.update(
            Hydrated(text="tok-1", snapshot=snapshot),
            SubscriptionChanged(channel_id="c1", subscribed=True),
        )

        assert state.snapshot.channels["c1"].fetch_status == ResumeFetching()
        assert result.effects == [
            FetchRequest(credential="tok-1", account_id="100", channel_id="c1", after="77")
        ]

    def test_subscribe_available_channel_updates_cache(
        self, machine, make_channel, make_snapshot
    ):
        snapshot = make_snapshot([make_channel("c1", status=Available())])

        state, result = machine.update(
            Hydrated(text="tok-1", snapshot=snapshot),
            SubscriptionChanged(channel_id="c1", subscribed=True),
        )

        assert state.snapshot.channels["c1"].fetch_status == ResumeFetching()
        assert result.cache_update == DESTROY

    def test_subscribe_forbidden_channel_is_ignored(self, machine, make_channel, make_snapshot):
        state = Hydrated(text="tok-1", snapshot=make_snapshot([make_channel("c1", status=Forbidden())]))

        next_state, result = machine.update(
            state, SubscriptionChanged(channel_id="c1", subscribed=True)
        )

        assert next_state == state
        assert result == NOTHING


class TestErrors:
    """Test error classification in live sessions."""

    def test_unauthorized_fetch_expires_account(self, machine, make_channel, make_snapshot, now):
        snapshot = make_snapshot([make_channel("c1", status=Fetching(next_at=now))])
        state = Hydrated(text="tok-1", snapshot=snapshot)

        next_state, result = machine.update(
            state, api_error(FailureKind.UNAUTHORIZED, fetch_origin("c1"), now, 401)
        )

        assert next_state == AccountExpired(text="tok-1", snapshot=snapshot)
        assert result == Yield(persist=True)

    def test_unauthorized_fetch_keeps_pending_identify(
        self, machine, identity, make_channel, make_snapshot, now
    ):
        snapshot = make_snapshot([make_channel("c1", status=Fetching(next_at=now))])
        state = Hydrated(text="tok-2", snapshot=snapshot, submitted="tok-2")

        expired, _ = machine.update(
            state, api_error(FailureKind.UNAUTHORIZED, fetch_origin("c1"), now, 401)
        )
        next_state, result = machine.update(
            expired, IdentifySucceeded(credential="tok-2", identity=identity)
        )

        assert expired == AccountExpired(text="tok-2", snapshot=snapshot, submitted="tok-2")
        assert isinstance(next_state, Rehydrating)
        assert result.effects == [HydrateRequest(credential="tok-2")]

    def test_unauthorized_identify_expires_account(self, machine, make_snapshot, now):
        snapshot = make_snapshot()

        next_state, result = machine.update(
            Hydrated(text="tok-2", snapshot=snapshot, submitted="tok-2"),
            api_error(FailureKind.UNAUTHORIZED, IdentifyRequest(credential="tok-2"), now, 401),
        )

        assert next_state == AccountExpired(text="tok-2", snapshot=snapshot)
        assert result.persist is True

    def test_transient_identify_failure_keeps_hydrated(self, machine, make_snapshot, now):
        state = Hydrated(text="tok-2", snapshot=make_snapshot(), submitted="tok-2")

        next_state, result = machine.update(
            state, api_error(FailureKind.TRANSIENT, IdentifyRequest(credential="tok-2"), now)
        )

        assert next_state == Hydrated(text="tok-2", snapshot=state.snapshot)
        assert result == NOTHING

    def test_forbidden_sinks_channel(self, machine, make_channel, make_snapshot, now):
        snapshot = make_snapshot(
            [
                make_channel("c1", status=Fetching(next_at=now)),
                make_channel("c2", status=Available()),
            ]
        )

        state, result = machine.update(
            Hydrated(text="tok-1", snapshot=snapshot),
            api_error(FailureKind.FORBIDDEN, fetch_origin("c1"), now, 403),
        )

        assert isinstance(state, Hydrated)
        assert state.snapshot.channels["c1"].fetch_status == Forbidden()
        assert result.cache_update == KEEP

    def test_transient_fetch_failure_backs_off(self, machine, make_channel, make_snapshot, now):
        snapshot = make_snapshot(
            [make_channel("c1", status=Fetching(next_at=now, backoff=BackoffLevel.BO5))]
        )

        state, _ = machine.update(
            Hydrated(text="tok-1", snapshot=snapshot),
            api_error(FailureKind.TRANSIENT, fetch_origin("c1"), now, 500),
        )

        assert state.snapshot.channels["c1"].fetch_status == NextFetchAt(
            at=now + timedelta(seconds=10), backoff=BackoffLevel.BO10
        )


class TestStaleArrivals:
    """Test that late completions for superseded sessions are dropped."""

    def test_late_forbidden_after_revive(self, machine, identity, make_channel, make_snapshot, now):
        snapshot = make_snapshot([make_channel("c1", status=Fetching(next_at=now))])
        revived, _ = machine.update(
            AccountExpired(text="tok-1", snapshot=snapshot, submitted="tok-1"),
            IdentifySucceeded(credential="tok-1", identity=identity),
        )
        assert revived.snapshot.channels["c1"].fetch_status == NextFetchAt(at=now)

        next_state, result = machine.update(
            revived, api_error(FailureKind.FORBIDDEN, fetch_origin("c1"), now, 403)
        )

        assert next_state == revived
        assert result == NOTHING

    def test_late_transient_failure_after_restart(self, machine, make_channel, make_snapshot, now):
        status = NextFetchAt(at=now, backoff=BackoffLevel.BO10)
        state = Hydrated(text="tok-1", snapshot=make_snapshot([make_channel("c1", status=status)]))

        next_state, result = machine.update(
            state, api_error(FailureKind.TRANSIENT, fetch_origin("c1"), now, 500)
        )

        assert next_state == state
        assert result == NOTHING

    def test_fetch_after_session_destroyed(self, machine, make_message, now):
        state, result = machine.update(None, fetched("c1", [make_message("1")], now))

        assert state is None
        assert result == NOTHING

    def test_fetch_for_other_account(self, machine, make_channel, make_snapshot, make_message, now):
        state = Hydrated(
            text="tok-1", snapshot=make_snapshot([make_channel("c1", status=Fetching(next_at=now))])
        )

        next_state, result = machine.update(
            state, fetched("c1", [make_message("1")], now, account_id="999")
        )

        assert next_state == state
        assert result == NOTHING

    def test_fetch_for_unknown_channel(self, machine, make_snapshot, make_message, now):
        state = Hydrated(text="tok-1", snapshot=make_snapshot())

        next_state, result = machine.update(state, fetched("gone", [make_message("1")], now))

        assert next_state == state
        assert result == NOTHING

    def test_hydrate_without_hydrating_state(self, machine, make_snapshot):
        state = Hydrated(text="tok-1", snapshot=make_snapshot())

        next_state, result = machine.update(state, HydrateSucceeded(credential="tok-1"))

        assert next_state == state
        assert result == NOTHING

    def test_superseded_identify_error(self, machine, now):
        state = CredentialSubmitted(text="tok-2")

        next_state, result = machine.update(
            state,
            api_error(FailureKind.UNAUTHORIZED, IdentifyRequest(credential="tok-1"), now, 401),
        )

        assert next_state == state
        assert result == NOTHING


class TestRehydrate:
    """Test rehydrate, identity switching and fallback."""

    def test_rehydrate_requested(self, machine, make_snapshot):
        snapshot = make_snapshot()

        state, result = machine.update(Hydrated(text="edited", snapshot=snapshot), RehydrateRequested())

        assert state == Rehydrating(text="tok-1", snapshot=snapshot)
        assert result.effects == [HydrateRequest(credential="tok-1")]

    def test_same_account_rehydrates(self, machine, identity, make_snapshot):
        snapshot = make_snapshot()

        state, result = machine.update(
            Hydrated(text="tok-2", snapshot=snapshot, submitted="tok-2"),
            IdentifySucceeded(credential="tok-2", identity=identity),
        )

        assert state == Rehydrating(text="tok-2", snapshot=snapshot)
        assert result.effects == [HydrateRequest(credential="tok-2")]

    def test_rehydrate_merges_progress(self, machine, make_channel, make_snapshot, now):
        snapshot = make_snapshot(
            [make_channel("c1", status=NextFetchAt(at=now), last_message_id="500")]
        )
        listing = {"c1": make_channel("c1", name="renamed"), "c2": make_channel("c2")}

        state, result = machine.update(
            Rehydrating(text="tok-2", snapshot=snapshot),
            HydrateSucceeded(credential="tok-2", channels=listing),
        )

        assert isinstance(state, ChannelScanning)
        assert state.snapshot.credential == "tok-2"
        assert state.snapshot.channels["c1"].name == "renamed"
        assert state.snapshot.channels["c1"].fetch_status == NextFetchAt(at=now)
        assert state.snapshot.channels["c1"].last_message_id == "500"
        assert [e.channel_id for e in result.effects] == ["c2"]

    def test_rehydrate_keeps_polling_old_snapshot(self, machine, make_channel, make_snapshot, now):
        snapshot = make_snapshot([make_channel("c1", status=NextFetchAt(at=now))])

        state, result = machine.update(Rehydrating(text="tok-2", snapshot=snapshot), TimerTick(now=now))

        assert isinstance(state, Rehydrating)
        assert state.snapshot.channels["c1"].fetch_status == Fetching(next_at=now)
        assert len(result.effects) == 1

    def test_other_account_switches_identity(self, machine, other_identity, make_snapshot):
        snapshot = make_snapshot()

        state, result = machine.update(
            Hydrated(text="tok-9", snapshot=snapshot, submitted="tok-9"),
            IdentifySucceeded(credential="tok-9", identity=other_identity),
        )

        assert state == IdentitySwitching(text="tok-9", identity=other_identity, old_snapshot=snapshot)
        assert result.effects == [HydrateRequest(credential="tok-9")]

    def test_switch_hydrates_fresh_snapshot(
        self, machine, other_identity, make_channel, make_snapshot
    ):
        old = make_snapshot([make_channel("c1", status=Available(), last_message_id="10")])
        state = IdentitySwitching(text="tok-9", identity=other_identity, old_snapshot=old)

        next_state, result = machine.update(
            state, HydrateSucceeded(credential="tok-9", channels={"c1": make_channel("c1")})
        )

        assert isinstance(next_state, ChannelScanning)
        assert next_state.snapshot.identity == other_identity
        assert next_state.snapshot.credential == "tok-9"
        assert next_state.snapshot.channels["c1"].fetch_status == InitialFetching()
        assert result.effects[0].account_id == "555"

    @pytest.mark.parametrize("kind", [FailureKind.UNAUTHORIZED, FailureKind.TRANSIENT])
    def test_switch_failure_falls_back(self, machine, other_identity, make_snapshot, now, kind):
        old = make_snapshot()
        state = IdentitySwitching(text="tok-9", identity=other_identity, old_snapshot=old)

        next_state, result = machine.update(
            state, api_error(kind, HydrateRequest(credential="tok-9"), now)
        )

        assert next_state == Hydrated(text="tok-1", snapshot=old)
        assert result == Yield(persist=True)

    def test_rehydrate_failure_falls_back(self, machine, make_snapshot, now):
        snapshot = make_snapshot()

        next_state, result = machine.update(
            Rehydrating(text="tok-2", snapshot=snapshot),
            api_error(FailureKind.UNAUTHORIZED, HydrateRequest(credential="tok-2"), now, 401),
        )

        assert next_state == Hydrated(text="tok-1", snapshot=snapshot)
        assert result.persist is True

    def test_revived_account_settles_stuck_fetches(
        self, machine, identity, make_channel, make_snapshot, now
    ):
        snapshot = make_snapshot([make_channel("c1", status=Fetching(next_at=now))])

        state, _ = machine.update(
            AccountExpired(text="tok-3", snapshot=snapshot, submitted="tok-3"),
            IdentifySucceeded(credential="tok-3", identity=identity),
        )

        assert isinstance(state, Rehydrating)
        assert state.snapshot.channels["c1"].fetch_status == NextFetchAt(at=now)


class TestReconnect:
    """Test resuming a session restored from storage."""

    def test_tick_identifies_once(self, machine, make_snapshot, now):
        snapshot = make_snapshot()

        state, result = machine.update(ReconnectPending(snapshot=snapshot), TimerTick(now=now))

        assert state == ReconnectPending(snapshot=snapshot, identifying=True)
        assert result.effects == [IdentifyRequest(credential="tok-1")]

        again, result = machine.update(state, TimerTick(now=now))
        assert again == state
        assert result == NOTHING

    def test_identify_resumes_polling(self, machine, identity, make_channel, make_snapshot, now):
        snapshot = make_snapshot(
            [
                make_channel("c1", status=Available()),
                make_channel("c2", status=NextFetchAt(at=now)),
            ]
        )

        state, result = machine.update(
            ReconnectPending(snapshot=snapshot, identifying=True),
            IdentifySucceeded(credential="tok-1", identity=identity),
        )

        assert state == Hydrated(text="tok-1", snapshot=snapshot)
        assert [c.id for c in result.cache_update.channels] == ["c1"]
        assert result.scheduled_work is ScheduledWork.BROWSE

    def test_reconnect_rescans_unfetched_channels(
        self, machine, identity, make_channel, make_snapshot, now
    ):
        snapshot = make_snapshot(
            [
                make_channel("c1", status=NextFetchAt(at=now)),
                make_channel("c2", last_message_id="77"),
            ]
        )

        state, result = machine.update(
            ReconnectPending(snapshot=snapshot, identifying=True),
            IdentifySucceeded(credential="tok-1", identity=identity),
        )

        assert isinstance(state, ChannelScanning)
        assert state.snapshot.channels["c2"].fetch_status == InitialFetching()
        assert [(e.channel_id, e.initial) for e in result.effects] == [("c2", True)]

    def test_transient_identify_failure_retries_on_tick(self, machine, make_snapshot, now):
        snapshot = make_snapshot()

        state, result = machine.update(
            ReconnectPending(snapshot=snapshot, identifying=True),
            api_error(FailureKind.TRANSIENT, IdentifyRequest(credential="tok-1"), now),
        )

        assert state == ReconnectPending(snapshot=snapshot, identifying=False)
        assert result == NOTHING

    def test_unauthorized_identify_expires(self, machine, make_snapshot, now):
        snapshot = make_snapshot()

        state, result = machine.update(
            ReconnectPending(snapshot=snapshot, identifying=True),
            api_error(FailureKind.UNAUTHORIZED, IdentifyRequest(credential="tok-1"), now, 401),
        )

        assert state == AccountExpired(text="tok-1", snapshot=snapshot)
        assert result.persist is True

    def test_reconnect_is_locked(self, machine, make_snapshot):
        state = ReconnectPending(snapshot=make_snapshot())

        next_state, result = machine.update(state, CredentialTextChanged(text="x"))

        assert next_state == state
        assert result == NOTHING


@pytest.mark.parametrize(
    "current,candidate,expected",
    [
        (None, "5", "5"),
        ("99", "100", "100"),
        ("1000", "999", "1000"),
        ("42", "42", "42"),
    ],
)
def test_newest_message_id(current, candidate, expected):
    assert newest_message_id(current, candidate) == expected


def test_require_snapshot_rejects_state_without_snapshot():
    with pytest.raises(ValueError, match="CredentialSubmitted holds no snapshot"):
        require_snapshot(CredentialSubmitted(text="tok-1"))
