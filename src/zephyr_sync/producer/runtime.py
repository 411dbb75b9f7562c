"""Async runtime driving the session machine.

The runtime owns the only mutable copy of the session state. Inbound
messages are queued and applied one at a time through
``SessionMachine.update``; the returned ``Yield`` is then carried out:

1. persist the encoded state when asked to
2. hand produced items to the consumer callback
3. publish or drop the derived channel cache
4. execute async effects as background tasks, feeding their outcome back
   into the queue
5. schedule an early tick when more work is due

A periodic ticker drives polling. Every processed message gets a fresh
correlation id, which the effects it spawns inherit in their logs.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from datetime import datetime, timezone

import structlog

from zephyr_sync.api.client import ChatApiClient, ChatApiError
from zephyr_sync.config import ProducerConfig
from zephyr_sync.logging import bind_account_context, set_correlation_id
from zephyr_sync.producer.codec import decode, encode
from zephyr_sync.producer.effects import (
    AsyncEffect,
    CacheDestroy,
    CacheSet,
    FetchRequest,
    HydrateRequest,
    IdentifyRequest,
    ScheduledWork,
    Yield,
)
from zephyr_sync.producer.messages import (
    ApiError,
    ApiFailure,
    FailureKind,
    FetchCompleted,
    FetchResult,
    HydrateSucceeded,
    IdentifySucceeded,
    InboundMessage,
    TimerTick,
)
from zephyr_sync.producer.models import Channel, Message
from zephyr_sync.producer.session import SessionMachine
from zephyr_sync.producer.states import SessionState, snapshot_of
from zephyr_sync.producer.store import SnapshotStore

logger = structlog.get_logger(__name__)

ItemsCallback = Callable[[list[Message]], None]
CacheCallback = Callable[[list[Channel] | None], None]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProducerRuntime:
    """Single-consumer actor loop around a ``SessionMachine``.

    Attributes:
        config: Producer configuration (tick interval, work delay).
        client: Transport used to execute async effects.
        store: Snapshot store, or None to run without persistence.
        machine: Session transition function.
        state: Current session state.
        cache: Current derived channel cache, None when destroyed.
    """

    def __init__(
        self,
        config: ProducerConfig,
        client: ChatApiClient,
        store: SnapshotStore | None = None,
        machine: SessionMachine | None = None,
        on_items: ItemsCallback | None = None,
        on_cache: CacheCallback | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the runtime.

        Args:
            config: Producer configuration.
            client: Chat API client executing identify, hydrate and fetch requests.
            store: Optional snapshot store.
            machine: Session machine; one is built from ``config`` when omitted.
            on_items: Called with every non-empty batch of produced messages.
            on_cache: Called whenever the derived cache is replaced or dropped.
            clock: Source of the current time.
        """
        self.config = config
        self.client = client
        self.store = store
        self.machine = machine or SessionMachine(config)
        self.on_items = on_items
        self.on_cache = on_cache
        self.clock = clock

        self.state: SessionState | None = None
        self.cache: list[Channel] | None = None

        self._queue: asyncio.Queue[InboundMessage] = asyncio.Queue()
        self._effect_tasks: set[asyncio.Task[None]] = set()
        self._timer_tasks: set[asyncio.Task[None]] = set()
        self._running: bool = False
        self._loop_task: asyncio.Task[None] | None = None
        self._ticker_task: asyncio.Task[None] | None = None
        self._bound_account: str | None = None
        self._logger = logger.bind(component="ProducerRuntime")

    @property
    def is_running(self) -> bool:
        """Whether the message loop is currently active."""
        return self._running

    def restore(self) -> SessionState | None:
        """Load the persisted snapshot into ``state``.

        Returns:
            The restored state, or None when nothing usable was stored.
        """
        if self.store is None:
            return None
        self.state = decode(self.store.load())
        self._bind_account()
        self._logger.info(
            "session_restored",
            state=type(self.state).__name__ if self.state is not None else None,
        )
        return self.state

    def dispatch(self, message: InboundMessage) -> None:
        """Queue an inbound message for processing."""
        self._queue.put_nowait(message)

    async def start(self) -> None:
        """Start the message loop and the periodic ticker.

        Raises:
            RuntimeError: If the runtime is already running.
        """
        if self._running:
            raise RuntimeError("Producer runtime is already running")

        self._running = True
        self._logger.info(
            "runtime_starting",
            tick_interval=self.config.tick_interval_seconds,
        )
        self._loop_task = asyncio.create_task(self._message_loop(), name="producer-messages")
        self._ticker_task = asyncio.create_task(self._tick_loop(), name="producer-ticker")

    async def stop(self) -> None:
        """Stop both loops and cancel outstanding requests.

        Safe to call if the runtime is not running.
        """
        if not self._running:
            self._logger.debug("runtime_stop_noop", reason="not running")
            return

        self._logger.info(
            "runtime_stopping",
            outstanding_effects=len(self._effect_tasks),
        )
        self._running = False

        tasks = [
            t
            for t in (self._loop_task, self._ticker_task, *self._effect_tasks, *self._timer_tasks)
            if t is not None
        ]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._loop_task = None
        self._ticker_task = None
        self._effect_tasks.clear()
        self._timer_tasks.clear()
        self._logger.info("runtime_stopped")

    async def process(self, message: InboundMessage) -> Yield:
        """Apply one message and carry out the resulting ``Yield``.

        Returns:
            The ``Yield`` returned by the session machine.
        """
        set_correlation_id(str(uuid.uuid4()))
        try:
            return self._apply(message)
        finally:
            set_correlation_id(None)

    def _apply(self, message: InboundMessage) -> Yield:
        next_state, result = self.machine.update(self.state, message)
        self.state = next_state
        self._bind_account()

        if result.persist and self.store is not None:
            self.store.save(encode(next_state))

        if result.items and self.on_items is not None:
            self.on_items(result.items)

        if isinstance(result.cache_update, CacheSet):
            self._publish_cache(result.cache_update.channels)
        elif isinstance(result.cache_update, CacheDestroy):
            self._publish_cache(None)

        for effect in result.effects:
            self._spawn_effect(effect)

        if result.scheduled_work is ScheduledWork.BROWSE:
            self._schedule_tick(self.config.work_delay_seconds)

        return result

    async def drain(self) -> None:
        """Process queued messages until no message or effect is outstanding.

        Early ticks requested through scheduled work are not waited for.
        """
        while True:
            while not self._queue.empty():
                await self.process(self._queue.get_nowait())
            if not self._effect_tasks:
                return
            await asyncio.wait(set(self._effect_tasks), return_when=asyncio.FIRST_COMPLETED)

    async def execute(self, effect: AsyncEffect) -> InboundMessage:
        """Run one async effect and translate its outcome into a message.

        Failures of the transport are returned as ``ApiError`` carrying the
        originating effect, never raised. Unexpected exceptions count as
        transient failures.

        Raises:
            TypeError: If the effect type is unknown.
        """
        try:
            if isinstance(effect, IdentifyRequest):
                identity = await self.client.identify(effect.credential)
                return IdentifySucceeded(credential=effect.credential, identity=identity)

            if isinstance(effect, HydrateRequest):
                workspaces, channels = await self.client.hydrate(effect.credential)
                return HydrateSucceeded(
                    credential=effect.credential,
                    workspaces=workspaces,
                    channels=channels,
                )

            if isinstance(effect, FetchRequest):
                messages = await self.client.fetch_messages(effect)
                return FetchCompleted(
                    result=FetchResult(
                        credential=effect.credential,
                        account_id=effect.account_id,
                        channel_id=effect.channel_id,
                        messages=messages,
                        fetched_at=self.clock(),
                    )
                )
        except ChatApiError as e:
            return ApiError(failure=e.to_failure(), origin=effect, occurred_at=self.clock())
        except Exception as e:
            self._logger.exception("effect_failed", effect=type(effect).__name__)
            failure = ApiFailure(kind=FailureKind.TRANSIENT, detail=repr(e))
            return ApiError(failure=failure, origin=effect, occurred_at=self.clock())

        raise TypeError(f"Unknown effect: {type(effect).__name__}")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _spawn_effect(self, effect: AsyncEffect) -> None:
        task = asyncio.create_task(self._run_effect(effect))
        self._effect_tasks.add(task)
        task.add_done_callback(self._effect_tasks.discard)

    async def _run_effect(self, effect: AsyncEffect) -> None:
        self._logger.debug("effect_started", effect=type(effect).__name__)
        self.dispatch(await self.execute(effect))

    def _schedule_tick(self, delay: float) -> None:
        task = asyncio.create_task(self._delayed_tick(delay))
        self._timer_tasks.add(task)
        task.add_done_callback(self._timer_tasks.discard)

    async def _delayed_tick(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self.dispatch(TimerTick(now=self.clock()))

    def _publish_cache(self, channels: list[Channel] | None) -> None:
        self.cache = channels
        self._logger.debug(
            "channel_cache_updated",
            channels=len(channels) if channels is not None else None,
        )
        if self.on_cache is not None:
            self.on_cache(channels)

    def _bind_account(self) -> None:
        snapshot = snapshot_of(self.state)
        account_id = snapshot.identity.id if snapshot is not None else None
        if account_id is None or account_id == self._bound_account:
            return
        bind_account_context(account_id=account_id, credential=snapshot.credential)
        self._bound_account = account_id

    async def _message_loop(self) -> None:
        self._logger.info("message_loop_started")
        while self._running:
            message = await self._queue.get()
            try:
                await self.process(message)
            except Exception:
                self._logger.exception("message_processing_error", message=type(message).__name__)
        self._logger.info("message_loop_exited")

    async def _tick_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.tick_interval_seconds)
            self.dispatch(TimerTick(now=self.clock()))
