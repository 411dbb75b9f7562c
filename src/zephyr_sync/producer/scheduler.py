"""Channel scan scheduler.

Two scheduling modes drive channel fetches:

- **Initial scan**: after a hydrate, up to ``scan_concurrency`` channels
  that were never fetched are marked ``InitialFetching`` and fetched at
  once. Each completion frees a slot that is refilled from the remaining
  ``NeverFetched`` channels until none are left.
- **Steady-state polling**: on every timer tick the single most urgent due
  channel is picked and fetched. Ordering follows
  ``fetch_status.sort_key``. Channels whose initial fetch failed stay
  ``NeverFetched`` and are left to the next scan pass, so a channel that
  keeps failing never crowds out the polled ones.

The scheduler is pure: it takes a snapshot and returns a new snapshot
together with the fetch requests to issue.
"""

from __future__ import annotations

from datetime import datetime

import structlog

from zephyr_sync.config import ProducerConfig
from zephyr_sync.producer.effects import FetchRequest, fetch_request_for
from zephyr_sync.producer.fetch_status import (
    InitialFetching,
    NeverFetched,
    begin_fetch,
    is_due,
    sort_key,
)
from zephyr_sync.producer.models import Channel, Snapshot

logger = structlog.get_logger(__name__)


def _priority(channel: Channel) -> tuple[tuple[int, float], str]:
    return (sort_key(channel.fetch_status), channel.id)


class ChannelScanScheduler:
    """Selects which channels to fetch next.

    Attributes:
        config: Producer configuration (scan concurrency, page limit).
    """

    def __init__(self, config: ProducerConfig) -> None:
        """Initialise the scheduler.

        Args:
            config: Producer configuration.
        """
        self.config = config
        self._logger = logger.bind(component="ChannelScanScheduler")

    # ------------------------------------------------------------------
    # Initial scan
    # ------------------------------------------------------------------

    def scanning_count(self, snapshot: Snapshot) -> int:
        """Number of channels with an initial fetch in flight."""
        return sum(
            1 for c in snapshot.channels.values() if isinstance(c.fetch_status, InitialFetching)
        )

    def scan_candidates(
        self, snapshot: Snapshot, failed: frozenset[str] = frozenset()
    ) -> list[Channel]:
        """``NeverFetched`` channels not yet tried in this scan pass, in fetch order."""
        candidates = [
            c
            for c in snapshot.channels.values()
            if isinstance(c.fetch_status, NeverFetched) and c.id not in failed
        ]
        return sorted(candidates, key=_priority)

    def fill_scan_slots(
        self, snapshot: Snapshot, failed: frozenset[str] = frozenset()
    ) -> tuple[Snapshot, list[FetchRequest]]:
        """Promote unfetched channels into free scan slots.

        Never lets the number of ``InitialFetching`` channels exceed
        ``scan_concurrency``.

        Args:
            snapshot: Snapshot being scanned.
            failed: Channels that already failed in this scan pass.

        Returns:
            The updated snapshot and one fetch request per promoted channel.
        """
        free = self.config.scan_concurrency - self.scanning_count(snapshot)
        if free <= 0:
            return snapshot, []

        promoted = self.scan_candidates(snapshot, failed)[:free]
        if not promoted:
            return snapshot, []

        channels = dict(snapshot.channels)
        requests: list[FetchRequest] = []
        for channel in promoted:
            requests.append(
                fetch_request_for(
                    snapshot, channel, initial=True, page_limit=self.config.message_page_limit
                )
            )
            channels[channel.id] = channel.model_copy(
                update={"fetch_status": begin_fetch(channel.fetch_status, channel.id)}
            )

        self._logger.debug(
            "scan_slots_filled",
            promoted=[c.id for c in promoted],
            in_flight=self.scanning_count(snapshot) + len(promoted),
            concurrency=self.config.scan_concurrency,
        )
        return snapshot.with_channels(channels), requests

    def scan_finished(self, snapshot: Snapshot, failed: frozenset[str] = frozenset()) -> bool:
        """Whether every channel has left the initial-scan phase for this pass."""
        return self.scanning_count(snapshot) == 0 and not self.scan_candidates(snapshot, failed)

    # ------------------------------------------------------------------
    # Steady-state polling
    # ------------------------------------------------------------------

    def next_due(self, snapshot: Snapshot, now: datetime) -> Channel | None:
        """Return the most urgent channel due at ``now``, or None."""
        due = [c for c in snapshot.channels.values() if is_due(c.fetch_status, now)]
        if not due:
            return None
        return min(due, key=_priority)

    def has_due(self, snapshot: Snapshot, now: datetime) -> bool:
        """Whether any channel is due at ``now``."""
        return any(is_due(c.fetch_status, now) for c in snapshot.channels.values())

    def poll_next(
        self, snapshot: Snapshot, now: datetime
    ) -> tuple[Snapshot, FetchRequest | None]:
        """Mark the next due channel in flight and build its request.

        Args:
            snapshot: Snapshot being polled.
            now: Tick time.

        Returns:
            The updated snapshot and the request, or the unchanged snapshot
            and None when nothing is due.
        """
        channel = self.next_due(snapshot, now)
        if channel is None:
            return snapshot, None

        request = fetch_request_for(
            snapshot, channel, initial=False, page_limit=self.config.message_page_limit
        )
        updated = channel.model_copy(
            update={"fetch_status": begin_fetch(channel.fetch_status, channel.id)}
        )

        self._logger.debug(
            "channel_fetch_scheduled",
            channel_id=channel.id,
            from_status=channel.fetch_status.kind,
        )
        return snapshot.with_channel(updated), request
