"""Snapshot merge and derived cache computation.

On every successful hydrate the freshly listed channels are reconciled with
the channels of the prior snapshot so that polling progress survives a
reconnect:

- only in the old set: dropped, the channel is no longer visible upstream
- in both: descriptive fields come from the new listing, ``fetch_status``
  and ``last_message_id`` are carried over from the old channel
- only in the new set: inserted as ``NeverFetched``

The derived cache lists the channels currently ``Available``, sorted by
workspace name then channel name, with direct messages last.
"""

from __future__ import annotations

import structlog

from zephyr_sync.producer.effects import DESTROY, CacheSet, CacheUpdate
from zephyr_sync.producer.fetch_status import Available, NeverFetched, settle_in_flight
from zephyr_sync.producer.models import Channel, Identity, Snapshot, Workspace

logger = structlog.get_logger(__name__)


def merge_channels(
    old: dict[str, Channel] | None,
    new: dict[str, Channel],
) -> dict[str, Channel]:
    """Three-way merge of a prior channel map with a fresh listing.

    Args:
        old: Channels of the prior snapshot, or None on first hydrate.
        new: Channels just listed upstream.

    Returns:
        A new channel map; neither input is modified.
    """
    old = old or {}
    merged: dict[str, Channel] = {}

    for channel_id, fresh in new.items():
        prior = old.get(channel_id)
        if prior is None:
            merged[channel_id] = fresh.model_copy(update={"fetch_status": NeverFetched()})
        else:
            merged[channel_id] = fresh.model_copy(
                update={
                    "fetch_status": prior.fetch_status,
                    "last_message_id": prior.last_message_id,
                }
            )

    dropped = sorted(old.keys() - new.keys())
    added = sorted(new.keys() - old.keys())
    if dropped or added:
        logger.debug(
            "channels_reconciled",
            kept=len(merged) - len(added),
            added=added,
            dropped=dropped,
        )

    return merged


def build_snapshot(
    prior: Snapshot | None,
    credential: str,
    identity: Identity,
    workspaces: dict[str, Workspace],
    channels: dict[str, Channel],
) -> Snapshot:
    """Fold a hydrate listing into a snapshot.

    Args:
        prior: Snapshot of the same account to reconcile against, if any.
        credential: Credential the listing was made with.
        identity: Identity of the account.
        workspaces: Listed workspaces.
        channels: Listed channels.

    Returns:
        The reconciled snapshot.
    """
    return Snapshot(
        credential=credential,
        identity=identity,
        workspaces=dict(workspaces),
        channels=merge_channels(prior.channels if prior else None, channels),
    )


def settle_snapshot(snapshot: Snapshot) -> Snapshot:
    """Return ``snapshot`` with every in-flight channel status settled.

    Used when no outstanding request can be trusted to complete, such as
    after a restart or once the credential was rejected.
    """
    channels = {
        channel_id: channel.model_copy(
            update={"fetch_status": settle_in_flight(channel.fetch_status)}
        )
        for channel_id, channel in snapshot.channels.items()
    }
    return snapshot.with_channels(channels)


def _cache_sort_key(channel: Channel) -> tuple[bool, str, str]:
    workspace_name = channel.workspace.name if channel.workspace else ""
    return (channel.workspace is None, workspace_name, channel.name)


def available_channels(channels: dict[str, Channel]) -> list[Channel]:
    """Channels whose status is ``Available``, in cache order."""
    return sorted(
        (c for c in channels.values() if isinstance(c.fetch_status, Available)),
        key=_cache_sort_key,
    )


def compute_cache(snapshot: Snapshot) -> CacheUpdate:
    """Compute the derived cache instruction for ``snapshot``.

    Returns:
        ``CacheDestroy`` when no channel is available, ``CacheSet`` otherwise.
    """
    channels = available_channels(snapshot.channels)
    if not channels:
        return DESTROY
    return CacheSet(channels=channels)


def available_ids(snapshot: Snapshot) -> frozenset[str]:
    """Ids of channels currently ``Available``."""
    return frozenset(
        c.id for c in snapshot.channels.values() if isinstance(c.fetch_status, Available)
    )
