"""Shared fixtures for Zephyr Sync tests."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

import pytest

from zephyr_sync.producer.fetch_status import FetchStatus, NeverFetched
from zephyr_sync.producer.models import (
    Channel,
    ChannelKind,
    Identity,
    Message,
    Snapshot,
    UserAuthor,
    Workspace,
)

NOW = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    """Fixed reference time."""
    return NOW


@pytest.fixture
def identity() -> Identity:
    return Identity(id="100", username="alice")


@pytest.fixture
def workspace() -> Workspace:
    return Workspace(id="g1", name="Guild One")


@pytest.fixture
def make_channel(workspace: Workspace) -> Callable[..., Channel]:
    """Factory for channels belonging to the default workspace."""

    def _make(
        channel_id: str,
        name: str | None = None,
        status: FetchStatus | None = None,
        last_message_id: str | None = None,
        kind: ChannelKind = ChannelKind.TEXT,
        in_workspace: bool = True,
    ) -> Channel:
        return Channel(
            id=channel_id,
            name=name or f"chan-{channel_id}",
            kind=kind,
            workspace=workspace if in_workspace else None,
            last_message_id=last_message_id,
            fetch_status=status or NeverFetched(),
        )

    return _make


@pytest.fixture
def make_snapshot(identity: Identity, workspace: Workspace) -> Callable[..., Snapshot]:
    """Factory for snapshots of the default account."""

    def _make(
        channels: list[Channel] | None = None,
        credential: str = "tok-1",
        account: Identity | None = None,
    ) -> Snapshot:
        return Snapshot(
            credential=credential,
            identity=account or identity,
            workspaces={workspace.id: workspace},
            channels={c.id: c for c in channels or []},
        )

    return _make


@pytest.fixture
def make_message() -> Callable[..., Message]:
    """Factory for messages authored by a regular user."""

    def _make(message_id: str, channel_id: str = "c1", content: str = "") -> Message:
        return Message(
            id=message_id,
            channel_id=channel_id,
            author=UserAuthor(id="200", username="bob"),
            timestamp=NOW,
            content=content or f"message {message_id}",
        )

    return _make
