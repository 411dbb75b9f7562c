"""Snapshot (point-of-view) records for a synchronized chat account.

All records are frozen pydantic models. Updating a snapshot always builds a
new instance with explicitly copied maps, so a snapshot captured by an
in-flight request is never mutated underneath it.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from zephyr_sync.producer.fetch_status import FetchStatus, NeverFetched


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True)


class Identity(_Record):
    """Remote user the credential belongs to.

    Attributes:
        id: Remote user id
        username: Display name
        discriminator: Name suffix distinguishing equal usernames
        avatar: Optional avatar hash
    """

    id: str
    username: str
    discriminator: str = "0"
    avatar: str | None = None


class Workspace(_Record):
    """Workspace (guild) the account is a member of."""

    id: str
    name: str
    icon: str | None = None


class ChannelKind(str, Enum):
    """Kinds of channels the producer polls."""

    TEXT = "text"
    DM = "dm"
    GROUP = "group"


class Channel(_Record):
    """A pollable channel with its scheduling state.

    Attributes:
        id: Channel id, unique within a snapshot
        name: Display name
        kind: Channel kind
        workspace: Owning workspace, None for direct messages
        last_message_id: Id of the newest message seen so far
        fetch_status: Scheduling state of the channel
    """

    id: str
    name: str
    kind: ChannelKind = ChannelKind.TEXT
    workspace: Workspace | None = None
    last_message_id: str | None = None
    fetch_status: FetchStatus = Field(default_factory=NeverFetched)


class Snapshot(_Record):
    """Durable point-of-view of one authenticated account.

    Attributes:
        credential: Last committed bearer token known to work
        identity: Remote identity of the account
        workspaces: Workspaces by id
        channels: Channels by id
    """

    credential: str
    identity: Identity
    workspaces: dict[str, Workspace] = Field(default_factory=dict)
    channels: dict[str, Channel] = Field(default_factory=dict)

    def with_channel(self, channel: Channel) -> Snapshot:
        """Return a copy with ``channel`` inserted or replaced."""
        return self.model_copy(update={"channels": {**self.channels, channel.id: channel}})

    def with_channels(self, channels: dict[str, Channel]) -> Snapshot:
        """Return a copy with the channel map replaced."""
        return self.model_copy(update={"channels": dict(channels)})


class UserAuthor(_Record):
    """Message author that is a regular user."""

    kind: Literal["user"] = "user"
    id: str
    username: str
    discriminator: str = "0"
    avatar: str | None = None


class WebhookAuthor(_Record):
    """Message author that is a webhook posting under a user-like name."""

    kind: Literal["webhook"] = "webhook"
    id: str
    username: str
    avatar: str | None = None


Author = Annotated[Union[UserAuthor, WebhookAuthor], Field(discriminator="kind")]


class Embed(_Record):
    """Rich embed attached to a message."""

    title: str | None = None
    description: str | None = None
    url: str | None = None
    color: int | None = None
    image_url: str | None = None
    thumbnail_url: str | None = None


class Attachment(_Record):
    """File attached to a message."""

    id: str
    filename: str
    url: str
    proxy_url: str | None = None
    size: int | None = None


class Message(_Record):
    """One message item produced for downstream consumers."""

    id: str
    channel_id: str
    author: Author
    timestamp: datetime
    content: str = ""
    embeds: list[Embed] = Field(default_factory=list)
    attachments: list[Attachment] = Field(default_factory=list)
