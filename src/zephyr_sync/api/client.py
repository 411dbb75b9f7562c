"""Chat REST API client.

Async httpx client for the Discord-compatible REST API the producer polls.
It executes the requests described by producer effects and returns typed
records. Failures are raised as ``ChatApiError`` subclasses classified by
status code, which the runtime turns into ``ApiError`` messages.

Endpoints used:
    GET /users/@me                  identify
    GET /users/@me/guilds           workspaces
    GET /guilds/{id}/channels       channels of one workspace
    GET /users/@me/channels         direct message channels
    GET /channels/{id}/messages     messages of one channel

Example usage:
    >>> from zephyr_sync.config import ApiConfig
    >>> async with ChatApiClient(ApiConfig()) as client:
    ...     identity = await client.identify(token)
    ...     workspaces, channels = await client.hydrate(token)
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any, TypeVar

import httpx
import structlog

from zephyr_sync.config import ApiConfig
from zephyr_sync.producer.effects import FetchRequest
from zephyr_sync.producer.messages import ApiFailure, FailureKind
from zephyr_sync.producer.models import (
    Attachment,
    Author,
    Channel,
    ChannelKind,
    Embed,
    Identity,
    Message,
    UserAuthor,
    WebhookAuthor,
    Workspace,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ChatApiError(Exception):
    """Base exception for chat API errors.

    Attributes:
        kind: Failure classification
        status_code: HTTP status code, None for network failures
    """

    kind: FailureKind = FailureKind.TRANSIENT

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    def to_failure(self) -> ApiFailure:
        """Convert to the failure record carried by ``ApiError`` messages."""
        return ApiFailure(kind=self.kind, status_code=self.status_code, detail=str(self))


class UnauthorizedError(ChatApiError):
    """Raised on 401: the credential is invalid or revoked."""

    kind = FailureKind.UNAUTHORIZED


class ForbiddenError(ChatApiError):
    """Raised on 403: permission on the resource is missing."""

    kind = FailureKind.FORBIDDEN


class TransientError(ChatApiError):
    """Raised on any other failure, including timeouts and network errors."""

    kind = FailureKind.TRANSIENT


# Discord channel type codes
_CHANNEL_KINDS: dict[int, ChannelKind] = {
    0: ChannelKind.TEXT,
    1: ChannelKind.DM,
    3: ChannelKind.GROUP,
    5: ChannelKind.TEXT,
}


def parse_identity(data: dict[str, Any]) -> Identity:
    return Identity(
        id=data["id"],
        username=data["username"],
        discriminator=data.get("discriminator") or "0",
        avatar=data.get("avatar"),
    )


def parse_workspace(data: dict[str, Any]) -> Workspace:
    return Workspace(id=data["id"], name=data["name"], icon=data.get("icon"))


def parse_channel(data: dict[str, Any], workspace: Workspace | None = None) -> Channel | None:
    """Parse a channel object.

    Args:
        data: Channel JSON object.
        workspace: Owning workspace, None for private channels.

    Returns:
        The channel, or None for channel types that carry no messages
        (voice, category, ...).
    """
    kind = _CHANNEL_KINDS.get(data.get("type", -1))
    if kind is None:
        return None

    name = data.get("name")
    if not name:
        recipients = data.get("recipients") or []
        name = ", ".join(r.get("username", "") for r in recipients) or data["id"]

    return Channel(
        id=data["id"],
        name=name,
        kind=kind,
        workspace=workspace,
        last_message_id=data.get("last_message_id"),
    )


def _parse_author(data: dict[str, Any]) -> Author:
    author = data.get("author") or {}
    if data.get("webhook_id"):
        return WebhookAuthor(
            id=data["webhook_id"],
            username=author.get("username", ""),
            avatar=author.get("avatar"),
        )
    return UserAuthor(
        id=author["id"],
        username=author.get("username", ""),
        discriminator=author.get("discriminator") or "0",
        avatar=author.get("avatar"),
    )


def _parse_embed(data: dict[str, Any]) -> Embed:
    return Embed(
        title=data.get("title"),
        description=data.get("description"),
        url=data.get("url"),
        color=data.get("color"),
        image_url=(data.get("image") or {}).get("url"),
        thumbnail_url=(data.get("thumbnail") or {}).get("url"),
    )


def parse_message(data: dict[str, Any]) -> Message:
    return Message(
        id=data["id"],
        channel_id=data["channel_id"],
        author=_parse_author(data),
        timestamp=datetime.fromisoformat(data["timestamp"]),
        content=data.get("content") or "",
        embeds=[_parse_embed(e) for e in data.get("embeds") or []],
        attachments=[
            Attachment(
                id=a["id"],
                filename=a.get("filename", ""),
                url=a["url"],
                proxy_url=a.get("proxy_url"),
                size=a.get("size"),
            )
            for a in data.get("attachments") or []
        ],
    )


def classify_status(status_code: int, detail: str) -> ChatApiError:
    """Map a non-success HTTP status to the matching error."""
    if status_code == 401:
        return UnauthorizedError(detail, status_code)
    if status_code == 403:
        return ForbiddenError(detail, status_code)
    return TransientError(detail, status_code)


class ChatApiClient:
    """Async client for the chat REST API.

    Attributes:
        config: API configuration containing base URL, timeout and user agent
    """

    def __init__(self, config: ApiConfig) -> None:
        """Initialize the client.

        Args:
            config: ApiConfig instance with connection settings
        """
        self.config = config
        self._client: httpx.AsyncClient | None = None
        logger.info(
            "chat_api_client_initialized",
            base_url=config.base_url,
            timeout=config.timeout_seconds,
        )

    async def __aenter__(self) -> ChatApiClient:
        """Async context manager entry."""
        self._get_client()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.close()

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the underlying HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
                headers={"User-Agent": self.config.user_agent},
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get(
        self,
        path: str,
        credential: str,
        params: dict[str, str | int] | None = None,
    ) -> Any:
        """Issue an authorized GET and return the decoded JSON body.

        Raises:
            UnauthorizedError: On 401.
            ForbiddenError: On 403.
            TransientError: On any other failure.
        """
        client = self._get_client()
        try:
            response = await client.get(
                path,
                params=params or None,
                headers={"Authorization": credential},
            )
        except httpx.TimeoutException as e:
            logger.warning("chat_api_timeout", path=path, error=str(e))
            raise TransientError(f"Request to {path} timed out") from e
        except httpx.RequestError as e:
            logger.warning("chat_api_request_error", path=path, error=str(e))
            raise TransientError(f"Request to {path} failed: {e}") from e

        if not response.is_success:
            detail = response.text[:200]
            logger.warning(
                "chat_api_error_response",
                path=path,
                status_code=response.status_code,
                detail=detail,
            )
            raise classify_status(response.status_code, detail)

        try:
            return response.json()
        except ValueError as e:
            raise TransientError(f"Invalid JSON from {path}", response.status_code) from e

    def _parse(self, path: str, data: Any, parse: Callable[[Any], T]) -> T:
        """Parse a decoded body, raising ``TransientError`` on an unexpected shape."""
        try:
            return parse(data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning("chat_api_unexpected_payload", path=path, error=repr(e))
            raise TransientError(f"Unexpected payload from {path}: {e!r}") from e

    async def identify(self, credential: str) -> Identity:
        """Return the identity behind ``credential``."""
        path = "/users/@me"
        return self._parse(path, await self._get(path, credential), parse_identity)

    async def list_workspaces(self, credential: str) -> dict[str, Workspace]:
        """Return the workspaces the account belongs to, by id."""
        path = "/users/@me/guilds"
        data = await self._get(path, credential)
        workspaces = self._parse(path, data, lambda d: [parse_workspace(w) for w in d])
        return {w.id: w for w in workspaces}

    async def list_channels(self, credential: str, workspace: Workspace) -> dict[str, Channel]:
        """Return the message channels of one workspace, by id."""
        path = f"/guilds/{workspace.id}/channels"
        data = await self._get(path, credential)
        channels = self._parse(path, data, lambda d: [parse_channel(c, workspace) for c in d])
        return {c.id: c for c in channels if c is not None}

    async def list_private_channels(self, credential: str) -> dict[str, Channel]:
        """Return direct message and group channels, by id."""
        path = "/users/@me/channels"
        data = await self._get(path, credential)
        channels = self._parse(path, data, lambda d: [parse_channel(c) for c in d])
        return {c.id: c for c in channels if c is not None}

    async def hydrate(
        self, credential: str
    ) -> tuple[dict[str, Workspace], dict[str, Channel]]:
        """List workspaces, then every workspace's channels, merged into one map.

        Returns:
            Workspaces by id and channels by id.
        """
        workspaces = await self.list_workspaces(credential)
        channels: dict[str, Channel] = {}
        for workspace in workspaces.values():
            channels.update(await self.list_channels(credential, workspace))
        channels.update(await self.list_private_channels(credential))

        logger.info(
            "chat_api_hydrated",
            workspaces=len(workspaces),
            channels=len(channels),
        )
        return workspaces, channels

    async def fetch_messages(self, request: FetchRequest) -> list[Message]:
        """Fetch messages for a fetch effect.

        Returns:
            Messages in upstream order (newest first).
        """
        path = f"/channels/{request.channel_id}/messages"
        data = await self._get(path, request.credential, params=request.query())
        return self._parse(path, data, lambda d: [parse_message(m) for m in d])
