"""Remote calendar collection contract and its CalDAV implementation.

The sync engine only talks to a ``RemoteCollection``: one delta request
(cursor in, items + new cursor out) and item-level PUT/DELETE.
``CalDAVCollection`` implements it with the ``caldav`` library, using
``sync-collection`` (RFC 6578) through ``objects_by_sync_token``.  Servers
that refuse ``sync-collection`` are listed in full with a calendar-query
instead; those responses are reported as complete listings so the engine may
infer deletions from them.

``caldav`` is synchronous, so every server round trip runs in a worker
thread via ``asyncio.to_thread``.
"""

from __future__ import annotations

import abc
import asyncio
import hashlib
import logging
from collections.abc import Callable
from typing import Any, Protocol
from urllib.parse import quote, urljoin, urlparse

import caldav
from caldav.elements import dav
from caldav.lib import error as caldav_error
from pydantic import BaseModel, ConfigDict, Field, field_validator

from calsync.config import RemoteConfig
from calsync.errors import (
    AuthenticationError,
    ConflictError,
    CursorExpiredError,
    SyncError,
    TransientNetworkError,
)
from calsync.models import CalendarCollection

logger = logging.getLogger(__name__)

# Cursor prefix used for servers without sync-collection support.
LISTING_CURSOR_PREFIX = "listing:"

_ETAG_PROP = dav.GetEtag.tag


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class RemoteItem(BaseModel):
    """One entry of a delta response: either calendar data or a tombstone."""

    model_config = ConfigDict(extra="forbid")

    href: str
    revision_tag: str | None = None
    calendar_data: str | None = None
    deleted: bool = False


class DeltaResponse(BaseModel):
    """Result of one delta request against a remote collection."""

    model_config = ConfigDict(extra="forbid")

    items: list[RemoteItem] = Field(default_factory=list)
    new_cursor: str
    complete_listing: bool = False

    @field_validator("new_cursor")
    @classmethod
    def _require_cursor(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("new_cursor must be a non-empty string")
        return normalized


class RemoteCredentials(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: str
    password: str


class CredentialProvider(Protocol):
    """Supplies credentials for a calendar's remote collection."""

    async def get_credentials(self, calendar: CalendarCollection) -> RemoteCredentials | None:
        """Return credentials for *calendar*, or None for anonymous access."""
        ...


class StaticCredentialProvider:
    """Same credentials for every calendar, taken from ``[calsync.remote]``."""

    def __init__(self, credentials: RemoteCredentials | None = None) -> None:
        self._credentials = credentials

    @classmethod
    def from_config(cls, config: RemoteConfig) -> StaticCredentialProvider:
        if config.username is None or config.password is None:
            return cls(None)
        return cls(RemoteCredentials(username=config.username, password=config.password))

    async def get_credentials(self, calendar: CalendarCollection) -> RemoteCredentials | None:
        del calendar
        return self._credentials


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class RemoteCollection(abc.ABC):
    """Contract for a server-hosted calendar collection."""

    @abc.abstractmethod
    async def fetch_delta(
        self,
        url: str,
        cursor: str | None,
        *,
        credentials: RemoteCredentials | None = None,
    ) -> DeltaResponse:
        """Return changes since *cursor*, or a full listing when it is None.

        Raises ``CursorExpiredError`` when the server no longer accepts
        *cursor*.
        """
        ...

    @abc.abstractmethod
    async def put_item(
        self,
        url: str,
        href: str | None,
        uid: str,
        calendar_data: str,
        *,
        revision_tag: str | None = None,
        credentials: RemoteCredentials | None = None,
    ) -> tuple[str, str | None]:
        """Create or update one item and return ``(href, new_revision_tag)``.

        A None *href* creates a new resource named after *uid*.
        """
        ...

    @abc.abstractmethod
    async def delete_item(
        self,
        url: str,
        href: str,
        *,
        revision_tag: str | None = None,
        credentials: RemoteCredentials | None = None,
    ) -> None:
        """Delete one item. Deleting an item that is already gone succeeds."""
        ...

    @abc.abstractmethod
    async def shutdown(self) -> None:
        """Release client resources."""
        ...


# ---------------------------------------------------------------------------
# CalDAV implementation
# ---------------------------------------------------------------------------

ClientFactory = Callable[[str, RemoteCredentials | None, float], Any]


def _dav_client(
    url: str, credentials: RemoteCredentials | None, timeout_s: float
) -> caldav.DAVClient:
    if credentials is None:
        return caldav.DAVClient(url=url, timeout=timeout_s)
    return caldav.DAVClient(
        url=url,
        username=credentials.username,
        password=credentials.password,
        timeout=timeout_s,
    )


class CalDAVCollection(RemoteCollection):
    """CalDAV ``RemoteCollection`` over ``caldav.DAVClient``.

    One client is kept per (collection URL, username) pair and closed on
    ``shutdown()``.
    """

    def __init__(
        self,
        *,
        request_timeout_s: float = 20.0,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._timeout_s = request_timeout_s
        self._client_factory = client_factory or _dav_client
        self._clients: dict[tuple[str, str | None], Any] = {}

    def _client(self, collection_url: str, credentials: RemoteCredentials | None) -> Any:
        key = (collection_url, credentials.username if credentials is not None else None)
        client = self._clients.get(key)
        if client is None:
            client = self._client_factory(collection_url, credentials, self._timeout_s)
            self._clients[key] = client
        return client

    async def shutdown(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            close = getattr(client, "close", None)
            if close is not None:
                await asyncio.to_thread(close)

    # -- delta --------------------------------------------------------------

    async def fetch_delta(
        self,
        url: str,
        cursor: str | None,
        *,
        credentials: RemoteCredentials | None = None,
    ) -> DeltaResponse:
        collection_url = _collection_url(url)
        client = self._client(collection_url, credentials)
        return await _offload(
            f"REPORT {collection_url}", _fetch_delta_blocking, client, collection_url, cursor
        )

    # -- item writes --------------------------------------------------------

    async def put_item(
        self,
        url: str,
        href: str | None,
        uid: str,
        calendar_data: str,
        *,
        revision_tag: str | None = None,
        credentials: RemoteCredentials | None = None,
    ) -> tuple[str, str | None]:
        collection_url = _collection_url(url)
        if href is None:
            href = urlparse(urljoin(collection_url, f"{quote(uid, safe='')}.ics")).path
        target = urljoin(collection_url, href)

        headers = {"Content-Type": "text/calendar; charset=utf-8"}
        if revision_tag is not None:
            headers["If-Match"] = revision_tag
        else:
            headers["If-None-Match"] = "*"

        client = self._client(collection_url, credentials)
        etag = await _offload(
            f"PUT {target}", _put_blocking, client, target, uid, calendar_data, headers
        )
        return href, etag

    async def delete_item(
        self,
        url: str,
        href: str,
        *,
        revision_tag: str | None = None,
        credentials: RemoteCredentials | None = None,
    ) -> None:
        collection_url = _collection_url(url)
        target = urljoin(collection_url, href)
        headers = {"If-Match": revision_tag} if revision_tag is not None else {}
        client = self._client(collection_url, credentials)
        await _offload(f"DELETE {target}", _delete_blocking, client, target, headers)


# ---------------------------------------------------------------------------
# Blocking helpers (run in worker threads)
# ---------------------------------------------------------------------------


def _fetch_delta_blocking(client: Any, collection_url: str, cursor: str | None) -> DeltaResponse:
    calendar = client.calendar(url=collection_url)
    if cursor is not None and cursor.startswith(LISTING_CURSOR_PREFIX):
        return _listing(calendar, collection_url)

    try:
        result = calendar.objects_by_sync_token(cursor, load_objects=True)
    except caldav_error.ReportError as exc:
        if cursor is not None:
            raise CursorExpiredError(f"Sync token rejected by {collection_url}") from exc
        logger.info(
            "Server at %s refused sync-collection (%s); using full listing", collection_url, exc
        )
        return _listing(calendar, collection_url)

    token = result.sync_token
    if not token:
        raise SyncError(f"sync-collection response from {collection_url} has no sync-token")

    items: list[RemoteItem] = []
    for obj in result:
        href = _href(obj)
        # caldav leaves data unset for members the server reports as removed.
        if obj.data is None:
            items.append(RemoteItem(href=href, deleted=True))
        else:
            items.append(
                RemoteItem(href=href, revision_tag=_etag(obj), calendar_data=str(obj.data))
            )
    return DeltaResponse(items=items, new_cursor=str(token), complete_listing=cursor is None)


def _listing(calendar: Any, collection_url: str) -> DeltaResponse:
    items = [
        RemoteItem(href=_href(obj), revision_tag=_etag(obj), calendar_data=str(obj.data))
        for obj in calendar.events()
        if obj.data is not None
    ]
    logger.debug("Listed %d item(s) from %s", len(items), collection_url)
    return DeltaResponse(items=items, new_cursor=_listing_cursor(items), complete_listing=True)


def _put_blocking(
    client: Any, target: str, uid: str, calendar_data: str, headers: dict[str, str]
) -> str | None:
    response = client.put(target, calendar_data, headers)
    if response.status == 412:
        raise ConflictError(
            f"Remote copy of {uid} changed since revision {headers.get('If-Match')!r}", uid=uid
        )
    _raise_for_status(response.status, target)

    etag = response.headers.get("ETag")
    if etag is None:
        head = client.request(target, "HEAD")
        if 200 <= head.status < 300:
            etag = head.headers.get("ETag")
    return etag


def _delete_blocking(client: Any, target: str, headers: dict[str, str]) -> None:
    response = client.request(target, "DELETE", "", headers)
    if response.status in (404, 410):
        return
    if response.status == 412:
        raise ConflictError(
            f"Remote copy at {target} changed since revision {headers.get('If-Match')!r}"
        )
    _raise_for_status(response.status, target)


async def _offload(what: str, func: Callable[..., Any], *args: Any) -> Any:
    """Run a blocking caldav call in a thread and map its errors onto ours."""
    try:
        return await asyncio.to_thread(func, *args)
    except SyncError:
        raise
    except caldav_error.AuthorizationError as exc:
        raise AuthenticationError(f"Remote rejected credentials for {what}") from exc
    except caldav_error.NotFoundError as exc:
        raise SyncError(f"{what}: collection not found") from exc
    except caldav_error.DAVError as exc:
        raise TransientNetworkError(f"{what} failed: {exc}") from exc
    except OSError as exc:
        # requests' connection and timeout errors are OSError subclasses.
        raise TransientNetworkError(f"{what} failed: {exc}") from exc


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _collection_url(url: str) -> str:
    return url if url.endswith("/") else f"{url}/"


def _raise_for_status(status: int, url: str) -> None:
    if 200 <= status < 300:
        return
    if status in (401, 403):
        raise AuthenticationError(f"Remote rejected credentials for {url} ({status})")
    if status == 429 or status >= 500:
        raise TransientNetworkError(f"Remote error for {url} ({status})", status_code=status)
    raise SyncError(f"Unexpected response from {url} ({status})")


def _href(obj: Any) -> str:
    return urlparse(str(obj.url)).path


def _etag(obj: Any) -> str | None:
    props = getattr(obj, "props", None) or {}
    etag = props.get(_ETAG_PROP)
    return etag.strip() if etag else None


def _listing_cursor(items: list[RemoteItem]) -> str:
    digest = hashlib.sha256()
    for item in sorted(items, key=lambda i: i.href):
        digest.update(f"{item.href}\0{item.revision_tag or ''}\n".encode())
    return f"{LISTING_CURSOR_PREFIX}{digest.hexdigest()}"
