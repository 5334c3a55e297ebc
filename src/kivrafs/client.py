"""
Remote Client: typed access to the mailbox API.

Every call asks the SessionManager for a session first, so an expired
token is refreshed transparently. A 401 from the service forces one
refresh and one replay before the caller sees ``Unauthenticated``.
No caching happens here.
"""

from __future__ import annotations

import logging
from typing import Any, Iterator, Optional, Tuple
from urllib.parse import quote

import requests

from .auth import parse_model, response_json
from .errors import NotFound, SchemaError, TransientTransport, Unauthenticated
from .models import Attachment, InboxItem, ItemDetail, ItemPage, Session
from .session import SessionManager
from .transport import HttpTransport

logger = logging.getLogger("kivrafs.client")

CHUNK_SIZE = 64 * 1024


def _seg(value: str) -> str:
    return quote(value, safe="")


def _parse_page(data: Any) -> ItemPage:
    """Accept a bare list (one page) or a paged object."""
    if isinstance(data, list):
        raw_items, cursor = data, None
    elif isinstance(data, dict):
        raw_items = data.get("items", data.get("content"))
        cursor = data.get("next_cursor", data.get("cursor"))
        if not isinstance(raw_items, list):
            raise SchemaError("Listing page has no item list")
    else:
        raise SchemaError("Listing response is neither a list nor an object")
    items = [parse_model(InboxItem, raw, "inbox item") for raw in raw_items]
    return ItemPage(items=items, next_cursor=str(cursor) if cursor else None)


class RemoteClient:
    """Authenticated mailbox API client.

    Args:
        transport: Shared HTTP transport (retry, timeouts).
        sessions: Source of the current session.
        api_url: Base URL of the API host.
    """

    def __init__(self, transport: HttpTransport, sessions: SessionManager, api_url: str) -> None:
        self._transport = transport
        self._sessions = sessions
        self._api_url = api_url.rstrip("/")

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    def _url(self, session: Session, path: str) -> str:
        return self._api_url + path.replace("{uid}", _seg(session.user_id))

    def _authed(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        session = self._sessions.current_session()
        try:
            return self._send(session, method, path, **kwargs)
        except Unauthenticated:
            logger.info("Service rejected the access token, refreshing session")
            session = self._sessions.current_session(force_refresh=True)
            return self._send(session, method, path, **kwargs)

    def _send(self, session: Session, method: str, path: str, **kwargs: Any) -> requests.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {session.access_token}"
        return self._transport.request(method, self._url(session, path), headers=headers, **kwargs)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def list_items(self, cursor: Optional[str] = None) -> ItemPage:
        """Fetch one page of inbox summaries.

        Args:
            cursor: Continuation token from the previous page.

        Returns:
            The page; ``next_cursor`` is None on the last page.
        """
        params = {"listing": "all"}
        if cursor:
            params["cursor"] = cursor
        resp = self._authed("GET", "/v3/user/{uid}/content", params=params)
        return _parse_page(response_json(resp, "listing"))

    def get_item_detail(self, item_id: str, summary: Optional[InboxItem] = None) -> InboxItem:
        """Fetch an item with its attachment descriptors.

        Raises:
            NotFound: If the item no longer exists.
        """
        resp = self._authed("GET", f"/v3/user/{{uid}}/content/{_seg(item_id)}")
        detail = parse_model(ItemDetail, response_json(resp, "item detail"), "item detail")
        return detail.to_item(item_id, summary)

    def mark_read(self, item_id: str) -> None:
        self._authed(
            "PATCH", f"/v3/user/{{uid}}/content/{_seg(item_id)}", json={"status": "read"}
        )
        logger.debug("Marked %s as read", item_id)

    def iter_attachment(
        self,
        item_id: str,
        index: int,
        attachment: Optional[Attachment] = None,
        byte_range: Optional[Tuple[int, int]] = None,
    ) -> Iterator[bytes]:
        """Stream the content of one attachment.

        Args:
            item_id: Parent item identity.
            index: Attachment index within the item.
            attachment: Descriptor, if the caller already has it.
            byte_range: Optional inclusive ``(start, end)`` byte range.

        Yields:
            Content chunks.

        Raises:
            NotFound: If the item or the attachment does not exist.
            TransientTransport: If the stream broke off.
        """
        if attachment is None:
            attachment = self._descriptor(item_id, index)

        if attachment.key is None:
            if attachment.body is None:
                raise SchemaError(f"Attachment {item_id}/{index} has neither key nor body")
            data = attachment.body.encode("utf-8")
            if byte_range is not None:
                data = data[byte_range[0]: byte_range[1] + 1]
            yield data
            return

        headers = {}
        if byte_range is not None:
            headers["Range"] = f"bytes={byte_range[0]}-{byte_range[1]}"
        resp = self._authed(
            "GET",
            f"/v1/user/{{uid}}/content/{_seg(item_id)}/file/{_seg(attachment.key)}/raw",
            headers=headers,
            stream=True,
        )
        try:
            for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                if chunk:
                    yield chunk
        except (requests.ConnectionError, requests.exceptions.ChunkedEncodingError) as exc:
            raise TransientTransport(f"Download of {item_id}/{index} broke off: {exc}") from exc
        finally:
            resp.close()

    def fetch_attachment(
        self,
        item_id: str,
        index: int,
        byte_range: Optional[Tuple[int, int]] = None,
        attachment: Optional[Attachment] = None,
    ) -> bytes:
        """Fetch attachment content (optionally a byte range) into memory."""
        return b"".join(self.iter_attachment(item_id, index, attachment, byte_range))

    def _descriptor(self, item_id: str, index: int) -> Attachment:
        item = self.get_item_detail(item_id)
        attachments = item.attachments or []
        if not 0 <= index < len(attachments):
            raise NotFound(f"Item {item_id} has no attachment {index}")
        return attachments[index]
