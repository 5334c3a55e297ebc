"""
Pydantic models for the remote mailbox contract and the local session.

Remote payloads are owned by the service, so every remote model ignores
fields it does not know about. A missing or malformed required field is
a breaking change and surfaces as a validation error.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

SESSION_FORMAT_VERSION = 1


class RemoteModel(BaseModel):
    """Base for payloads we receive from the service."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class RemoteConfig(RemoteModel):
    """Public OAuth settings published by the accounts service."""

    oauth_default_client_id: str
    oauth_default_redirect_uri: str


class AuthChallenge(RemoteModel):
    """Response to starting a device-approval login."""

    qr_code: str
    code: str
    next_poll_url: str
    auto_start_token: Optional[str] = None


class AuthStatus(RemoteModel):
    """One poll of the device-approval status endpoint."""

    status: str = ""
    progress_status: Optional[str] = None
    message_code: Optional[str] = None
    qr_code: Optional[str] = None
    ssn: Optional[str] = None
    retry_after: Optional[float] = None
    next_poll_url: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return bool(self.ssn) or self.status.lower() == "complete"

    @property
    def is_failed(self) -> bool:
        return self.status.lower() in ("failed", "expired", "cancelled", "canceled")


class TokenResponse(RemoteModel):
    """Token endpoint response for both code exchange and refresh."""

    access_token: str
    id_token: str
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    token_type: Optional[str] = None


class UserInfo(RemoteModel):
    """Account identity carried in the id token claims."""

    kivra_user_id: str
    name: str = ""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None


class Session(BaseModel):
    """Credential material for one logged-in account."""

    access_token: str
    id_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    user_info: UserInfo

    @field_validator("expires_at")
    @classmethod
    def _utc_expiry(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value) if value is not None else None

    @property
    def user_id(self) -> str:
        return self.user_info.kivra_user_id

    def is_expired(self, skew_seconds: float = 30.0, now: Optional[datetime] = None) -> bool:
        """Whether the access token should be treated as expired.

        A session without a known expiry is assumed valid until the
        service says otherwise (401).
        """
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now + timedelta(seconds=skew_seconds) >= self.expires_at


# ---------------------------------------------------------------------------
# Mailbox content
# ---------------------------------------------------------------------------


class Attachment(RemoteModel):
    """One part of an inbox item. Content is fetched lazily."""

    index: int = 0
    name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("name", "file_name", "filename")
    )
    content_type: str = "application/octet-stream"
    size: Optional[int] = None
    key: Optional[str] = None
    body: Optional[str] = None

    @property
    def advertised_size(self) -> Optional[int]:
        """Size known before download, if any."""
        if self.size is not None:
            return self.size
        if self.body is not None:
            return len(self.body.encode("utf-8"))
        return None


class InboxItem(RemoteModel):
    """A letter in the inbox.

    ``attachments`` is ``None`` until the item detail has been fetched;
    listing responses only carry the summary fields.
    """

    key: str
    sender_name: str = ""
    subject: str = ""
    created_at: datetime
    status: str = "unread"
    sender: Optional[str] = None
    attachments: Optional[list[Attachment]] = None

    @field_validator("created_at")
    @classmethod
    def _utc_created(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @property
    def is_read(self) -> bool:
        return self.status.lower() == "read"


class ItemDetail(RemoteModel):
    """Full item detail as returned by the content endpoint."""

    subject: str = ""
    sender_name: str = ""
    created_at: datetime
    status: Optional[str] = None
    parts: list[Attachment] = Field(default_factory=list)

    def to_item(self, key: str, summary: Optional[InboxItem] = None) -> InboxItem:
        """Combine the detail with an optional listing summary."""
        attachments = [
            part.model_copy(update={"index": idx}) for idx, part in enumerate(self.parts)
        ]
        status = self.status or (summary.status if summary else "unread")
        return InboxItem(
            key=key,
            sender_name=self.sender_name or (summary.sender_name if summary else ""),
            subject=self.subject or (summary.subject if summary else ""),
            created_at=self.created_at,
            status=status,
            sender=summary.sender if summary else None,
            attachments=attachments,
        )


class ItemPage(BaseModel):
    """One page of the inbox listing."""

    items: list[InboxItem] = Field(default_factory=list)
    next_cursor: Optional[str] = None
