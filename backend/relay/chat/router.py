"""Transport-neutral message ingestion.

Endpoints:
    POST /messages: Hand one inbound chat message to the ChatHandler

A chat bridge (for example a WhatsApp Web client running next to the relay)
posts every message it receives here. Media travels inline as base64.
Replies produced while the request is handled come back in the response
body; replies produced later (upload completed / failed) are POSTed to the
message's ``reply_url`` with the relay's shared httpx client.

When ``secrets.ingest_token`` is configured the bridge must send it in the
``X-Relay-Token`` header.
"""
import base64
import binascii
import hmac
import logging
from typing import List, Optional

import httpx
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, Field, field_validator

from .handler import ChatHandler
from .schemas import InboundMessage, MediaPayload

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


# =============================================================================
# Request/Response Models
# =============================================================================


class InboundMedia(BaseModel):
    data: str = Field(..., description="Base64-encoded file bytes")
    mimetype: str = Field(..., min_length=1, description="MIME type reported by the transport")
    filename: Optional[str] = Field(None, description="Original filename, if any")

    @field_validator("data")
    @classmethod
    def _valid_base64(cls, v: str) -> str:
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("media.data is not valid base64") from exc
        return v


class InboundMessageRequest(BaseModel):
    """Request body for POST /messages.

    Attributes:
        sender: Stable sender identifier (e.g. ``15551234567@c.us``).
        body: Text body; empty for pure media messages.
        is_private: False for group chats, which the relay ignores.
        message_id: Transport message ID, echoed in callbacks.
        media: Inline media, if the message carries any.
        reply_url: Where to POST replies sent after this request returns.
    """
    sender: str = Field(..., min_length=1, description="Sender identifier")
    body: str = Field("", description="Text body")
    is_private: bool = Field(True, description="True for 1:1 chats")
    message_id: Optional[str] = Field(None, description="Transport message ID")
    media: Optional[InboundMedia] = Field(None, description="Inline media")
    reply_url: Optional[str] = Field(None, description="Reply callback URL")


class InboundMessageResponse(BaseModel):
    """Response from POST /messages.

    Attributes:
        replies: Reply texts produced while the message was handled.
    """
    replies: List[str] = Field(default_factory=list, description="Immediate replies")


class WebhookMessage(InboundMessage):
    """InboundMessage built from a POST /messages body."""

    def __init__(self, payload: InboundMessageRequest, client: Optional[httpx.AsyncClient]) -> None:
        super().__init__(
            payload.sender,
            body=payload.body,
            has_media=payload.media is not None,
            is_private=payload.is_private,
            message_id=payload.message_id,
        )
        self._media = payload.media
        self._reply_url = payload.reply_url
        self._client = client
        self.replies: List[str] = []
        # Once the request has been answered, replies go to reply_url only.
        self.detached = False

    async def download_media(self) -> Optional[MediaPayload]:
        if self._media is None:
            return None
        return MediaPayload(
            data=base64.b64decode(self._media.data),
            mimetype=self._media.mimetype,
            filename=self._media.filename,
        )

    async def reply(self, text: str) -> None:
        if not self.detached:
            self.replies.append(text)
            return
        if self._reply_url is None or self._client is None:
            logger.warning("Dropping reply to %s: no reply_url for message %s",
                           self.sender, self.message_id)
            return
        resp = await self._client.post(
            self._reply_url,
            json={"to": self.sender, "in_reply_to": self.message_id, "text": text},
        )
        resp.raise_for_status()


# =============================================================================
# Endpoints
# =============================================================================


def get_chat_handler(request: Request) -> ChatHandler:
    handler = getattr(request.app.state, "chat_handler", None)
    if handler is None:
        raise HTTPException(status_code=503, detail="Chat handler is not running")
    return handler


@router.post("/messages", response_model=InboundMessageResponse)
async def ingest_message(
    payload: InboundMessageRequest,
    request: Request,
    handler: ChatHandler = Depends(get_chat_handler),
    x_relay_token: Optional[str] = Header(None),
) -> InboundMessageResponse:
    """Run one inbound message through the ChatHandler.

    Commands, rejections and the "queued" acknowledgement are returned in
    ``replies``. Upload outcomes arrive later at ``reply_url``.
    """
    expected = handler.settings.secrets.ingest_token
    if expected and not hmac.compare_digest((x_relay_token or "").encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid relay token")

    message = WebhookMessage(payload, getattr(request.app.state, "reply_client", None))
    try:
        await handler.handle(message)
    finally:
        message.detached = True
    return InboundMessageResponse(replies=message.replies)
