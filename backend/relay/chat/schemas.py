"""Transport-neutral chat message types.

The relay does not speak any chat protocol itself. A transport adapter (for
example a WhatsApp Web bridge) wraps each incoming message in an
InboundMessage subclass and hands it to ChatHandler.handle().
"""
from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel, Field


class MediaPayload(BaseModel):
    """Media downloaded from a chat message."""
    data: bytes = Field(..., description="Raw file bytes")
    mimetype: str = Field(..., description="MIME type reported by the transport")
    filename: Optional[str] = Field(None, description="Original filename, if any")

    @property
    def size(self) -> int:
        return len(self.data)


class InboundMessage(ABC):
    """A chat message as seen by the relay.

    Attributes:
        sender: Stable identifier of the sender (e.g. ``15551234567@c.us``).
        body: Text body; empty for pure media messages.
        has_media: Whether download_media() can return a payload.
        is_private: True for 1:1 chats; group messages are ignored.
        message_id: Transport message ID, if available.
    """

    def __init__(
        self,
        sender: str,
        body: str = "",
        has_media: bool = False,
        is_private: bool = True,
        message_id: Optional[str] = None,
    ) -> None:
        self.sender = sender
        self.body = body
        self.has_media = has_media
        self.is_private = is_private
        self.message_id = message_id

    @abstractmethod
    async def download_media(self) -> Optional[MediaPayload]:
        """Fetch the attached media, or None if the transport has nothing."""
        pass

    @abstractmethod
    async def reply(self, text: str) -> None:
        """Send *text* back to the sender as a reply to this message."""
        pass
