from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from inbox_engine.app.models import (
    InboundMessagePayload,
    MediaDescriptor,
    MessageType,
    NormalizedMessage,
    PayloadKind,
)

MEDIA_KIND_TYPES = {
    "image": MessageType.IMAGE,
    "sticker": MessageType.IMAGE,
    "video": MessageType.VIDEO,
    "audio": MessageType.AUDIO,
    "ptt": MessageType.AUDIO,
    "voice": MessageType.AUDIO,
    "document": MessageType.DOCUMENT,
    "file": MessageType.DOCUMENT,
}

UNSUPPORTED_CONTENT = "[Unsupported message]"
GENERIC_CONTENT = "[Message]"


@dataclass(frozen=True)
class PayloadClassification:
    kind: PayloadKind
    message_type: MessageType
    media_kind: Optional[str]
    text: Optional[str]
    caption: Optional[str]
    content: str

    def to_normalized(self, media: Optional[MediaDescriptor]) -> NormalizedMessage:
        return NormalizedMessage(
            kind=self.kind,
            type=self.message_type,
            text=self.text,
            caption=self.caption,
            media=media if self.kind == PayloadKind.media else None,
        )


def media_kind_of(media: Optional[MediaDescriptor]) -> Optional[str]:
    if media is None or not isinstance(media.media_type, str):
        return None
    kind = media.media_type.strip().lower()
    return kind or None


def message_type_for_media(kind: str) -> MessageType:
    return MEDIA_KIND_TYPES.get(kind, MessageType.DOCUMENT)


def classify_payload(payload: InboundMessagePayload) -> PayloadClassification:
    """
    Map a raw payload shape onto the closed message type set.
    Media wins over text; a payload with neither is unknown and stored as TEXT.
    """
    text = payload.text.strip() if isinstance(payload.text, str) else ""
    media_kind = media_kind_of(payload.media)
    caption = None
    if payload.media is not None and isinstance(payload.media.caption, str):
        caption = payload.media.caption.strip() or None

    if media_kind is not None:
        message_type = message_type_for_media(media_kind)
        content = text or caption or fallback_content(PayloadKind.media, media_kind)
        return PayloadClassification(
            kind=PayloadKind.media,
            message_type=message_type,
            media_kind=media_kind,
            text=text or None,
            caption=caption,
            content=content,
        )

    if text:
        return PayloadClassification(
            kind=PayloadKind.text,
            message_type=MessageType.TEXT,
            media_kind=None,
            text=text,
            caption=caption,
            content=text,
        )

    return PayloadClassification(
        kind=PayloadKind.unknown,
        message_type=MessageType.TEXT,
        media_kind=None,
        text=None,
        caption=caption,
        content=caption or fallback_content(PayloadKind.unknown, None),
    )


def fallback_content(kind: PayloadKind, media_kind: Optional[str]) -> str:
    if kind == PayloadKind.media and media_kind:
        return f"[{media_kind}]"
    if kind == PayloadKind.unknown:
        return UNSUPPORTED_CONTENT
    return GENERIC_CONTENT
