from __future__ import annotations

import pytest

from inbox_engine.app.models import InboundMessagePayload, MessageType, PayloadKind
from inbox_engine.app.services.classification import classify_payload


def _payload(**data) -> InboundMessagePayload:
    return InboundMessagePayload.model_validate(data)


def test_text_body_is_text() -> None:
    result = classify_payload(_payload(text="  Hello  "))
    assert result.kind == PayloadKind.text
    assert result.message_type == MessageType.TEXT
    assert result.content == "Hello"


@pytest.mark.parametrize(
    ("media_kind", "expected"),
    [
        ("image", MessageType.IMAGE),
        ("VIDEO", MessageType.VIDEO),
        ("audio", MessageType.AUDIO),
        ("document", MessageType.DOCUMENT),
        ("sticker", MessageType.IMAGE),
        ("ptt", MessageType.AUDIO),
        ("location", MessageType.DOCUMENT),
    ],
)
def test_media_kind_maps_to_closed_type(media_kind: str, expected: MessageType) -> None:
    result = classify_payload(_payload(media={"media_type": media_kind, "url": "https://cdn/x"}))
    assert result.kind == PayloadKind.media
    assert result.message_type == expected


def test_media_without_text_gets_bracketed_kind_content() -> None:
    result = classify_payload(_payload(media={"media_type": "image"}))
    assert result.content == "[image]"
    assert result.text is None


def test_media_caption_is_used_as_content() -> None:
    result = classify_payload(_payload(media={"media_type": "image", "caption": " look "}))
    assert result.content == "look"
    assert result.caption == "look"


def test_media_wins_over_text() -> None:
    result = classify_payload(_payload(text="see attached", media={"media_type": "document"}))
    assert result.kind == PayloadKind.media
    assert result.message_type == MessageType.DOCUMENT
    assert result.content == "see attached"


def test_payload_without_body_or_media_is_unknown() -> None:
    result = classify_payload(_payload(text="   ", media={"url": "https://cdn/no-kind"}))
    assert result.kind == PayloadKind.unknown
    assert result.message_type == MessageType.TEXT
    assert result.content == "[Unsupported message]"


def test_normalized_view_drops_media_for_text() -> None:
    payload = _payload(text="hi")
    normalized = classify_payload(payload).to_normalized(payload.media)
    assert normalized.kind == PayloadKind.text
    assert normalized.media is None
