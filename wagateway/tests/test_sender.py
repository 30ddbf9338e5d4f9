from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from wagateway.client import ClientOptions
from wagateway.registry import SessionRegistry
from wagateway.sender import (
    ClientNotConnectedError,
    InvalidRecipientError,
    MediaFileNotFoundError,
    OutboundSender,
    UnsupportedContentTypeError,
    extract_message_id,
)
from wagateway.session import CreationMode, Session, SessionState
from wagateway.tests.fakes import FakeChatClient


def _ready_sender(tmp_path: Path, send_result=None):
    registry = SessionRegistry()
    reconnects: list[str] = []
    client = FakeChatClient(ClientOptions(client_id="1555", auth_dir=tmp_path, cache_dir=tmp_path))
    client.send_result = send_result
    session = Session(phone="1555", line_id=None, mode=CreationMode.RESUME, client=client)
    session.state = SessionState.READY
    registry.put("1555", session)
    return OutboundSender(registry, reconnects.append), client, reconnects, registry


@pytest.mark.anyio
async def test_text_uses_provider_id(tmp_path: Path) -> None:
    sender, client, _, _ = _ready_sender(tmp_path, send_result={"id": {"id": "wamid.1"}})

    result = await sender.send("+1555", "+1 666", "hi")

    assert result.message_id == "wamid.1"
    assert result.provider_id
    assert client.sent == [("text", "1666@c.us", "hi")]


@pytest.mark.anyio
async def test_text_without_provider_id_gets_local_id(tmp_path: Path) -> None:
    sender, _, _, _ = _ready_sender(tmp_path, send_result=None)

    result = await sender.send("1555", "1666@c.us", "hi")

    assert result.message_id
    assert len(result.message_id) == 16
    assert not result.provider_id


@pytest.mark.anyio
async def test_group_recipient_is_rejected(tmp_path: Path) -> None:
    sender, client, reconnects, _ = _ready_sender(tmp_path)

    with pytest.raises(InvalidRecipientError) as excinfo:
        await sender.send("1555", "12036@g.us", "hi")

    assert excinfo.value.status_code == 400
    assert str(excinfo.value) == "Unsupported recipient: 12036@g.us"
    assert client.sent == []
    assert reconnects == []


@pytest.mark.anyio
async def test_missing_session_requests_reconnect(tmp_path: Path) -> None:
    sender, _, reconnects, registry = _ready_sender(tmp_path)
    registry.remove("1555")

    with pytest.raises(ClientNotConnectedError) as excinfo:
        await sender.send("1555", "1666", "hi")

    assert excinfo.value.status_code == 404
    assert reconnects == ["1555"]


@pytest.mark.anyio
async def test_session_not_ready_is_not_connected(tmp_path: Path) -> None:
    sender, _, reconnects, registry = _ready_sender(tmp_path)
    registry.get("1555").state = SessionState.AWAITING_QR_SCAN

    with pytest.raises(ClientNotConnectedError):
        await sender.send("1555", "1666", "hi")
    assert reconnects == []


@pytest.mark.anyio
async def test_media_reads_file_and_sets_caption(tmp_path: Path) -> None:
    sender, client, _, _ = _ready_sender(tmp_path, send_result=SimpleNamespace(id="m-9"))
    photo = tmp_path / "photo.png"
    photo.write_bytes(b"png-bytes")

    result = await sender.send(
        "1555", "1666", "caption", content_type="image/png", file_path=str(photo)
    )

    kind, chat_id, media, caption = client.sent[0]
    assert (kind, chat_id, caption) == ("media", "1666@c.us", "caption")
    assert media.mimetype == "image/png"
    assert media.data == b"png-bytes"
    assert media.filename == "photo.png"
    assert result.message_id == "m-9"


@pytest.mark.anyio
async def test_media_errors_are_caller_errors(tmp_path: Path) -> None:
    sender, client, _, _ = _ready_sender(tmp_path)

    with pytest.raises(MediaFileNotFoundError) as missing:
        await sender.send("1555", "1666", "x", content_type="image/png", file_path=str(tmp_path / "nope"))
    with pytest.raises(UnsupportedContentTypeError) as unsupported:
        await sender.send("1555", "1666", "x", content_type="image/png")

    assert missing.value.status_code == 400
    assert unsupported.value.status_code == 400
    assert client.sent == []


def test_extract_message_id_shapes() -> None:
    assert extract_message_id("abc") == "abc"
    assert extract_message_id({"id": "abc"}) == "abc"
    assert extract_message_id(SimpleNamespace(id=SimpleNamespace(id="nested"))) == "nested"
    assert extract_message_id({"id": None}) is None
    assert extract_message_id(None) is None
